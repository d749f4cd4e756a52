"""CloudWatch Logs access plus the Q Business sync-report folding.

Q Business writes one JSON document per log line for group membership, ACL
and sync error reports. The ``fold_*`` helpers turn those lines into the
shapes the console renders and are pure so they can be tested on their own.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from ..web import RequestValidationError
from . import aws
from .base import SessionScopedService

logger = logging.getLogger(__name__)

TIME_BUFFER_MS = 5 * 60 * 1000
ACL_PAGE_LIMIT = 200
SYNC_ERROR_FILTER = '{ $.DocumentId != "" && ($.LogLevel = Error || $.ErrorCode != "")}'
QUERY_PENDING_STATES = {"Running", "Scheduled"}


def time_range_with_buffer(config: Dict[str, Any]) -> Tuple[Optional[int], Optional[int]]:
    """Epoch-millisecond window around a sync job, padded by five minutes each side.

    Raises ``RequestValidationError`` for timestamps that are present but unparseable.
    """
    start_ms = end_ms = None
    if config.get("syncJobStartTime"):
        start = _parse_time(config["syncJobStartTime"])
        start_ms = int(start.timestamp() * 1000) - TIME_BUFFER_MS
    if config.get("syncJobEndTime"):
        end = _parse_time(config["syncJobEndTime"])
        end_ms = int(end.timestamp() * 1000) + TIME_BUFFER_MS
    return start_ms, end_ms


def _parse_time(value: Any):
    try:
        return aws.parse_iso(value)
    except ValueError:
        raise RequestValidationError(f"Unsupported datetime format: {value}") from None


def extract_display_name(name: str) -> str:
    if " | " in name:
        return name.split(" | ")[-1]
    if "/" in name:
        return name.split("/")[-1]
    return name


def log_group_for(config: Dict[str, Any]) -> str:
    if config.get("applicationId"):
        return f"/aws/qbusiness/{config['applicationId']}"
    return f"/aws/kendra/{config.get('indexId')}"


def parse_log_messages(events: Iterable[Dict[str, Any]], kind: str) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """(event, parsed message) pairs; lines that are not JSON objects are skipped."""
    parsed = []
    for event in events:
        message = event.get("message")
        if not message:
            continue
        try:
            entry = json.loads(message)
        except ValueError as exc:
            logger.warning("Skipping malformed %s log line: %s", kind, exc)
            continue
        if not isinstance(entry, dict):
            logger.warning("Skipping non-object %s log line", kind)
            continue
        parsed.append((event, entry))
    return parsed


def fold_group_membership(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    groups: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        group_name = entry.get("groupName")
        if not group_name:
            continue
        group = groups.get(group_name)
        if group is None:
            group = groups[group_name] = {
                "groupName": group_name,
                "displayName": extract_display_name(group_name),
                "isGroupFederated": entry.get("isGroupFederated") == "TRUE",
                "members": {"users": [], "groups": []},
                "totalMembers": 0,
            }

        member_name = entry.get("memberName")
        member_type = entry.get("memberType")
        federated = entry.get("isMemberFederated") == "TRUE"
        if member_type == "USER":
            users = group["members"]["users"]
            if not any(user["id"] == member_name for user in users):
                users.append({"id": member_name, "email": entry.get("memberGlobalName"), "isFederated": federated})
                group["totalMembers"] += 1
        elif member_type == "GROUP":
            subgroups = group["members"]["groups"]
            if not any(sub["name"] == member_name for sub in subgroups):
                subgroups.append(
                    {
                        "name": member_name,
                        "displayName": extract_display_name(member_name or ""),
                        "isFederated": federated,
                    }
                )
                group["totalMembers"] += 1

    return sorted(groups.values(), key=lambda group: group["displayName"].lower())


def expand_acl_entries(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten sync report lines into one row per (document, ACL entity)."""
    rows = []
    for entry in entries:
        raw_acl = entry.get("Acl")
        if not raw_acl:
            continue
        try:
            acl = json.loads(raw_acl) if isinstance(raw_acl, str) else raw_acl
        except ValueError as exc:
            logger.warning("Skipping document %s with malformed Acl: %s", entry.get("DocumentId"), exc)
            continue
        status = entry.get("ConnectorDocumentStatus")
        for item in acl or []:
            rows.append(
                {
                    "DocumentId": entry.get("DocumentId"),
                    "DocumentTitle": entry.get("DocumentTitle"),
                    "CrawlAction": entry.get("CrawlAction"),
                    "ConnectorDocumentStatus": status.get("Status") if isinstance(status, dict) else None,
                    "ACLEntityGlobalname": item.get("globalName"),
                    "ACLEntityName": item.get("name"),
                    "ACLEntityType": item.get("type"),
                    "ACLEntityAccess": item.get("access"),
                    "ACLUniqueIdentifier": f"{entry.get('DocumentId')}#{item.get('type')}#{item.get('name')}",
                }
            )
    return rows


def fold_acl_entries(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    documents: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        document_id = row["DocumentId"]
        document = documents.get(document_id)
        if document is None:
            document = documents[document_id] = {
                "DocumentId": document_id,
                "DocumentTitle": row.get("DocumentTitle"),
                "CrawlAction": row.get("CrawlAction"),
                "ConnectorDocumentStatus": row.get("ConnectorDocumentStatus"),
                "ACL": [],
            }
        document["ACL"].append(
            {
                "ACLEntityType": row.get("ACLEntityType"),
                "ACLEntityName": row.get("ACLEntityName"),
                "ACLEntityAccess": row.get("ACLEntityAccess"),
                "ACLUniqueIdentifier": row.get("ACLUniqueIdentifier"),
                "ACLEntityGlobalname": row.get("ACLEntityGlobalname") or "",
            }
        )
    return list(documents.values())


def select_sync_errors(pairs: Iterable[Tuple[Dict[str, Any], Dict[str, Any]]]) -> List[Dict[str, Any]]:
    errors = []
    for event, entry in pairs:
        if entry.get("DocumentId") and (entry.get("ErrorCode") or entry.get("LogLevel") == "Error"):
            errors.append({**entry, "timestamp": event.get("timestamp")})
    return errors


def _with_time_range(params: Dict[str, Any], start_ms: Optional[int], end_ms: Optional[int]) -> Dict[str, Any]:
    if start_ms:
        params["startTime"] = start_ms
    if end_ms:
        params["endTime"] = end_ms
    return params


class CloudWatchService(SessionScopedService):
    service_name = "cloudwatch-logs"

    def __init__(self, resolver, region: str, default_client, *, poll_interval: float = 1.0) -> None:
        super().__init__(resolver, region, default_client)
        self._poll_interval = poll_interval

    async def list_log_groups(
        self,
        prefix: Optional[str] = None,
        limit: int = 50,
        next_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        params: Dict[str, Any] = {"limit": limit}
        if prefix:
            params["logGroupNamePrefix"] = prefix
        if next_token:
            params["nextToken"] = next_token
        try:
            response = await aws.call(client, "describe_log_groups", **params)
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to list CloudWatch log groups: {exc}") from exc
        return {
            "logGroups": [
                {
                    "logGroupName": group.get("logGroupName") or "",
                    "creationTime": group.get("creationTime"),
                    "retentionInDays": group.get("retentionInDays"),
                    "storedBytes": group.get("storedBytes"),
                    "arn": group.get("arn"),
                }
                for group in response.get("logGroups") or []
            ],
            "nextToken": response.get("nextToken"),
        }

    async def list_log_streams(
        self,
        log_group_name: str,
        prefix: Optional[str] = None,
        order_by: str = "LastEventTime",
        descending: bool = True,
        limit: int = 50,
        next_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        params: Dict[str, Any] = {
            "logGroupName": log_group_name,
            "orderBy": order_by,
            "descending": descending,
            "limit": limit,
        }
        if prefix:
            params["logStreamNamePrefix"] = prefix
        if next_token:
            params["nextToken"] = next_token
        try:
            response = await aws.call(client, "describe_log_streams", **params)
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to list CloudWatch log streams: {exc}") from exc
        fields = (
            "creationTime",
            "firstEventTimestamp",
            "lastEventTimestamp",
            "lastIngestionTime",
            "uploadSequenceToken",
            "arn",
        )
        return {
            "logStreams": [
                {"logStreamName": stream.get("logStreamName") or "", **{name: stream.get(name) for name in fields}}
                for stream in response.get("logStreams") or []
            ],
            "nextToken": response.get("nextToken"),
        }

    async def get_log_events(
        self,
        log_group_name: str,
        log_stream_name: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: int = 10000,
        start_from_head: bool = True,
        next_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        params = _with_time_range(
            {
                "logGroupName": log_group_name,
                "logStreamName": log_stream_name,
                "limit": limit,
                "startFromHead": start_from_head,
            },
            start_time,
            end_time,
        )
        if next_token:
            params["nextToken"] = next_token
        try:
            response = await aws.call(client, "get_log_events", **params)
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to get CloudWatch log events: {exc}") from exc
        return {
            "logEvents": [
                {
                    "timestamp": event.get("timestamp") or 0,
                    "message": event.get("message") or "",
                    "ingestionTime": event.get("ingestionTime"),
                }
                for event in response.get("events") or []
            ],
            "nextForwardToken": response.get("nextForwardToken"),
            "nextBackwardToken": response.get("nextBackwardToken"),
        }

    async def filter_log_events(
        self,
        log_group_name: str,
        log_stream_names: Optional[List[str]] = None,
        filter_pattern: Optional[str] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: int = 10000,
        next_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        params = _with_time_range({"logGroupName": log_group_name, "limit": limit}, start_time, end_time)
        if log_stream_names:
            params["logStreamNames"] = list(log_stream_names)
        if filter_pattern:
            params["filterPattern"] = filter_pattern
        if next_token:
            params["nextToken"] = next_token
        try:
            response = await aws.call(client, "filter_log_events", **params)
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to filter CloudWatch log events: {exc}") from exc
        return {
            "logEvents": [
                {
                    "timestamp": event.get("timestamp") or 0,
                    "message": event.get("message") or "",
                    "ingestionTime": event.get("ingestionTime"),
                    "logStreamName": event.get("logStreamName"),
                }
                for event in response.get("events") or []
            ],
            "nextToken": response.get("nextToken"),
            "searchedLogStreams": response.get("searchedLogStreams"),
        }

    async def execute_query(
        self,
        log_group_names: List[str],
        query_string: str,
        start_time: int,
        end_time: int,
        limit: int = 1000,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run a Logs Insights query to completion; times are epoch milliseconds."""
        client = await self.client(session_id)
        try:
            started = await aws.call(
                client,
                "start_query",
                logGroupNames=list(log_group_names),
                startTime=int(start_time) // 1000,
                endTime=int(end_time) // 1000,
                queryString=query_string,
                limit=limit,
            )
            query_id = started.get("queryId")
            if not query_id:
                raise RuntimeError("Failed to start CloudWatch Logs Insights query")

            status = "Running"
            results: List[Any] = []
            statistics: Dict[str, Any] = {}
            while status in QUERY_PENDING_STATES:
                await asyncio.sleep(self._poll_interval)
                response = await aws.call(client, "get_query_results", queryId=query_id)
                status = response.get("status") or "Failed"
                if response.get("results"):
                    results = response["results"]
                stats = response.get("statistics")
                if stats:
                    statistics = {
                        "recordsMatched": stats.get("recordsMatched") or 0,
                        "recordsScanned": stats.get("recordsScanned") or 0,
                        "bytesScanned": stats.get("bytesScanned") or 0,
                    }
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to execute CloudWatch Logs Insights query: {exc}") from exc

        logger.info("Insights query %s finished with status %s (%d rows)", query_id, status, len(results))
        return {"queryId": query_id, "status": status, "results": results, "statistics": statistics}

    async def delete_log_stream(
        self, log_group_name: str, log_stream_name: str, session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        try:
            await aws.call(client, "delete_log_stream", logGroupName=log_group_name, logStreamName=log_stream_name)
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to delete CloudWatch log stream: {exc}") from exc
        return {
            "status": "success",
            "message": f"Successfully deleted log stream {log_stream_name} in log group {log_group_name}",
        }

    async def _filter_pages(self, client, params: Dict[str, Any]):
        params = dict(params)
        while True:
            response = await aws.call(client, "filter_log_events", **params)
            yield response.get("events") or []
            token = response.get("nextToken")
            if not token:
                return
            params["nextToken"] = token

    async def fetch_group_membership(self, config: Dict[str, Any], session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        start_ms, end_ms = time_range_with_buffer(config)
        sync_job_id = config.get("syncJobId") or config.get("syncJobExecutionId")
        params = _with_time_range(
            {
                "logGroupName": f"/aws/qbusiness/{config['applicationId']}",
                "logStreamNames": [f"GROUP_MEMBERSHIP/{config['dataSourceId']}/{sync_job_id}"],
            },
            start_ms,
            end_ms,
        )

        client = await self.client(session_id)
        entries: List[Dict[str, Any]] = []
        try:
            async for events in self._filter_pages(client, params):
                entries.extend(entry for _, entry in parse_log_messages(events, "group membership"))
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to fetch group membership: {exc}") from exc

        logger.info("Fetched %d group membership entries for sync job %s", len(entries), sync_job_id)
        return fold_group_membership(entries)

    async def fetch_acl_documents(self, config: Dict[str, Any], session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        start_ms, end_ms = time_range_with_buffer(config)
        if start_ms is None or end_ms is None:
            logger.info("Sync job start and end times not given, skipping ACL fetch")
            return []

        params = {
            "logGroupName": log_group_for(config),
            "logStreamNamePrefix": f"SYNC_RUN_HISTORY_REPORT/{config['dataSourceId']}/{config['syncJobId']}",
            "limit": ACL_PAGE_LIMIT,
            "startTime": start_ms,
            "endTime": end_ms,
        }

        client = await self.client(session_id)
        rows: List[Dict[str, Any]] = []
        try:
            async for events in self._filter_pages(client, params):
                rows.extend(expand_acl_entries(entry for _, entry in parse_log_messages(events, "ACL")))
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to fetch ACL documents: {exc}") from exc

        documents = fold_acl_entries(rows)
        logger.info("Fetched %d ACL documents for sync job %s", len(documents), config["syncJobId"])
        return documents

    async def fetch_sync_errors(self, config: Dict[str, Any], session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        start_ms, end_ms = time_range_with_buffer(config)
        params = _with_time_range(
            {
                "logGroupName": log_group_for(config),
                "logStreamNamePrefix": config["dataSourceId"],
                "filterPattern": SYNC_ERROR_FILTER,
            },
            start_ms,
            end_ms,
        )

        client = await self.client(session_id)
        errors: List[Dict[str, Any]] = []
        try:
            async for events in self._filter_pages(client, params):
                errors.extend(select_sync_errors(parse_log_messages(events, "sync error")))
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to fetch sync errors: {exc}") from exc

        logger.info("Fetched %d errors for sync job %s", len(errors), config.get("syncJobId"))
        return errors

    async def validate_configuration(self, session_id: Optional[str] = None) -> bool:
        client = await self.client(session_id)
        try:
            await aws.call(client, "describe_log_groups", limit=1)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("CloudWatch configuration validation failed: %s", exc)
            return False
        return True
