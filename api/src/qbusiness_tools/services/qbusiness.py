"""Q Business catalogue, sync job and search operations."""
from __future__ import annotations

import datetime as dt
import logging
import math
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from . import aws
from .base import SessionScopedService

logger = logging.getLogger(__name__)

SYNC_METRIC_FIELDS = (
    "documentsAdded",
    "documentsModified",
    "documentsDeleted",
    "documentsFailed",
    "documentsScanned",
)


def _int_metric(metrics: Dict[str, Any], name: str) -> int:
    try:
        return int(str(metrics.get(name) or "0"))
    except ValueError:
        return 0


def format_sync_job_name(start_time: Optional[dt.datetime], status: Optional[str]) -> str:
    status = status or "Unknown"
    if not start_time:
        return f"Sync Job ({status})"
    hour = start_time.hour % 12 or 12
    meridiem = "AM" if start_time.hour < 12 else "PM"
    stamp = f"{start_time:%b} {start_time.day}, {start_time.year}, {hour}:{start_time:%M} {meridiem}"
    return f"Sync Job - {stamp} ({status})"


def summarize_sync_job(job: Dict[str, Any]) -> Dict[str, Any]:
    raw_metrics = job.get("metrics")
    metrics = {name: _int_metric(raw_metrics, name) for name in SYNC_METRIC_FIELDS} if raw_metrics else {}
    return {
        "executionId": job.get("executionId") or "",
        "displayName": format_sync_job_name(job.get("startTime"), job.get("status")),
        "startTime": aws.to_iso(job.get("startTime")),
        "endTime": aws.to_iso(job.get("endTime")),
        "status": job.get("status") or "UNKNOWN",
        "metrics": metrics,
    }


def sort_sync_jobs(jobs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Most recent first; jobs that never started go last in their original order."""
    started = sorted((job for job in jobs if job.get("startTime")), key=lambda job: job["startTime"], reverse=True)
    return started + [job for job in jobs if not job.get("startTime")]


def compute_sync_metrics(job: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not job:
        return {
            "totalDocuments": 0,
            "successfulDocuments": 0,
            "failedDocuments": 0,
            "successRate": 0,
            "duration": None,
            "documentsPerSecond": None,
        }

    raw = job.get("metrics") or {}
    successful = sum(_int_metric(raw, name) for name in ("documentsAdded", "documentsModified", "documentsDeleted"))
    failed = _int_metric(raw, "documentsFailed")
    total = successful + failed

    duration = None
    per_second = None
    start, end = job.get("startTime"), job.get("endTime")
    if isinstance(start, dt.datetime) and isinstance(end, dt.datetime):
        duration = math.floor((end - start).total_seconds())
        if duration > 0 and total > 0:
            per_second = total / duration

    return {
        "totalDocuments": total,
        "successfulDocuments": successful,
        "failedDocuments": failed,
        "successRate": (successful / total) * 100 if total > 0 else 0,
        "duration": duration,
        "documentsPerSecond": per_second,
    }


class QBusinessService(SessionScopedService):
    service_name = "qbusiness"

    async def list_applications(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        client = await self.client(session_id)
        applications: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"maxResults": 100}
        while True:
            response = await aws.call(client, "list_applications", **params)
            # Per-application lookups run one at a time; the list APIs throttle bursts.
            for app in response.get("applications") or []:
                application_id = app.get("applicationId") or ""
                applications.append(
                    {
                        "applicationId": application_id,
                        "displayName": app.get("displayName") or "",
                        "createdAt": aws.to_iso(app.get("createdAt")),
                        "updatedAt": aws.to_iso(app.get("updatedAt")),
                        "identityType": app.get("identityType"),
                        "status": app.get("status"),
                        "retrieverId": await self._first_id(
                            client, "list_retrievers", "retrievers", "retrieverId", application_id, 50
                        ),
                        "indexId": await self._first_id(client, "list_indices", "indices", "indexId", application_id, 1),
                    }
                )
            token = response.get("nextToken")
            if not token:
                break
            params["nextToken"] = token
        logger.info("Listed %d Q Business applications", len(applications))
        return applications

    async def _first_id(self, client, operation: str, key: str, id_field: str, application_id: str, max_results: int) -> str:
        try:
            response = await aws.call(client, operation, applicationId=application_id, maxResults=max_results)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("%s failed for application %s: %s", operation, application_id, exc)
            return ""
        items = response.get(key) or []
        return (items[0].get(id_field) or "") if items else ""

    async def list_indices(self, application_id: str, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        client = await self.client(session_id)
        response = await aws.call(client, "list_indices", applicationId=application_id)
        return [
            {"indexId": index.get("indexId") or "", "status": index.get("status")}
            for index in response.get("indices") or []
        ]

    async def list_plugins(self, application_id: str, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        client = await self.client(session_id)
        plugins: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"applicationId": application_id, "maxResults": 10}
        while True:
            response = await aws.call(client, "list_plugins", **params)
            for plugin in response.get("plugins") or []:
                plugin_id = plugin.get("pluginId") or ""
                plugins.append(
                    {
                        "id": plugin_id,
                        "name": plugin.get("displayName") or plugin_id or "Unnamed Plugin",
                        "type": plugin.get("type"),
                        # The list call carries no status; every listed plugin is reported active.
                        "status": "ACTIVE",
                        "createdAt": aws.to_iso(plugin.get("createdAt")),
                    }
                )
            token = response.get("nextToken")
            if not token:
                break
            params["nextToken"] = token
        return plugins

    async def list_data_sources(
        self, application_id: str, index_id: str, session_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        client = await self.client(session_id)
        data_sources: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"applicationId": application_id, "indexId": index_id}
        while True:
            response = await aws.call(client, "list_data_sources", **params)
            for source in response.get("dataSources") or []:
                data_sources.append(
                    {
                        "id": source.get("dataSourceId") or "",
                        "name": source.get("displayName") or "",
                        "type": source.get("type"),
                        "status": source.get("status"),
                        "createdAt": aws.to_iso(source.get("createdAt")),
                    }
                )
            token = response.get("nextToken")
            if not token:
                break
            params["nextToken"] = token
        return data_sources

    async def _sync_job_pages(self, client, application_id: str, index_id: str, data_source_id: str):
        params: Dict[str, Any] = {
            "applicationId": application_id,
            "indexId": index_id,
            "dataSourceId": data_source_id,
        }
        while True:
            response = await aws.call(client, "list_data_source_sync_jobs", **params)
            yield response.get("history") or []
            token = response.get("nextToken")
            if not token:
                return
            params["nextToken"] = token

    async def list_sync_jobs(
        self, application_id: str, index_id: str, data_source_id: str, session_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        client = await self.client(session_id)
        jobs: List[Dict[str, Any]] = []
        async for page in self._sync_job_pages(client, application_id, index_id, data_source_id):
            jobs.extend(summarize_sync_job(job) for job in page)
        return sort_sync_jobs(jobs)

    async def get_sync_job(
        self,
        application_id: str,
        index_id: str,
        data_source_id: str,
        sync_job_id: str,
        session_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        client = await self.client(session_id)
        async for page in self._sync_job_pages(client, application_id, index_id, data_source_id):
            for job in page:
                if job.get("executionId") == sync_job_id:
                    return job
        logger.warning("Sync job %s not found", sync_job_id)
        return None

    async def get_sync_job_metrics(
        self,
        application_id: str,
        index_id: str,
        data_source_id: str,
        sync_job_id: str,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        job = await self.get_sync_job(application_id, index_id, data_source_id, sync_job_id, session_id)
        return {"syncJob": job, "metrics": compute_sync_metrics(job)}

    async def search(
        self,
        application_id: str,
        query: str,
        retriever_id: str,
        *,
        max_results: int = 5,
        next_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        params: Dict[str, Any] = {
            "applicationId": application_id,
            "queryText": query,
            "contentSource": {"retriever": {"retrieverId": retriever_id}},
            "maxResults": max_results,
        }
        if next_token:
            params["nextToken"] = next_token

        logger.info("Searching application %s (retriever %s, maxResults %s)", application_id, retriever_id, max_results)
        try:
            response = await aws.call(client, "search_relevant_content", **params)
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to search for relevant content: {exc}") from exc

        results = []
        for content in response.get("relevantContent") or []:
            score = content.get("scoreAttributes")
            results.append(
                {
                    "documentId": content.get("documentId") or "",
                    "documentTitle": content.get("documentTitle") or "",
                    "documentUri": content.get("documentUri"),
                    "documentExcerpt": content.get("content") or "",
                    "scoreAttributes": {"scoreConfidence": score.get("scoreConfidence")} if score else None,
                    "documentAttributes": content.get("documentAttributes") or [],
                }
            )
        return {"results": results, "nextToken": response.get("nextToken")}

    async def check_access(
        self,
        application_id: str,
        index_id: str,
        data_source_id: str,
        document_id: str,
        user_id: str,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        client = await self.client(session_id)
        logger.info("Checking access to document %s for user %s", document_id, user_id)
        response = await aws.call(
            client,
            "check_document_access",
            applicationId=application_id,
            indexId=index_id,
            dataSourceId=data_source_id,
            documentId=document_id,
            userId=user_id,
        )
        return aws.strip_metadata(response)
