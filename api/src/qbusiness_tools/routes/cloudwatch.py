"""CloudWatch Logs endpoints and Q Business sync-report views."""
from __future__ import annotations

from starlette.requests import Request
from starlette.routing import Route

from ..web import (
    RequestValidationError,
    handle_errors,
    json_response,
    options_handler,
    parse_bool,
    parse_optional_int,
    parse_positive_int,
    read_json_body,
    require,
    session_id_from,
    split_csv,
)


def _cloudwatch(request: Request):
    return request.app.state.services.cloudwatch


async def _report_request(request: Request, *, needs_application: bool, needs_sync_job: bool):
    body = await read_json_body(request)
    config = body.get("config")
    if not isinstance(config, dict) or not config:
        raise RequestValidationError("Configuration is required")
    if not config.get("dataSourceId"):
        raise RequestValidationError("Data source ID is required")
    if needs_application:
        if not config.get("applicationId"):
            raise RequestValidationError("Application ID is required")
    elif not config.get("applicationId") and not config.get("indexId"):
        raise RequestValidationError("Either application ID or index ID is required")
    if needs_sync_job and not config.get("syncJobId") and not config.get("syncJobExecutionId"):
        raise RequestValidationError("Sync job ID is required")
    return config, session_id_from(request, body)


@handle_errors("Failed to list CloudWatch log groups", "log_groups_failed")
async def log_groups(request: Request):
    query = request.query_params
    result = await _cloudwatch(request).list_log_groups(
        prefix=query.get("prefix"),
        limit=parse_positive_int(query.get("limit"), default=50, name="limit"),
        next_token=query.get("nextToken"),
        session_id=session_id_from(request),
    )
    return json_response(result)


@handle_errors("Failed to list CloudWatch log streams", "log_streams_failed")
async def log_streams(request: Request):
    query = request.query_params
    result = await _cloudwatch(request).list_log_streams(
        require(query, "logGroupName"),
        prefix=query.get("prefix"),
        order_by=query.get("orderBy") or "LastEventTime",
        descending=parse_bool(query.get("descending"), default=True),
        limit=parse_positive_int(query.get("limit"), default=50, name="limit"),
        next_token=query.get("nextToken"),
        session_id=session_id_from(request),
    )
    return json_response(result)


@handle_errors("Failed to get CloudWatch log events", "log_events_failed")
async def log_events(request: Request):
    query = request.query_params
    result = await _cloudwatch(request).get_log_events(
        require(query, "logGroupName"),
        require(query, "logStreamName"),
        start_time=parse_optional_int(query.get("startTime"), name="startTime"),
        end_time=parse_optional_int(query.get("endTime"), name="endTime"),
        limit=parse_positive_int(query.get("limit"), default=10000, name="limit"),
        start_from_head=parse_bool(query.get("startFromHead"), default=True),
        next_token=query.get("nextToken"),
        session_id=session_id_from(request),
    )
    return json_response(result)


@handle_errors("Failed to filter CloudWatch log events", "filter_events_failed")
async def filter_events(request: Request):
    query = request.query_params
    result = await _cloudwatch(request).filter_log_events(
        require(query, "logGroupName"),
        log_stream_names=split_csv(query.get("logStreamNames")),
        filter_pattern=query.get("filterPattern"),
        start_time=parse_optional_int(query.get("startTime"), name="startTime"),
        end_time=parse_optional_int(query.get("endTime"), name="endTime"),
        limit=parse_positive_int(query.get("limit"), default=10000, name="limit"),
        next_token=query.get("nextToken"),
        session_id=session_id_from(request),
    )
    return json_response(result)


@handle_errors("Failed to execute CloudWatch Logs Insights query", "query_failed")
async def run_query(request: Request):
    body = await read_json_body(request)
    log_group_names = body.get("logGroupNames")
    if not isinstance(log_group_names, list) or not log_group_names:
        raise RequestValidationError("At least one log group name is required")
    result = await _cloudwatch(request).execute_query(
        log_group_names,
        require(body, "queryString"),
        parse_optional_int(require(body, "startTime"), name="startTime"),
        parse_optional_int(require(body, "endTime"), name="endTime"),
        limit=parse_positive_int(body.get("limit"), default=1000, name="limit"),
        session_id=session_id_from(request, body),
    )
    return json_response(result)


@handle_errors("Failed to delete CloudWatch log stream", "delete_log_stream_failed")
async def delete_log_stream(request: Request):
    body = await read_json_body(request)
    result = await _cloudwatch(request).delete_log_stream(
        require(body, "logGroupName"),
        require(body, "logStreamName"),
        session_id_from(request, body),
    )
    return json_response(result)


@handle_errors("Failed to fetch group membership", "group_membership_failed")
async def group_membership(request: Request):
    config, session_id = await _report_request(request, needs_application=True, needs_sync_job=True)
    groups = await _cloudwatch(request).fetch_group_membership(config, session_id)
    return json_response(groups)


@handle_errors("Failed to fetch ACL documents", "acl_documents_failed")
async def acl_documents(request: Request):
    config, session_id = await _report_request(request, needs_application=False, needs_sync_job=True)
    if not config.get("syncJobId"):
        config = {**config, "syncJobId": config.get("syncJobExecutionId")}
    documents = await _cloudwatch(request).fetch_acl_documents(config, session_id)
    return json_response(documents)


@handle_errors("Failed to fetch sync errors", "sync_errors_failed")
async def sync_errors(request: Request):
    config, session_id = await _report_request(request, needs_application=False, needs_sync_job=False)
    errors = await _cloudwatch(request).fetch_sync_errors(config, session_id)
    return json_response(errors)


@handle_errors("Failed to validate CloudWatch configuration", "validate_failed")
async def validate(request: Request):
    valid = await _cloudwatch(request).validate_configuration(session_id_from(request))
    return json_response({"valid": valid})


_PREFIX = "/api/cloudwatch"

routes = [
    Route(f"{_PREFIX}/log-groups", endpoint=log_groups, methods=["GET"]),
    Route(f"{_PREFIX}/log-groups", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/log-streams", endpoint=log_streams, methods=["GET"]),
    Route(f"{_PREFIX}/log-streams", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/log-events", endpoint=log_events, methods=["GET"]),
    Route(f"{_PREFIX}/log-events", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/filter-events", endpoint=filter_events, methods=["GET"]),
    Route(f"{_PREFIX}/filter-events", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/query", endpoint=run_query, methods=["POST"]),
    Route(f"{_PREFIX}/query", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/delete-log-stream", endpoint=delete_log_stream, methods=["POST"]),
    Route(f"{_PREFIX}/delete-log-stream", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/group-membership", endpoint=group_membership, methods=["POST"]),
    Route(f"{_PREFIX}/group-membership", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/acl-documents", endpoint=acl_documents, methods=["POST"]),
    Route(f"{_PREFIX}/acl-documents", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/sync-errors", endpoint=sync_errors, methods=["POST"]),
    Route(f"{_PREFIX}/sync-errors", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/validate", endpoint=validate, methods=["GET"]),
    Route(f"{_PREFIX}/validate", endpoint=options_handler, methods=["OPTIONS"]),
]
