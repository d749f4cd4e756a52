"""Q Business catalogue, sync job, search and access-check endpoints."""
from __future__ import annotations

from starlette.requests import Request
from starlette.routing import Route

from ..web import (
    handle_errors,
    json_response,
    options_handler,
    parse_positive_int,
    read_json_body,
    require,
    session_id_from,
)


def _qbusiness(request: Request):
    return request.app.state.services.qbusiness


async def health(request: Request):
    return json_response({"status": "healthy"})


@handle_errors("Failed to list applications", "list_applications_failed")
async def list_applications(request: Request):
    applications = await _qbusiness(request).list_applications(session_id_from(request))
    return json_response({"applications": applications})


@handle_errors("Failed to list indices", "list_indices_failed")
async def list_indices(request: Request):
    indices = await _qbusiness(request).list_indices(request.path_params["application_id"], session_id_from(request))
    return json_response({"indices": indices})


@handle_errors("Failed to list plugins", "list_plugins_failed")
async def list_plugins(request: Request):
    plugins = await _qbusiness(request).list_plugins(request.path_params["application_id"], session_id_from(request))
    return json_response({"plugins": plugins})


@handle_errors("Failed to list data sources", "list_data_sources_failed")
async def list_data_sources(request: Request):
    params = request.path_params
    data_sources = await _qbusiness(request).list_data_sources(
        params["application_id"], params["index_id"], session_id_from(request)
    )
    return json_response({"dataSources": data_sources})


@handle_errors("Failed to list sync jobs", "list_sync_jobs_failed")
async def list_sync_jobs(request: Request):
    params = request.path_params
    jobs = await _qbusiness(request).list_sync_jobs(
        params["application_id"], params["index_id"], params["data_source_id"], session_id_from(request)
    )
    return json_response({"syncJobs": jobs})


@handle_errors("Failed to get sync job metrics", "sync_job_metrics_failed")
async def sync_job_metrics(request: Request):
    params = request.path_params
    result = await _qbusiness(request).get_sync_job_metrics(
        params["application_id"],
        params["index_id"],
        params["data_source_id"],
        params["sync_job_id"],
        session_id_from(request),
    )
    return json_response(result)


@handle_errors("Failed to search for relevant content", "search_failed")
async def search(request: Request):
    query = request.query_params
    result = await _qbusiness(request).search(
        request.path_params["application_id"],
        require(query, "query"),
        require(query, "retriever_id"),
        max_results=parse_positive_int(query.get("max_results"), default=5, name="max_results"),
        next_token=query.get("next_token"),
        session_id=session_id_from(request),
    )
    return json_response(result)


@handle_errors("Failed to check document access", "check_access_failed")
async def check_access(request: Request):
    body = await read_json_body(request)
    result = await _qbusiness(request).check_access(
        request.path_params["application_id"],
        require(body, "indexId"),
        require(body, "dataSourceId"),
        require(body, "documentId"),
        require(body, "userId"),
        session_id_from(request, body),
    )
    return json_response(result)


_APP = "/api/applications/{application_id}"
_DATA_SOURCES = _APP + "/indices/{index_id}/datasources"
_SYNC_JOBS = _DATA_SOURCES + "/{data_source_id}/syncjobs"

routes = [
    Route("/api/health", endpoint=health, methods=["GET"]),
    Route("/api/applications", endpoint=list_applications, methods=["GET"]),
    Route("/api/applications", endpoint=options_handler, methods=["OPTIONS"]),
    Route(_APP + "/indices", endpoint=list_indices, methods=["GET"]),
    Route(_APP + "/indices", endpoint=options_handler, methods=["OPTIONS"]),
    Route(_APP + "/plugins", endpoint=list_plugins, methods=["GET"]),
    Route(_APP + "/plugins", endpoint=options_handler, methods=["OPTIONS"]),
    Route(_DATA_SOURCES, endpoint=list_data_sources, methods=["GET"]),
    Route(_DATA_SOURCES, endpoint=options_handler, methods=["OPTIONS"]),
    Route(_SYNC_JOBS, endpoint=list_sync_jobs, methods=["GET"]),
    Route(_SYNC_JOBS, endpoint=options_handler, methods=["OPTIONS"]),
    Route(_SYNC_JOBS + "/{sync_job_id}/metrics", endpoint=sync_job_metrics, methods=["GET"]),
    Route(_SYNC_JOBS + "/{sync_job_id}/metrics", endpoint=options_handler, methods=["OPTIONS"]),
    Route(_APP + "/search", endpoint=search, methods=["GET"]),
    Route(_APP + "/search", endpoint=options_handler, methods=["OPTIONS"]),
    Route(_APP + "/check-access", endpoint=check_access, methods=["POST"]),
    Route(_APP + "/check-access", endpoint=options_handler, methods=["OPTIONS"]),
]
