"""Bedrock evaluation job endpoints."""
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


def _bedrock(request: Request):
    return request.app.state.services.bedrock


@handle_errors("Failed to start evaluation", "start_evaluation_failed")
async def start_evaluation(request: Request):
    body = await read_json_body(request)
    result = await _bedrock(request).start_evaluation(
        require(body, "s3BucketName"),
        require(body, "inputFileKey"),
        require(body, "outputFolder"),
        require(body, "jobName"),
        session_id_from(request, body),
    )
    return json_response(result)


@handle_errors("Failed to get evaluation job status", "evaluation_status_failed")
async def evaluation_status(request: Request):
    query = request.query_params
    result = await _bedrock(request).get_evaluation_job(require(query, "jobId"), session_id_from(request))
    return json_response(result)


@handle_errors("Failed to list evaluation jobs", "list_evaluations_failed")
async def list_evaluations(request: Request):
    query = request.query_params
    result = await _bedrock(request).list_evaluation_jobs(
        parse_positive_int(query.get("maxResults"), default=10, name="maxResults"),
        query.get("nextToken"),
        session_id_from(request),
    )
    return json_response(result)


routes = [
    Route("/api/bedrock/evaluations", endpoint=start_evaluation, methods=["POST"]),
    Route("/api/bedrock/evaluations", endpoint=list_evaluations, methods=["GET"]),
    Route("/api/bedrock/evaluations", endpoint=options_handler, methods=["OPTIONS"]),
    Route("/api/bedrock/evaluations/status", endpoint=evaluation_status, methods=["GET"]),
    Route("/api/bedrock/evaluations/status", endpoint=options_handler, methods=["OPTIONS"]),
]
