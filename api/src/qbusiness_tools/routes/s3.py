"""S3 endpoints used by the evaluation workflow."""
from __future__ import annotations

from starlette.requests import Request
from starlette.routing import Route

from ..web import handle_errors, json_response, options_handler, read_json_body, require, session_id_from


def _s3(request: Request):
    return request.app.state.services.s3


@handle_errors("Failed to upload object to S3", "upload_failed")
async def upload(request: Request):
    body = await read_json_body(request)
    result = await _s3(request).upload_object(
        require(body, "bucketName"),
        require(body, "key"),
        require(body, "content"),
        body.get("contentType") or "application/json",
        session_id_from(request, body),
    )
    return json_response(result)


@handle_errors("Failed to check bucket", "bucket_exists_failed")
async def bucket_exists(request: Request):
    query = request.query_params
    exists = await _s3(request).bucket_exists(require(query, "bucketName"), session_id_from(request))
    return json_response({"exists": exists})


@handle_errors("Failed to create bucket", "create_bucket_failed")
async def create_bucket(request: Request):
    body = await read_json_body(request)
    result = await _s3(request).create_bucket(
        require(body, "bucketName"),
        body.get("region") or "us-east-1",
        session_id_from(request, body),
    )
    return json_response(result)


@handle_errors("Failed to set CORS policy", "set_cors_failed")
async def set_cors(request: Request):
    body = await read_json_body(request)
    result = await _s3(request).set_bucket_cors(require(body, "bucketName"), session_id_from(request, body))
    return json_response(result)


@handle_errors("Failed to ensure bucket exists", "ensure_bucket_failed")
async def ensure_bucket(request: Request):
    body = await read_json_body(request)
    result = await _s3(request).ensure_bucket(
        require(body, "bucketName"),
        body.get("region") or "us-east-1",
        session_id_from(request, body),
    )
    return json_response(result)


@handle_errors("Failed to list S3 objects", "list_objects_failed")
async def list_objects(request: Request):
    query = request.query_params
    result = await _s3(request).list_objects(
        require(query, "bucketName"), query.get("prefix") or "", session_id_from(request)
    )
    return json_response(result)


@handle_errors("Failed to get S3 object", "get_object_failed")
async def get_object(request: Request):
    query = request.query_params
    result = await _s3(request).get_object(
        require(query, "bucketName"), require(query, "key"), session_id_from(request)
    )
    return json_response(result)


@handle_errors("Failed to get S3 object", "get_object_json_failed")
async def get_object_json(request: Request):
    query = request.query_params
    result = await _s3(request).get_object_json(
        require(query, "bucketName"), require(query, "key"), session_id_from(request)
    )
    return json_response(result)


_PREFIX = "/api/s3"

routes = [
    Route(f"{_PREFIX}/upload", endpoint=upload, methods=["POST"]),
    Route(f"{_PREFIX}/upload", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/bucket-exists", endpoint=bucket_exists, methods=["GET"]),
    Route(f"{_PREFIX}/bucket-exists", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/create-bucket", endpoint=create_bucket, methods=["POST"]),
    Route(f"{_PREFIX}/create-bucket", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/set-cors", endpoint=set_cors, methods=["POST"]),
    Route(f"{_PREFIX}/set-cors", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/ensure-bucket", endpoint=ensure_bucket, methods=["POST"]),
    Route(f"{_PREFIX}/ensure-bucket", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/list-objects", endpoint=list_objects, methods=["GET"]),
    Route(f"{_PREFIX}/list-objects", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/get-object", endpoint=get_object, methods=["GET"]),
    Route(f"{_PREFIX}/get-object", endpoint=options_handler, methods=["OPTIONS"]),
    Route(f"{_PREFIX}/get-object-json", endpoint=get_object_json, methods=["GET"]),
    Route(f"{_PREFIX}/get-object-json", endpoint=options_handler, methods=["OPTIONS"]),
]
