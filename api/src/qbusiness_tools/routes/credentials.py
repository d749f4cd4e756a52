"""Session creation and inspection endpoints."""
from __future__ import annotations

import logging

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.routing import Route

from ..web import (
    NotFoundError,
    RequestValidationError,
    handle_errors,
    json_response,
    options_handler,
    read_json_body,
)

logger = logging.getLogger(__name__)


@handle_errors("Failed to exchange token for credentials", "exchange_failed")
async def exchange_token(request: Request):
    body = await read_json_body(request)
    id_token = body.get("idToken")
    if not id_token:
        raise RequestValidationError("ID token is required")
    logger.info("Received request to exchange ID token for credentials")
    info = await run_in_threadpool(request.app.state.services.identity.exchange, id_token)
    return json_response(info.to_dict())


@handle_errors("Failed to get anonymous credentials", "anonymous_failed")
async def anonymous_access(request: Request):
    # An empty body is allowed; the server-side default role applies.
    body = await read_json_body(request) if await request.body() else {}
    logger.info("Received request for anonymous access")
    info = await run_in_threadpool(
        request.app.state.services.identity.exchange_for_anonymous_access, body.get("roleArn")
    )
    return json_response(info.to_dict())


@handle_errors("Failed to get session information", "session_failed")
async def get_session(request: Request):
    session_id = request.path_params["session_id"]
    info = await run_in_threadpool(request.app.state.services.identity.get_session, session_id)
    if info is None:
        raise NotFoundError("Session not found")
    return json_response(info.to_dict())


@handle_errors("Failed to validate session", "validate_failed")
async def validate_session(request: Request):
    session_id = request.path_params["session_id"]
    valid = await run_in_threadpool(request.app.state.services.identity.is_session_valid, session_id)
    return json_response({"valid": valid})


@handle_errors("Failed to get credentials", "credentials_failed")
async def get_credentials(request: Request):
    session_id = request.path_params["session_id"]
    credentials = await run_in_threadpool(request.app.state.services.identity.get_credentials, session_id)
    if credentials is None:
        raise NotFoundError("Credentials not found")
    return json_response(credentials.to_dict())


routes = [
    Route("/api/credentials/exchange", endpoint=exchange_token, methods=["POST"]),
    Route("/api/credentials/exchange", endpoint=options_handler, methods=["OPTIONS"]),
    Route("/api/credentials/anonymous", endpoint=anonymous_access, methods=["POST"]),
    Route("/api/credentials/anonymous", endpoint=options_handler, methods=["OPTIONS"]),
    Route("/api/credentials/session/{session_id}", endpoint=get_session, methods=["GET"]),
    Route("/api/credentials/session/{session_id}", endpoint=options_handler, methods=["OPTIONS"]),
    Route("/api/credentials/validate/{session_id}", endpoint=validate_session, methods=["GET"]),
    Route("/api/credentials/validate/{session_id}", endpoint=options_handler, methods=["OPTIONS"]),
    Route("/api/credentials/credentials/{session_id}", endpoint=get_credentials, methods=["GET"]),
    Route("/api/credentials/credentials/{session_id}", endpoint=options_handler, methods=["OPTIONS"]),
]
