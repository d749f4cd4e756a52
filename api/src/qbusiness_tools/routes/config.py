"""Front-end bootstrap configuration."""
from __future__ import annotations

from starlette.requests import Request
from starlette.routing import Route

from ..web import handle_errors, json_response, options_handler, session_id_from


@handle_errors("Failed to retrieve Cognito configuration", "config_failed")
async def cognito_config(request: Request):
    result = await request.app.state.services.cognito_config.get_cognito_config(session_id_from(request))
    return json_response(result)


routes = [
    Route("/api/config/cognito", endpoint=cognito_config, methods=["GET"]),
    Route("/api/config/cognito", endpoint=options_handler, methods=["OPTIONS"]),
]
