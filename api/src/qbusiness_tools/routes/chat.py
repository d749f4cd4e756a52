"""Chat endpoints: one-shot JSON replies and the SSE stream."""
from __future__ import annotations

from starlette.requests import Request
from starlette.responses import StreamingResponse
from starlette.routing import Route

from ..services.chat import SSE_HEADERS
from ..web import (
    RequestValidationError,
    cors_headers,
    handle_errors,
    json_response,
    options_handler,
    read_json_body,
    require,
    session_id_from,
)


@handle_errors("Failed to get AI response", "chat_failed")
async def chat_sync(request: Request):
    body = await read_json_body(request)
    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise RequestValidationError("messages is required")
    result = await request.app.state.services.chat.chat_sync(
        require(body, "applicationId"),
        messages,
        conversation_id=body.get("conversationId"),
        system_message_id=body.get("systemMessageId"),
        attribute_filter=body.get("attributeFilter"),
        selected_plugin=body.get("selectedPlugin"),
        session_id=session_id_from(request, body),
    )
    return json_response(result)


@handle_errors("Failed to start chat stream", "chat_stream_failed")
async def chat_stream(request: Request):
    body = await read_json_body(request)
    frames = await request.app.state.services.chat.open_stream(
        require(body, "applicationId"),
        require(body, "message"),
        conversation_id=body.get("conversationId"),
        system_message_id=body.get("systemMessageId"),
        attribute_filter=body.get("attributeFilter"),
        selected_plugin=body.get("selectedPlugin"),
        session_id=session_id_from(request, body),
    )
    headers = {**cors_headers(), **SSE_HEADERS}
    return StreamingResponse(frames, media_type="text/event-stream", headers=headers)


routes = [
    Route("/api/chat/sync", endpoint=chat_sync, methods=["POST"]),
    Route("/api/chat/sync", endpoint=options_handler, methods=["OPTIONS"]),
    Route("/api/chat/stream", endpoint=chat_stream, methods=["POST"]),
    Route("/api/chat/stream", endpoint=options_handler, methods=["OPTIONS"]),
]
