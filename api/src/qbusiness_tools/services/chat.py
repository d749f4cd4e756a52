"""Q Business chat: one-shot replies and the Server-Sent-Event relay."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..web import RequestValidationError, dumps
from . import aws
from .base import SessionScopedService

logger = logging.getLogger(__name__)

RETRIEVAL_MODE = "RETRIEVAL_MODE"
PLUGIN_MODE = "PLUGIN_MODE"
DEFAULT_REPLY = "No response from AI"
SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_END = object()


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {dumps(payload)}\n\n"


def chat_mode_params(attribute_filter: Any = None, selected_plugin: Optional[str] = None) -> Dict[str, Any]:
    """Chat mode fields for a retrieval filter or a plugin, never both."""
    if attribute_filter and selected_plugin:
        raise RequestValidationError("attributeFilter and selectedPlugin cannot be used together")
    if attribute_filter:
        return {"chatMode": RETRIEVAL_MODE, "attributeFilter": attribute_filter}
    if selected_plugin:
        return {
            "chatMode": PLUGIN_MODE,
            "chatModeConfiguration": {"pluginConfiguration": {"pluginId": selected_plugin}},
        }
    return {}


def build_chat_params(
    application_id: str,
    user_message: str,
    conversation_id: Optional[str] = None,
    system_message_id: Optional[str] = None,
    attribute_filter: Any = None,
    selected_plugin: Optional[str] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"applicationId": application_id, "userMessage": user_message}
    if conversation_id:
        params["conversationId"] = conversation_id
    if system_message_id:
        params["parentMessageId"] = system_message_id
    params.update(chat_mode_params(attribute_filter, selected_plugin))
    return params


def reply_events(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    """A ``chat_sync`` reply as the text and metadata events the relay consumes."""
    ids = {
        "conversationId": response.get("conversationId") or "",
        "systemMessageId": response.get("systemMessageId") or "",
    }
    events: List[Dict[str, Any]] = []
    if response.get("systemMessage"):
        events.append({"textEvent": {"systemMessage": response["systemMessage"], **ids}})
    events.append({"metadataEvent": {"sourceAttributions": response.get("sourceAttributions") or [], **ids}})
    return events


def build_citations(source_attributions: Optional[Iterable[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [
        {
            "title": source.get("title") or f"Source {index}",
            "uri": source.get("url") or "#",
            "snippet": source.get("snippet"),
        }
        for index, source in enumerate(source_attributions or [], start=1)
    ]


async def relay_chat_events(events: Iterable[Dict[str, Any]], *, idle_timeout: Optional[float] = None) -> AsyncIterator[str]:
    """Translate upstream chat output events into SSE frames.

    Emits ``text`` and ``metadata`` frames as events arrive, then exactly one
    ``complete`` frame, or a single ``error`` frame if the upstream stream
    fails or stays silent for longer than *idle_timeout* seconds. The upstream
    stream is closed however the relay ends, including client disconnects.
    """
    conversation_id = ""
    system_message_id = ""
    source_attributions: List[Any] = []
    iterator = iter(events)
    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                # Executor futures can be abandoned on timeout; the blocked read is unblocked by close().
                event = await asyncio.wait_for(loop.run_in_executor(None, next, iterator, _END), timeout=idle_timeout)
            except asyncio.TimeoutError:
                logger.warning("Chat stream idle for %ss, closing", idle_timeout)
                yield sse_frame({"type": "error", "message": "Timed out waiting for the chat response"})
                return
            if event is _END:
                break

            text_event = event.get("textEvent")
            if text_event:
                conversation_id = conversation_id or text_event.get("conversationId") or ""
                system_message_id = system_message_id or text_event.get("systemMessageId") or ""
                content = text_event.get("systemMessage") or ""
                if content:
                    yield sse_frame(
                        {
                            "type": "text",
                            "content": content,
                            "conversationId": conversation_id,
                            "systemMessageId": system_message_id,
                        }
                    )

            metadata_event = event.get("metadataEvent")
            if metadata_event:
                source_attributions = metadata_event.get("sourceAttributions") or []
                yield sse_frame(
                    {
                        "type": "metadata",
                        "sourceAttributions": source_attributions,
                        "conversationId": metadata_event.get("conversationId") or conversation_id,
                        "systemMessageId": metadata_event.get("systemMessageId") or system_message_id,
                    }
                )

        yield sse_frame(
            {
                "type": "complete",
                "isComplete": True,
                "conversationId": conversation_id,
                "systemMessageId": system_message_id,
                "sourceAttributions": source_attributions,
            }
        )
    except Exception as exc:
        logger.error("Error in chat stream: %s", exc)
        yield sse_frame(
            {"type": "error", "message": str(exc) or "An error occurred while processing your request"}
        )
    finally:
        close = getattr(events, "close", None)
        if callable(close):
            try:
                close()
            except Exception as exc:
                logger.warning("Failed to close upstream chat stream: %s", exc)


class ChatService(SessionScopedService):
    service_name = "qbusiness"

    def __init__(self, resolver, region: str, default_client, *, idle_timeout: Optional[float] = None) -> None:
        super().__init__(resolver, region, default_client)
        self._idle_timeout = idle_timeout

    async def chat_sync(
        self,
        application_id: str,
        messages: List[Dict[str, Any]],
        *,
        conversation_id: Optional[str] = None,
        system_message_id: Optional[str] = None,
        attribute_filter: Any = None,
        selected_plugin: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not messages:
            raise RequestValidationError("messages is required")
        last = messages[-1]
        user_message = last.get("content") if isinstance(last, dict) else None
        if not user_message:
            raise RequestValidationError("The last message must have content")

        params = build_chat_params(
            application_id, user_message, conversation_id, system_message_id, attribute_filter, selected_plugin
        )
        client = await self.client(session_id)
        logger.info("Calling chat_sync for application %s (mode %s)", application_id, params.get("chatMode", "default"))
        try:
            response = await aws.call(client, "chat_sync", **params)
        except (ClientError, BotoCoreError) as exc:
            raise RuntimeError(f"Failed to get AI response: {exc}") from exc

        attributions = response.get("sourceAttributions")
        return {
            "chatId": response.get("conversationId") or "",
            "message": response.get("systemMessage") or DEFAULT_REPLY,
            "systemMessageId": response.get("systemMessageId"),
            "sourceAttribution": attributions,
            "citations": build_citations(attributions),
        }

    async def open_stream(
        self,
        application_id: str,
        message: str,
        *,
        conversation_id: Optional[str] = None,
        system_message_id: Optional[str] = None,
        attribute_filter: Any = None,
        selected_plugin: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Get the reply and return the frame generator that relays it.

        The reply comes from ``chat_sync``: boto3 does not generate a method for
        the bidirectional ``Chat`` operation. Failures getting the reply raise;
        failures while relaying it are reported in-band.
        """
        if not message:
            raise RequestValidationError("message is required")
        params = build_chat_params(
            application_id, message, conversation_id, system_message_id, attribute_filter, selected_plugin
        )
        client = await self.client(session_id)
        logger.info("Starting chat stream with application %s (session %s)", application_id, session_id)
        response = await aws.call(client, "chat_sync", **params)
        return relay_chat_events(reply_events(response), idle_timeout=self._idle_timeout)
