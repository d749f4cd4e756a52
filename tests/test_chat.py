"""Tests for chat request building and the SSE relay."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import threading
from typing import Any, Dict, List

import boto3
import pytest
from botocore.stub import Stubber
from starlette.testclient import TestClient

from conftest import REGION, aws_client_mock, client_error
from qbusiness_tools.app import create_app
from qbusiness_tools.services.chat import (
    DEFAULT_REPLY,
    ChatService,
    build_chat_params,
    build_citations,
    chat_mode_params,
    relay_chat_events,
    reply_events,
)
from qbusiness_tools.web import RequestValidationError

APPLICATION_ID = "0d5c3a4e-1111-4a2b-9c3d-0123456789ab"
CONVERSATION_ID = "7f1e2d3c-2222-4b5a-8c9d-0123456789ab"
SYSTEM_MESSAGE_ID = "3a4b5c6d-3333-4e5f-a1b2-0123456789ab"
USER_MESSAGE_ID = "9e8d7c6b-4444-4a3b-b2c1-0123456789ab"


def _frames(events, idle_timeout=None) -> List[Dict[str, Any]]:
    async def collect() -> List[str]:
        return [frame async for frame in relay_chat_events(events, idle_timeout=idle_timeout)]

    raw = asyncio.run(collect())
    for frame in raw:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
    return [json.loads(frame[len("data: "):]) for frame in raw]


class RecordingStream:
    """Upstream event stream that records whether it was closed."""

    def __init__(self, events) -> None:
        self._events = iter(events)
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._events)

    def close(self) -> None:
        self.closed = True


class FailingStream(RecordingStream):
    def __next__(self):
        event = next(self._events)
        if isinstance(event, Exception):
            raise event
        return event


class StalledStream:
    """Yields nothing until closed."""

    def __init__(self) -> None:
        self._released = threading.Event()
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self):
        self._released.wait(timeout=5)
        raise StopIteration

    def close(self) -> None:
        self.closed = True
        self._released.set()


class TestChatModes:
    def test_attribute_filter_selects_retrieval_mode(self) -> None:
        flt = {"equalsTo": {"name": "_source_uri", "value": {"stringValue": "x"}}}
        assert chat_mode_params(attribute_filter=flt) == {"chatMode": "RETRIEVAL_MODE", "attributeFilter": flt}

    def test_plugin_selects_plugin_mode(self) -> None:
        assert chat_mode_params(selected_plugin="plugin-1") == {
            "chatMode": "PLUGIN_MODE",
            "chatModeConfiguration": {"pluginConfiguration": {"pluginId": "plugin-1"}},
        }

    def test_filter_and_plugin_are_exclusive(self) -> None:
        with pytest.raises(RequestValidationError):
            chat_mode_params(attribute_filter={"a": 1}, selected_plugin="plugin-1")

    def test_chat_params_carry_conversation_and_mode(self) -> None:
        params = build_chat_params("app-1", "hello", "c1", "m1", selected_plugin="plugin-1")
        assert params == {
            "applicationId": "app-1",
            "userMessage": "hello",
            "conversationId": "c1",
            "parentMessageId": "m1",
            "chatMode": "PLUGIN_MODE",
            "chatModeConfiguration": {"pluginConfiguration": {"pluginId": "plugin-1"}},
        }

    def test_chat_params_without_mode(self) -> None:
        assert build_chat_params("app-1", "hello") == {"applicationId": "app-1", "userMessage": "hello"}

    def test_reply_events_text_then_metadata(self) -> None:
        events = reply_events(
            {"systemMessage": "hey", "conversationId": "c1", "systemMessageId": "m1", "sourceAttributions": [{"title": "doc"}]}
        )
        assert events == [
            {"textEvent": {"systemMessage": "hey", "conversationId": "c1", "systemMessageId": "m1"}},
            {"metadataEvent": {"sourceAttributions": [{"title": "doc"}], "conversationId": "c1", "systemMessageId": "m1"}},
        ]

    def test_reply_events_without_message(self) -> None:
        assert reply_events({}) == [
            {"metadataEvent": {"sourceAttributions": [], "conversationId": "", "systemMessageId": ""}}
        ]

    def test_citations_fill_defaults(self) -> None:
        assert build_citations([{"snippet": "s"}, {"title": "T", "url": "https://x"}]) == [
            {"title": "Source 1", "uri": "#", "snippet": "s"},
            {"title": "T", "uri": "https://x", "snippet": None},
        ]


class TestRelay:
    def test_text_then_metadata_then_one_complete(self) -> None:
        stream = RecordingStream(
            [
                {"textEvent": {"systemMessage": "a", "conversationId": "c1", "systemMessageId": "m1"}},
                {"textEvent": {"systemMessage": "b"}},
                {"metadataEvent": {"sourceAttributions": [{"title": "doc"}]}},
            ]
        )

        frames = _frames(stream)

        assert [frame["type"] for frame in frames] == ["text", "text", "metadata", "complete"]
        assert [frame["content"] for frame in frames[:2]] == ["a", "b"]
        assert frames[1]["conversationId"] == "c1"
        assert frames[2]["sourceAttributions"] == [{"title": "doc"}]
        assert frames[3] == {
            "type": "complete",
            "isComplete": True,
            "conversationId": "c1",
            "systemMessageId": "m1",
            "sourceAttributions": [{"title": "doc"}],
        }
        assert stream.closed

    def test_empty_text_is_not_forwarded(self) -> None:
        frames = _frames([{"textEvent": {"systemMessage": ""}}])
        assert [frame["type"] for frame in frames] == ["complete"]

    def test_upstream_failure_ends_with_error_frame(self) -> None:
        stream = FailingStream([{"textEvent": {"systemMessage": "a"}}, RuntimeError("stream broke")])

        frames = _frames(stream)

        assert [frame["type"] for frame in frames] == ["text", "error"]
        assert frames[-1]["message"] == "stream broke"
        assert stream.closed

    def test_idle_stream_times_out_and_is_closed(self) -> None:
        stream = StalledStream()

        frames = _frames(stream, idle_timeout=0.05)

        assert frames == [{"type": "error", "message": "Timed out waiting for the chat response"}]
        assert stream.closed


class TestChatService:
    def test_chat_sync_defaults_reply(self, services) -> None:
        client = aws_client_mock("qbusiness")
        client.chat_sync.return_value = {"conversationId": "c1"}
        chat = ChatService(services.resolver, "us-east-1", client)

        result = asyncio.run(
            chat.chat_sync("app-1", [{"role": "user", "content": "hi"}], system_message_id="m0")
        )

        assert result["chatId"] == "c1"
        assert result["message"] == DEFAULT_REPLY
        assert result["citations"] == []
        client.chat_sync.assert_called_once_with(applicationId="app-1", userMessage="hi", parentMessageId="m0")

    def test_chat_sync_requires_content(self, services) -> None:
        with pytest.raises(RequestValidationError):
            asyncio.run(services.chat.chat_sync("app-1", [{"role": "user"}]))

    def test_open_stream_relays_chat_sync_reply(self, services, default_clients) -> None:
        client = default_clients["qbusiness"]
        client.chat_sync.return_value = {
            "systemMessage": "hey",
            "conversationId": "c1",
            "systemMessageId": "m2",
            "sourceAttributions": [{"title": "doc", "url": "https://x"}],
        }

        async def run() -> List[str]:
            frames = await services.chat.open_stream("app-1", "hello", conversation_id="c1", system_message_id="m1")
            return [frame async for frame in frames]

        frames = [json.loads(frame[len("data: "):]) for frame in asyncio.run(run())]

        assert [frame["type"] for frame in frames] == ["text", "metadata", "complete"]
        assert frames[0]["content"] == "hey"
        assert frames[2]["systemMessageId"] == "m2"
        assert frames[2]["sourceAttributions"] == [{"title": "doc", "url": "https://x"}]
        client.chat_sync.assert_called_once_with(
            applicationId="app-1", userMessage="hello", conversationId="c1", parentMessageId="m1"
        )

    def test_qbusiness_client_has_no_bidirectional_chat_method(self, default_clients) -> None:
        client = default_clients["qbusiness"]
        assert hasattr(client, "chat_sync")
        assert not hasattr(client, "chat")
        with pytest.raises(AttributeError):
            client.chat(applicationId="app-1")


class TestChatRoutes:
    def test_sync_rejects_filter_with_plugin(self, api: TestClient) -> None:
        response = api.post(
            "/api/chat/sync",
            json={
                "applicationId": "app-1",
                "messages": [{"role": "user", "content": "hi"}],
                "attributeFilter": {"a": 1},
                "selectedPlugin": "plugin-1",
            },
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_sync_upstream_failure_is_500(self, api: TestClient, default_clients) -> None:
        default_clients["qbusiness"].chat_sync.side_effect = client_error("ThrottlingException", "ChatSync")
        response = api.post(
            "/api/chat/sync",
            json={"applicationId": "app-1", "messages": [{"role": "user", "content": "hi"}]},
        )
        assert response.status_code == 500
        assert response.json()["message"].startswith("Failed to get AI response")

    def test_stream_returns_event_stream(self, api: TestClient, default_clients) -> None:
        default_clients["qbusiness"].chat_sync.return_value = {"systemMessage": "hey", "conversationId": "c1"}

        response = api.post("/api/chat/stream", json={"applicationId": "app-1", "message": "hello"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["access-control-allow-origin"] == "*"
        frames = [json.loads(line[len("data: "):]) for line in response.text.split("\n\n") if line]
        assert [frame["type"] for frame in frames] == ["text", "metadata", "complete"]
        assert frames[-1]["conversationId"] == "c1"

    def test_stream_requires_message(self, api: TestClient) -> None:
        response = api.post("/api/chat/stream", json={"applicationId": "app-1"})
        assert response.status_code == 400
        assert response.json()["message"] == "message is required"

    def test_stream_rejects_filter_with_plugin(self, api: TestClient, default_clients) -> None:
        response = api.post(
            "/api/chat/stream",
            json={"applicationId": "app-1", "message": "hi", "attributeFilter": {"a": 1}, "selectedPlugin": "p"},
        )
        assert response.status_code == 400
        default_clients["qbusiness"].chat_sync.assert_not_called()


class TestChatStreamWithBotocoreClient:
    """``/api/chat/stream`` against a real qbusiness client with stubbed responses."""

    @pytest.fixture
    def qbusiness(self):
        return boto3.client(
            "qbusiness", region_name=REGION, aws_access_key_id="testing", aws_secret_access_key="testing"
        )

    @pytest.fixture
    def stream_api(self, services, qbusiness) -> TestClient:
        chat = ChatService(services.resolver, REGION, qbusiness, idle_timeout=5.0)
        return TestClient(create_app(services=dataclasses.replace(services, chat=chat)))

    def test_reply_is_relayed_as_frames(self, stream_api: TestClient, qbusiness) -> None:
        sent = []
        qbusiness.meta.events.register(
            "provide-client-params.qbusiness.ChatSync", lambda params, **kwargs: sent.append(dict(params))
        )
        reply = {
            "conversationId": CONVERSATION_ID,
            "systemMessage": "The index is active.",
            "systemMessageId": SYSTEM_MESSAGE_ID,
            "userMessageId": USER_MESSAGE_ID,
            "sourceAttributions": [
                {"title": "Runbook", "url": "https://example.com/runbook", "snippet": "Check the index", "citationNumber": 1}
            ],
        }

        with Stubber(qbusiness) as stubber:
            stubber.add_response("chat_sync", reply)
            response = stream_api.post(
                "/api/chat/stream",
                json={"applicationId": APPLICATION_ID, "message": "Is my index healthy?", "conversationId": CONVERSATION_ID},
            )
            stubber.assert_no_pending_responses()

        assert response.status_code == 200
        frames = [json.loads(line[len("data: "):]) for line in response.text.split("\n\n") if line]
        assert [frame["type"] for frame in frames] == ["text", "metadata", "complete"]
        assert frames[0] == {
            "type": "text",
            "content": "The index is active.",
            "conversationId": CONVERSATION_ID,
            "systemMessageId": SYSTEM_MESSAGE_ID,
        }
        assert frames[1]["sourceAttributions"][0]["title"] == "Runbook"
        assert frames[2]["isComplete"] is True
        assert frames[2]["sourceAttributions"] == frames[1]["sourceAttributions"]
        assert sent == [
            {"applicationId": APPLICATION_ID, "userMessage": "Is my index healthy?", "conversationId": CONVERSATION_ID}
        ]

    def test_upstream_error_is_json_500(self, stream_api: TestClient, qbusiness) -> None:
        with Stubber(qbusiness) as stubber:
            stubber.add_client_error("chat_sync", service_error_code="ValidationException", http_status_code=400)
            response = stream_api.post("/api/chat/stream", json={"applicationId": APPLICATION_ID, "message": "hello"})

        assert response.status_code == 500
        assert response.json()["error"] == "chat_stream_failed"
        assert response.json()["message"].startswith("Failed to start chat stream")
