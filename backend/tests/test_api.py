"""HTTP, SSE and WebSocket surface tests."""

import asyncio
import json

import pytest
from conftest import FakeProvider
from fastapi.testclient import TestClient
from httpx import AsyncClient

from app.api.chat import ChatConnection
from app.config import get_settings
from app.core import chat
from app.core.streaming import StreamSession
from app.main import app


def sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


async def _create(client: AsyncClient) -> str:
    response = await client.post("/api/chat/conversations", json={"provider": "fake", "model": "fake-model"})
    assert response.status_code == 200
    return response.json()["id"]


class TestConversationRoutes:
    """Conversation CRUD endpoints."""

    async def test_create_and_list(self, client: AsyncClient, fake_provider):
        conversation_id = await _create(client)

        response = await client.get("/api/chat/conversations")
        assert response.status_code == 200
        data = response.json()
        assert [c["id"] for c in data] == [conversation_id]
        assert data[0]["message_count"] == 0
        assert data[0]["provider"] == "fake"

    async def test_create_without_provider_keys(self, client: AsyncClient):
        """Configuration errors come back as structured 400s."""
        response = await client.post("/api/chat/conversations", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "configuration"

    async def test_get_conversation(self, client: AsyncClient, fake_provider):
        conversation_id = await _create(client)

        response = await client.get(f"/api/chat/conversations/{conversation_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == conversation_id
        assert data["messages"] == []
        assert data["summary"] is None

    async def test_get_missing(self, client: AsyncClient):
        response = await client.get("/api/chat/conversations/chat_missing")
        assert response.status_code == 404

    async def test_delete(self, client: AsyncClient, fake_provider):
        conversation_id = await _create(client)

        response = await client.delete(f"/api/chat/conversations/{conversation_id}")
        assert response.status_code == 200
        assert response.json() == {"deleted": conversation_id}

        response = await client.delete(f"/api/chat/conversations/{conversation_id}")
        assert response.status_code == 404


class TestStreamingRoute:
    """Server-sent events for one turn."""

    async def test_stream_events(self, client: AsyncClient, fake_provider):
        conversation_id = await _create(client)

        response = await client.post(
            f"/api/chat/conversations/{conversation_id}/messages",
            json={"content": "I prefer metric units"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response.text)
        assert [e["type"] for e in events] == ["chunk", "chunk", "done"]
        assert [e["content"] for e in events] == ["Hel", "Hello ", "Hello "]
        assert events[-1]["conversation"]["message_count"] == 2
        assert events[-1]["conversation"]["title"] == "I prefer metric units"

    async def test_stream_error_event(self, client: AsyncClient, fake_provider: FakeProvider):
        fake_provider.deltas = []
        fake_provider.stream_error = RuntimeError("429 RESOURCE_EXHAUSTED")
        conversation_id = await _create(client)

        response = await client.post(
            f"/api/chat/conversations/{conversation_id}/messages",
            json={"content": "hello"},
        )

        events = sse_events(response.text)
        assert len(events) == 1
        assert events[0]["type"] == "error"
        assert events[0]["error"] == "quota"
        assert events[0]["retryable"] is True

        stored = await client.get(f"/api/chat/conversations/{conversation_id}")
        assert stored.json()["messages"] == []

    async def test_empty_message_is_rejected_before_streaming(self, client: AsyncClient, fake_provider):
        conversation_id = await _create(client)

        response = await client.post(f"/api/chat/conversations/{conversation_id}/messages", json={"content": ""})

        assert response.status_code == 400
        assert response.json()["error"] == "validation"

    async def test_missing_conversation(self, client: AsyncClient):
        response = await client.post("/api/chat/conversations/chat_missing/messages", json={"content": "hi"})
        assert response.status_code == 404


class TestSendRoute:
    async def test_send(self, client: AsyncClient, fake_provider: FakeProvider):
        fake_provider.reply = "Sure."
        conversation_id = await _create(client)

        response = await client.post(f"/api/chat/conversations/{conversation_id}/send", json={"content": "hi"})

        assert response.status_code == 200
        data = response.json()
        assert data["reply"] == "Sure."
        assert data["conversation"]["message_count"] == 2


class TestHealth:
    async def test_no_providers(self, client: AsyncClient):
        response = await client.get("/api/system/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "error"
        assert data["dependencies"] == {"memory": "connected"}
        assert data["providers"] == []

    async def test_configured_provider(self, client: AsyncClient, monkeypatch):
        monkeypatch.setenv("CLAUDE_API_KEY", "sk-ant")
        get_settings.cache_clear()

        data = (await client.get("/api/system/health")).json()

        assert data["status"] == "ok"
        assert data["providers"] == ["claude"]


class FakeSocket:
    def __init__(self):
        self.sent: list[dict] = []

    async def send_json(self, data: dict) -> None:
        self.sent.append(data)


class TestChatConnection:
    """Per-client session bookkeeping behind the WebSocket."""

    async def test_superseded_session_is_silenced(self):
        socket = FakeSocket()
        connection = ChatConnection(socket)
        old = StreamSession(conversation_id="chat_a")
        new = StreamSession(conversation_id="chat_b")

        connection.session = old
        await connection.emit(old, {"type": "chunk", "content": "first"})
        connection.session = new
        await connection.emit(old, {"type": "chunk", "content": "stale"})
        await connection.emit(new, {"type": "chunk", "content": "fresh"})

        assert [e["content"] for e in socket.sent] == ["first", "fresh"]
        assert socket.sent[1]["conversation_id"] == "chat_b"

    async def test_dispatch_chat_send(self, fake_provider):
        conversation = await chat.create_conversation(provider="fake", model="fake-model")
        socket = FakeSocket()
        connection = ChatConnection(socket)

        await connection.dispatch({
            "type": "chatSend",
            "payload": {"conversation_id": conversation.id, "content": "hello"},
        })
        await asyncio.gather(*list(connection._tasks))

        assert [e["type"] for e in socket.sent] == ["chunk", "chunk", "done"]
        assert socket.sent[-1]["content"] == "Hello "
        assert connection.session.state.value == "completed"

    async def test_dispatch_unknown_conversation(self):
        socket = FakeSocket()
        connection = ChatConnection(socket)

        await connection.dispatch({"type": "chatSend", "payload": {"conversation_id": "chat_x", "content": "hi"}})
        await asyncio.gather(*list(connection._tasks))

        assert socket.sent[0]["type"] == "error"
        assert socket.sent[0]["error"] == "validation"

    @pytest.mark.parametrize(
        "data",
        [
            {"type": "somethingElse"},
            {"type": "chatSend", "payload": {"content": "no conversation id"}},
        ],
    )
    async def test_dispatch_rejects_bad_messages(self, data):
        socket = FakeSocket()
        connection = ChatConnection(socket)

        await connection.dispatch(data)

        assert socket.sent[0]["type"] == "error"
        assert socket.sent[0]["error"] == "validation"
        assert connection.session is None


class TestWebSocketRoute:
    def test_chat_send_over_websocket(self, fake_provider):
        with TestClient(app) as test_client:
            conversation_id = test_client.post(
                "/api/chat/conversations", json={"provider": "fake", "model": "fake-model"}
            ).json()["id"]

            with test_client.websocket_connect("/api/chat/ws") as websocket:
                websocket.send_json({
                    "type": "chatSend",
                    "payload": {"conversation_id": conversation_id, "content": "hello"},
                })
                events = [websocket.receive_json() for _ in range(3)]

        assert [e["type"] for e in events] == ["chunk", "chunk", "done"]
        assert all(e["conversation_id"] == conversation_id for e in events)
        assert events[-1]["conversation"]["message_count"] == 2
