"""Shared fixtures: in-memory store, clean settings and a scripted provider."""

import pytest
from httpx import AsyncClient, ASGITransport

from app.config import get_settings
from app.core.providers import ChatOptions, register_provider, unregister_provider
from app.db.store import MemoryStore, set_store
from app.main import app
from app.models.chat import Conversation, Message

PROVIDER_ENV_VARS = (
    "OPENAI_API_KEY",
    "COPILOT_API_KEY",
    "CLAUDE_API_KEY",
    "GEMINI_API_KEY",
    "DEFAULT_PROVIDER",
)


class FakeProvider:
    """Provider double that replays scripted deltas and records every call."""

    name = "fake"

    def __init__(self, deltas=None, reply="Summary of the talk so far.", stream_error=None, chat_error=None):
        self.deltas = list(deltas if deltas is not None else ["Hel", "lo "])
        self.reply = reply
        self.stream_error = stream_error
        self.chat_error = chat_error
        self.chat_calls: list[tuple[str, list[Message], ChatOptions]] = []
        self.stream_calls: list[tuple[str, list[Message], ChatOptions]] = []

    async def chat(self, system_prompt, messages, options):
        self.chat_calls.append((system_prompt, messages, options))
        if self.chat_error is not None:
            raise self.chat_error
        return self.reply

    async def stream(self, system_prompt, messages, options):
        self.stream_calls.append((system_prompt, messages, options))
        for delta in self.deltas:
            yield delta
        if self.stream_error is not None:
            raise self.stream_error


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    """Fresh settings per test: memory store, no provider keys from the environment."""
    for name in PROVIDER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def store():
    """In-memory key/value store installed as the process-wide store."""
    memory_store = MemoryStore()
    set_store(memory_store)
    yield memory_store
    set_store(None)


@pytest.fixture
def fake_provider():
    """A FakeProvider registered under the name 'fake'."""
    provider = FakeProvider()
    register_provider("fake", lambda settings: provider)
    yield provider
    unregister_provider("fake")


@pytest.fixture
def conversation():
    return Conversation(id="chat_test", provider="fake", model="fake-model")


def make_history(count: int, size: int = 10) -> list[Message]:
    """Alternating user/assistant messages, each `size` characters long."""
    return [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"{i:0{size}d}")
        for i in range(count)
    ]


@pytest.fixture
async def client():
    """Async HTTP client against the app, without running its lifespan."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
