import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from loguru import logger

from app.config import get_settings
from app.core.errors import ChatError, ProtocolError, classify_error
from app.core.providers import ChatOptions, ChatProvider
from app.models.chat import Message

ChunkCallback = Callable[[str, bool], Awaitable[Any] | Any]


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    StreamState.IDLE: {StreamState.SENDING},
    StreamState.SENDING: {StreamState.STREAMING, StreamState.COMPLETED, StreamState.FAILED},
    StreamState.STREAMING: {StreamState.COMPLETED, StreamState.FAILED},
    StreamState.COMPLETED: set(),
    StreamState.FAILED: set(),
}


@dataclass
class StreamSession:
    conversation_id: str
    text: str = ""
    done: bool = False
    state: StreamState = StreamState.IDLE
    error: ChatError | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in (StreamState.COMPLETED, StreamState.FAILED)

    def transition(self, new_state: StreamState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid stream transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        if self.is_terminal:
            self.done = True


async def _emit(on_chunk: ChunkCallback, text: str, done: bool) -> None:
    result = on_chunk(text, done)
    if inspect.isawaitable(result):
        await result


async def _next_delta(deltas: AsyncIterator[str]) -> str:
    return await deltas.__anext__()


async def stream_reply(
    provider: ChatProvider,
    system_prompt: str,
    messages: list[Message],
    options: ChatOptions,
    on_chunk: ChunkCallback,
    session: StreamSession | None = None,
    timeout: float | None = None,
) -> str:
    """
    Stream a reply through on_chunk and return the full text.

    on_chunk(text, done) always receives the cumulative text, so each call
    extends the previous one. The stream ends with exactly one terminal event:
    a final on_chunk(text, True) or one raised ChatError.

    `timeout` bounds the wait for the first delta only; once text is flowing
    the transport's own lifecycle applies. Raises a classified ChatError.
    """
    timeout = timeout if timeout is not None else get_settings().request_timeout
    session = session or StreamSession(conversation_id="")
    session.transition(StreamState.SENDING)

    deltas = provider.stream(system_prompt, messages, options)
    try:
        while True:
            try:
                if session.state is StreamState.SENDING:
                    delta = await asyncio.wait_for(_next_delta(deltas), timeout)
                    session.transition(StreamState.STREAMING)
                else:
                    delta = await _next_delta(deltas)
            except StopAsyncIteration:
                break

            session.text += delta
            await _emit(on_chunk, session.text, False)

        if not session.text:
            raise ProtocolError(f"{provider.name} returned an empty reply", provider=provider.name)
    except Exception as e:
        error = classify_error(e, provider.name)
        session.error = error
        session.transition(StreamState.FAILED)
        logger.error(
            "[streaming] {} stream failed for {} ({}): {}",
            provider.name,
            session.conversation_id,
            error.kind.value,
            e,
        )
        raise error from e
    finally:
        aclose = getattr(deltas, "aclose", None)
        if aclose is not None:
            await aclose()

    session.transition(StreamState.COMPLETED)
    await _emit(on_chunk, session.text, True)
    logger.debug("[streaming] {} completed, {} chars", provider.name, len(session.text))
    return session.text


async def complete(
    provider: ChatProvider,
    system_prompt: str,
    messages: list[Message],
    options: ChatOptions,
    timeout: float | None = None,
) -> str:
    """Non-streaming call, hard-bounded by `timeout` seconds."""
    timeout = timeout if timeout is not None else get_settings().request_timeout
    try:
        return await asyncio.wait_for(provider.chat(system_prompt, messages, options), timeout)
    except Exception as e:
        error = classify_error(e, provider.name)
        logger.error("[streaming] {} call failed ({}): {}", provider.name, error.kind.value, e)
        raise error from e
