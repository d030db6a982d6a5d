import inspect
import uuid
from typing import Any, Awaitable, Callable

from loguru import logger

from app.config import Settings, get_settings
from app.core import memory, summarizer
from app.core.context import AssembledContext, build_context
from app.core.errors import ConfigurationError, ValidationError
from app.core.providers import ChatProvider, create_provider, resolve_options
from app.core.streaming import ChunkCallback, StreamSession, complete, stream_reply
from app.db.store import KeyValueStore, get_store
from app.models.chat import Attachment, Conversation, Message, now_ms

StatusCallback = Callable[[str | None], Awaitable[Any] | Any]

CONVERSATION_INDEX_KEY = "conversations"
DEFAULT_TITLE = "New chat"
TITLE_LENGTH = 40


def _conversation_key(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


async def _notify(on_status: StatusCallback | None, status: str | None) -> None:
    if on_status is None:
        return
    try:
        result = on_status(status)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        # Status lines are cosmetic; a closed channel must not fail the turn
        logger.debug("[chat] status notification dropped: {}", e)


# ── Persistence ─────────────────────────────────────────────────────────────────

async def get_conversation(conversation_id: str, store: KeyValueStore | None = None) -> Conversation | None:
    store = store or get_store()
    raw = await store.get(_conversation_key(conversation_id))
    return Conversation(**raw) if raw else None


async def list_conversations(store: KeyValueStore | None = None) -> list[Conversation]:
    store = store or get_store()
    ids = await store.get(CONVERSATION_INDEX_KEY) or []
    conversations = []
    for conversation_id in ids:
        conv = await get_conversation(conversation_id, store)
        if conv is not None:
            conversations.append(conv)
    return conversations


async def save_conversation(conversation: Conversation, store: KeyValueStore | None = None) -> None:
    store = store or get_store()
    await store.set(_conversation_key(conversation.id), conversation.model_dump())

    ids = await store.get(CONVERSATION_INDEX_KEY) or []
    if conversation.id not in ids:
        ids.insert(0, conversation.id)
        await store.set(CONVERSATION_INDEX_KEY, ids)


async def delete_conversation(conversation_id: str, store: KeyValueStore | None = None) -> bool:
    store = store or get_store()
    existed = await store.get(_conversation_key(conversation_id)) is not None

    await store.delete(_conversation_key(conversation_id))
    ids = await store.get(CONVERSATION_INDEX_KEY) or []
    if conversation_id in ids:
        ids.remove(conversation_id)
        await store.set(CONVERSATION_INDEX_KEY, ids)
    await memory.forget(conversation_id, store)

    logger.info("[chat] deleted conversation {}", conversation_id)
    return existed


# ── Conversation creation ───────────────────────────────────────────────────────

def resolve_provider_name(preferred: str | None, settings: Settings | None = None) -> str:
    """Explicit choice wins; otherwise the default provider if it has a key, else the first that does."""
    if preferred:
        return preferred.lower()

    settings = settings or get_settings()
    configured = settings.configured_providers()
    if settings.default_provider in configured:
        return settings.default_provider
    if configured:
        return configured[0]
    raise ConfigurationError("No provider configured. Please add an API key to your settings.")


async def create_conversation(
    provider: str | None = None,
    model: str | None = None,
    system_prompt: str = "",
    max_tokens: int | None = None,
    temperature: float | None = None,
    store: KeyValueStore | None = None,
) -> Conversation:
    settings = get_settings()
    conversation = Conversation(
        id=f"chat_{uuid.uuid4().hex[:16]}",
        title=DEFAULT_TITLE,
        provider=resolve_provider_name(provider, settings),
        model=model,
        system_prompt=system_prompt or "",
        temperature=temperature,
        max_tokens=max_tokens or settings.default_max_tokens,
    )
    await save_conversation(conversation, store)
    logger.info("[chat] created conversation {} ({})", conversation.id, conversation.provider)
    return conversation


def build_user_message(content: str, attachments: list[Attachment] | None = None) -> Message:
    limit = get_settings().max_attachments
    return Message(
        role="user",
        content=content or "",
        attachments=list(attachments or [])[:limit],
        timestamp=now_ms(),
    )


def validate_user_message(message: Message) -> None:
    if not (message.content or "").strip() and not message.attachments:
        raise ValidationError("Message is empty. Type something or attach a file.")


# ── Turn pipeline ───────────────────────────────────────────────────────────────

async def _prepare_turn(
    conversation: Conversation,
    user_message: Message,
    on_status: StatusCallback | None,
    search_results: str | None,
    provider: ChatProvider | None,
    store: KeyValueStore | None,
) -> tuple[Conversation, ChatProvider, AssembledContext]:
    validate_user_message(user_message)

    convo = conversation.model_copy(deep=True)
    provider = provider or create_provider(convo.provider)

    if summarizer.is_due(convo):
        await _notify(on_status, "Summarizing earlier conversation...")
        await summarizer.summarize_if_due(convo, provider)
        await _notify(on_status, None)

    context = await build_context(convo, user_message, search_results=search_results, store=store)
    return convo, provider, context


async def _finalize_turn(
    convo: Conversation,
    user_message: Message,
    reply: str,
    store: KeyValueStore | None,
) -> Conversation:
    assistant_message = Message(role="assistant", content=reply, timestamp=now_ms())
    convo.messages.append(user_message)
    convo.messages.append(assistant_message)

    if not convo.title or convo.title == DEFAULT_TITLE:
        convo.title = user_message.content[:TITLE_LENGTH].strip() or "Conversation"
    convo.updated_at = now_ms()

    await save_conversation(convo, store)
    await memory.record(convo.id, user_message, store=store)
    await memory.record(convo.id, assistant_message, store=store)
    return convo


async def send_and_stream(
    conversation: Conversation,
    user_message: Message,
    on_chunk: ChunkCallback,
    on_status: StatusCallback | None = None,
    *,
    search_results: str | None = None,
    session: StreamSession | None = None,
    provider: ChatProvider | None = None,
    store: KeyValueStore | None = None,
) -> Conversation:
    """Run one streamed turn; resolves with the updated conversation once it is saved."""
    convo, provider, context = await _prepare_turn(
        conversation, user_message, on_status, search_results, provider, store
    )
    session = session or StreamSession(conversation_id=convo.id)

    logger.info(
        "[chat] streaming turn for {} via {} ({} messages, ~{} tokens)",
        convo.id,
        provider.name,
        len(context.messages),
        context.estimated_tokens,
    )
    reply = await stream_reply(
        provider,
        context.system_prompt,
        context.messages,
        resolve_options(convo),
        on_chunk,
        session=session,
    )
    return await _finalize_turn(convo, user_message, reply, store)


async def send_message(
    conversation: Conversation,
    user_message: Message,
    *,
    search_results: str | None = None,
    provider: ChatProvider | None = None,
    store: KeyValueStore | None = None,
) -> Conversation:
    """Non-streaming variant of send_and_stream."""
    convo, provider, context = await _prepare_turn(
        conversation, user_message, None, search_results, provider, store
    )
    reply = await complete(provider, context.system_prompt, context.messages, resolve_options(convo))
    return await _finalize_turn(convo, user_message, reply, store)
