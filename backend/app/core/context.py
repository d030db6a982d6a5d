import base64
import binascii
import math
from dataclasses import dataclass, field

from loguru import logger

from app.config import get_settings
from app.core import memory
from app.db.store import KeyValueStore
from app.models.chat import Attachment, Conversation, Message, RecalledEntry

# Same rough estimate for every provider; trimming decisions depend on it
CHARS_PER_TOKEN = 4

SEARCH_INSTRUCTION = (
    "Use the following web search results to answer the question. "
    "Base your answer on them and cite the sources you rely on."
)


@dataclass
class AssembledContext:
    system_prompt: str
    messages: list[Message]
    estimated_tokens: int
    recalled: list[RecalledEntry] = field(default_factory=list)


def estimate_tokens(messages: list[Message]) -> int:
    total_chars = sum(len(m.content or "") for m in messages)
    return math.ceil(total_chars / CHARS_PER_TOKEN)


def decode_attachment_text(attachment: Attachment) -> str:
    """Inline-text payloads arrive either as raw text or as a data: URL."""
    payload = attachment.payload or ""
    if not payload.startswith("data:"):
        return payload

    header, _, data = payload.partition(",")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(data).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            logger.warning("[context] could not decode attachment {}", attachment.name)
            return ""
    return data


def inline_attachments(message: Message) -> Message:
    """Fold inline-text attachments into the message body; keep the rest (images) as attachments."""
    inline = [a for a in message.attachments if a.is_inline_text]
    if not inline:
        return message

    content = message.content
    for att in inline:
        content += f"\n\n--- File: {att.name} ---\n{decode_attachment_text(att)}\n--- End of {att.name} ---\n"

    return message.model_copy(
        update={
            "content": content,
            "attachments": [a for a in message.attachments if not a.is_inline_text],
        }
    )


def apply_search_results(message: Message, search_results: str | None) -> Message:
    if not search_results or not search_results.strip():
        return message
    content = f"{SEARCH_INSTRUCTION}\n\n{search_results.strip()}\n\nQuestion: {message.content}"
    return message.model_copy(update={"content": content})


def build_system_prompt(
    conversation: Conversation,
    recall_block: str = "",
) -> str:
    sections = []
    if conversation.system_prompt:
        sections.append(conversation.system_prompt.strip())
    if conversation.include_summary and conversation.summary:
        sections.append(f"Conversation summary so far:\n{conversation.summary}")
    if recall_block:
        sections.append(recall_block)
    return "\n\n".join(sections)


def trim_to_budget(window: list[Message], budget: int, floor: int = 2) -> list[Message]:
    """Drop the oldest messages until the estimate fits, never going below `floor` messages."""
    trimmed = list(window)
    while estimate_tokens(trimmed) > budget and len(trimmed) > floor:
        trimmed.pop(0)
    return trimmed


async def build_context(
    conversation: Conversation,
    user_message: Message,
    search_results: str | None = None,
    store: KeyValueStore | None = None,
) -> AssembledContext:
    settings = get_settings()

    current = inline_attachments(user_message)
    current = apply_search_results(current, search_results)

    history = conversation.messages[-settings.history_window:] if settings.history_window > 0 else []
    # History keeps raw attachments; fold file text back in so the provider still sees it
    window = [*(inline_attachments(m) for m in history), current]

    recalled = await memory.search(
        conversation.id,
        current.content,
        top_k=settings.memory_top_k,
        store=store,
    )
    system_prompt = build_system_prompt(conversation, memory.format_recall(recalled))

    before = len(window)
    window = trim_to_budget(window, settings.context_token_budget, settings.min_window_messages)
    estimated = estimate_tokens(window)

    logger.debug(
        "[context] conversation={} window={}/{} tokens~{} recalled={}",
        conversation.id,
        len(window),
        before,
        estimated,
        len(recalled),
    )

    return AssembledContext(
        system_prompt=system_prompt,
        messages=window,
        estimated_tokens=estimated,
        recalled=recalled,
    )
