from loguru import logger

from app.config import get_settings
from app.core.providers import ChatProvider, resolve_options
from app.core.streaming import complete
from app.models.chat import Conversation, Message

SUMMARY_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Preserve key facts, details, user preferences, "
    "decisions, tasks, and important context. Keep the summary under 200 words. "
    "Reply with the summary only."
)


def is_due(conversation: Conversation, pending: int = 1, threshold: int | None = None) -> bool:
    threshold = threshold if threshold is not None else get_settings().summary_threshold
    total = len(conversation.messages) + pending
    return total - conversation.summarized_count >= threshold


def format_transcript(messages: list[Message]) -> str:
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


def build_directive(previous_summary: str | None, messages: list[Message]) -> str:
    transcript = format_transcript(messages)
    if not previous_summary:
        return (
            "Produce a concise summary of the following conversation.\n\n"
            f"Conversation:\n{transcript}"
        )
    return (
        "Integrate the new messages into the existing summary. Keep everything from the "
        "existing summary that still matters and add what the new messages contribute; "
        "do not drop earlier context.\n\n"
        f"Existing summary:\n{previous_summary}\n\n"
        f"New messages:\n{transcript}"
    )


async def summarize_if_due(
    conversation: Conversation,
    provider: ChatProvider,
    pending: int = 1,
) -> Conversation:
    """Update conversation.summary in place when due; returns the same conversation."""
    settings = get_settings()
    if not is_due(conversation, pending, settings.summary_threshold):
        return conversation

    tail = conversation.messages[conversation.summarized_count:]
    if not tail:
        return conversation

    logger.debug(
        "[summarizer] summarizing {} messages for {} (previous summary: {})",
        len(tail),
        conversation.id,
        bool(conversation.summary),
    )

    try:
        options = resolve_options(conversation, settings)
        options.max_tokens = min(options.max_tokens, settings.summary_max_tokens)
        summary = await complete(
            provider,
            SUMMARY_SYSTEM_PROMPT,
            [Message(role="user", content=build_directive(conversation.summary, tail))],
            options,
        )
    except Exception as e:
        logger.warning("[summarizer] summarization failed for {}, keeping previous summary: {}", conversation.id, e)
        return conversation

    if not summary or not summary.strip():
        logger.warning("[summarizer] empty summary for {}, keeping previous summary", conversation.id)
        return conversation

    conversation.summary = summary.strip()
    conversation.summarized_count = len(conversation.messages)
    logger.info("[summarizer] summary updated for {}, covers {} messages", conversation.id, conversation.summarized_count)
    return conversation
