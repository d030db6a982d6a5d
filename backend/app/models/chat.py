import time
from typing import Literal

from pydantic import BaseModel, Field


def now_ms() -> int:
    return int(time.time() * 1000)


class Attachment(BaseModel):
    name: str
    mime_type: str = "text/plain"
    payload: str = ""
    is_inline_text: bool = False


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)


class Conversation(BaseModel):
    id: str
    title: str = "New chat"
    provider: str
    model: str | None = None
    system_prompt: str = ""
    temperature: float | None = None
    max_tokens: int = 2048
    messages: list[Message] = Field(default_factory=list)
    summary: str | None = None
    summarized_count: int = 0
    include_summary: bool = True
    updated_at: int = Field(default_factory=now_ms)


class MemoryEntry(BaseModel):
    id: str
    text: str
    embedding: list[float]
    timestamp: int = Field(default_factory=now_ms)


class RecalledEntry(MemoryEntry):
    score: float


# ── Request / response schemas ─────────────────────────────────────────────────

class CreateConversationRequest(BaseModel):
    provider: str | None = None
    model: str | None = None
    system_prompt: str = ""
    max_tokens: int | None = None
    temperature: float | None = None


class SendMessageRequest(BaseModel):
    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    search_results: str | None = None


class ChatSendPayload(SendMessageRequest):
    conversation_id: str


class ConversationOut(BaseModel):
    id: str
    title: str
    provider: str
    model: str | None
    message_count: int
    updated_at: int

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationOut":
        return cls(
            id=conversation.id,
            title=conversation.title,
            provider=conversation.provider,
            model=conversation.model,
            message_count=len(conversation.messages),
            updated_at=conversation.updated_at,
        )
