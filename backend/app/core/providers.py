import base64
import json
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Protocol

import httpx
from google import genai
from google.genai import types as genai_types
from loguru import logger

from app.config import Settings, get_settings
from app.core.errors import (
    PROVIDER_LABELS,
    ConfigurationError,
    ProtocolError,
    ProviderHTTPError,
    StreamEventError,
)
from app.models.chat import Attachment, Conversation, Message


@dataclass
class ChatOptions:
    model: str
    temperature: float
    max_tokens: int


class ChatProvider(Protocol):
    name: str

    async def chat(self, system_prompt: str, messages: list[Message], options: ChatOptions) -> str: ...

    def stream(self, system_prompt: str, messages: list[Message], options: ChatOptions) -> AsyncIterator[str]: ...


# ── Shared helpers ──────────────────────────────────────────────────────────────

def split_data_url(url: str) -> tuple[str, str] | None:
    """'data:image/png;base64,AAAA' -> ('image/png', 'AAAA')."""
    if not url or not url.startswith("data:"):
        return None
    header, sep, data = url.partition(",")
    if not sep or not header.endswith(";base64"):
        return None
    return header[len("data:"):-len(";base64")], data


def image_attachments(message: Message, limit: int = 4) -> list[Attachment]:
    return [a for a in message.attachments if not a.is_inline_text][:limit]


def _error_message(body: bytes) -> str | None:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        text = body.decode("utf-8", errors="replace").strip()
        return text[:300] or None
    if not isinstance(data, dict):
        return None
    err = data.get("error")
    if isinstance(err, dict):
        return err.get("message") or err.get("type") or err.get("status")
    if isinstance(err, str):
        return err
    return data.get("message")


async def raise_for_provider_status(resp: httpx.Response) -> None:
    if resp.is_success:
        return
    body = await resp.aread()
    message = _error_message(body) or f"HTTP {resp.status_code}"
    logger.error("[providers] HTTP {} from {}: {}", resp.status_code, resp.url.host, message)
    raise ProviderHTTPError(resp.status_code, message)


def _parse_data_line(line: str) -> dict | None:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return {"__done__": True}
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("[providers] skipping malformed stream line: {!r}", data[:80])
        return None
    return event if isinstance(event, dict) else None


# ── Format A: OpenAI-compatible ─────────────────────────────────────────────────

async def openai_deltas(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    async for line in lines:
        event = _parse_data_line(line)
        if event is None:
            continue
        if event.get("__done__"):
            return
        if isinstance(event.get("error"), dict):
            raise StreamEventError(event["error"].get("message") or "stream error")

        choices = event.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            continue
        content = (choices[0].get("delta") or {}).get("content")
        if isinstance(content, str) and content:
            yield content


def openai_message(message: Message) -> dict:
    images = image_attachments(message)
    if not images:
        return {"role": message.role, "content": message.content}

    parts: list[dict] = [{"type": "text", "text": message.content}]
    for att in images:
        parts.append({"type": "image_url", "image_url": {"url": att.payload}})
    return {"role": message.role, "content": parts}


class OpenAICompatibleProvider:
    def __init__(
        self,
        name: str,
        api_key: str,
        host: str,
        path: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self._api_key = api_key
        self._endpoint = f"{host.rstrip('/')}{path}"
        self._timeout = timeout
        self._transport = transport

    def _payload(self, system_prompt: str, messages: list[Message], options: ChatOptions, stream: bool) -> dict:
        body_messages = [openai_message(m) for m in messages]
        if system_prompt:
            body_messages.insert(0, {"role": "system", "content": system_prompt})
        return {
            "model": options.model,
            "messages": body_messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": stream,
        }

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    async def chat(self, system_prompt: str, messages: list[Message], options: ChatOptions) -> str:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                self._endpoint,
                headers=self._headers(),
                json=self._payload(system_prompt, messages, options, stream=False),
            )
            await raise_for_provider_status(resp)
            data = resp.json()

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProtocolError(f"Invalid response from {self.name}", provider=self.name) from e
        if not content:
            raise ProtocolError(f"Invalid response from {self.name}", provider=self.name)
        return content.strip()

    async def stream(self, system_prompt: str, messages: list[Message], options: ChatOptions) -> AsyncIterator[str]:
        timeout = httpx.Timeout(self._timeout, read=None)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            async with client.stream(
                "POST",
                self._endpoint,
                headers=self._headers(),
                json=self._payload(system_prompt, messages, options, stream=True),
            ) as resp:
                await raise_for_provider_status(resp)
                async for delta in openai_deltas(resp.aiter_lines()):
                    yield delta


# ── Format B: Anthropic ─────────────────────────────────────────────────────────

async def claude_deltas(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    # "event:" lines repeat the type that the data payload already carries
    async for line in lines:
        event = _parse_data_line(line)
        if event is None or event.get("__done__"):
            continue

        event_type = event.get("type")
        if event_type == "content_block_delta":
            text = (event.get("delta") or {}).get("text")
            if isinstance(text, str) and text:
                yield text
        elif event_type == "error":
            err = event.get("error") or {}
            raise StreamEventError(f"{err.get('type', 'error')}: {err.get('message', 'stream error')}")


def claude_message(message: Message) -> dict:
    role = "assistant" if message.role == "assistant" else "user"
    images = []
    for att in image_attachments(message):
        parsed = split_data_url(att.payload)
        if parsed is None:
            continue
        media_type, data = parsed
        images.append({"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}})

    if not images:
        return {"role": role, "content": message.content}
    return {"role": role, "content": [*images, {"type": "text", "text": message.content}]}


class ClaudeProvider:
    name = "claude"

    def __init__(
        self,
        api_key: str,
        host: str,
        path: str,
        api_version: str = "2023-06-01",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._endpoint = f"{host.rstrip('/')}{path}"
        self._api_version = api_version
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": self._api_version,
        }

    def _payload(self, system_prompt: str, messages: list[Message], options: ChatOptions, stream: bool) -> dict:
        return {
            "model": options.model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "system": system_prompt or "",
            "messages": [claude_message(m) for m in messages],
            "stream": stream,
        }

    async def chat(self, system_prompt: str, messages: list[Message], options: ChatOptions) -> str:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                self._endpoint,
                headers=self._headers(),
                json=self._payload(system_prompt, messages, options, stream=False),
            )
            await raise_for_provider_status(resp)
            data = resp.json()

        blocks = data.get("content") if isinstance(data, dict) else None
        text = "".join(
            b.get("text", "") for b in blocks or [] if isinstance(b, dict) and b.get("type", "text") == "text"
        )
        if not text:
            raise ProtocolError("Invalid response from Claude", provider=self.name)
        return text.strip()

    async def stream(self, system_prompt: str, messages: list[Message], options: ChatOptions) -> AsyncIterator[str]:
        timeout = httpx.Timeout(self._timeout, read=None)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            async with client.stream(
                "POST",
                self._endpoint,
                headers=self._headers(),
                json=self._payload(system_prompt, messages, options, stream=True),
            ) as resp:
                await raise_for_provider_status(resp)
                async for delta in claude_deltas(resp.aiter_lines()):
                    yield delta


# ── Format C: Gemini ────────────────────────────────────────────────────────────

def chunk_text(chunk) -> str:
    """SDK chunks expose text either as a property or as a method."""
    text = getattr(chunk, "text", None)
    if callable(text):
        text = text()
    return text or ""


def sanitize_gemini_model(model: str) -> str:
    return model.removeprefix("models/")


def gemini_content(message: Message) -> genai_types.Content:
    parts = [genai_types.Part.from_text(text=message.content)]
    for att in image_attachments(message):
        parsed = split_data_url(att.payload)
        if parsed is None:
            continue
        mime_type, data = parsed
        parts.append(genai_types.Part.from_bytes(data=base64.b64decode(data), mime_type=mime_type))
    return genai_types.Content(role="model" if message.role == "assistant" else "user", parts=parts)


class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: str, client=None):
        self._api_key = api_key
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _config(self, system_prompt: str, options: ChatOptions) -> genai_types.GenerateContentConfig:
        return genai_types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            temperature=options.temperature,
            max_output_tokens=options.max_tokens,
        )

    async def chat(self, system_prompt: str, messages: list[Message], options: ChatOptions) -> str:
        response = await self._get_client().aio.models.generate_content(
            model=sanitize_gemini_model(options.model),
            contents=[gemini_content(m) for m in messages],
            config=self._config(system_prompt, options),
        )
        text = chunk_text(response)
        if not text:
            feedback = getattr(response, "prompt_feedback", None)
            block_reason = getattr(feedback, "block_reason", None)
            logger.error("[providers] Gemini returned empty content (block_reason={})", block_reason)
            detail = f"Gemini blocked the response ({block_reason})." if block_reason else "Gemini returned empty content."
            raise ProtocolError(detail, provider=self.name)
        return text.strip()

    async def stream(self, system_prompt: str, messages: list[Message], options: ChatOptions) -> AsyncIterator[str]:
        chunks = await self._get_client().aio.models.generate_content_stream(
            model=sanitize_gemini_model(options.model),
            contents=[gemini_content(m) for m in messages],
            config=self._config(system_prompt, options),
        )
        async for chunk in chunks:
            text = chunk_text(chunk)
            if text:
                yield text


# ── Factory ─────────────────────────────────────────────────────────────────────

ProviderFactory = Callable[[Settings], ChatProvider]


def _require_key(settings: Settings, name: str) -> str:
    key = settings.provider_api_key(name)
    if not key:
        raise ConfigurationError(
            f"{PROVIDER_LABELS.get(name, name)} API key not configured. Add it to your settings.",
            provider=name,
        )
    return key


def _openai_factory(settings: Settings) -> ChatProvider:
    return OpenAICompatibleProvider(
        "openai",
        _require_key(settings, "openai"),
        settings.openai_host,
        settings.openai_path,
        timeout=settings.request_timeout,
    )


def _copilot_factory(settings: Settings) -> ChatProvider:
    return OpenAICompatibleProvider(
        "copilot",
        _require_key(settings, "copilot"),
        settings.copilot_host,
        settings.copilot_path,
        timeout=settings.request_timeout,
    )


def _claude_factory(settings: Settings) -> ChatProvider:
    return ClaudeProvider(
        _require_key(settings, "claude"),
        settings.claude_host,
        settings.claude_path,
        api_version=settings.claude_api_version,
        timeout=settings.request_timeout,
    )


def _gemini_factory(settings: Settings) -> ChatProvider:
    return GeminiProvider(_require_key(settings, "gemini"))


_factories: dict[str, ProviderFactory] = {
    "openai": _openai_factory,
    "copilot": _copilot_factory,
    "claude": _claude_factory,
    "gemini": _gemini_factory,
}


def register_provider(name: str, factory: ProviderFactory) -> None:
    _factories[name.lower()] = factory
    logger.debug("[providers] registered provider {}", name.lower())


def unregister_provider(name: str) -> None:
    _factories.pop(name.lower(), None)


def available_providers() -> list[str]:
    return sorted(_factories)


def create_provider(name: str | None, settings: Settings | None = None) -> ChatProvider:
    settings = settings or get_settings()
    factory = _factories.get((name or "").lower())
    if factory is None:
        raise ConfigurationError(
            f"Unknown provider: {name}. Available providers: {', '.join(available_providers())}",
            provider=name,
        )
    return factory(settings)


def default_model(provider: str, settings: Settings) -> str | None:
    return getattr(settings, f"{provider}_model", None)


def resolve_options(conversation: Conversation, settings: Settings | None = None) -> ChatOptions:
    settings = settings or get_settings()
    model = conversation.model or default_model(conversation.provider, settings)
    if not model:
        raise ConfigurationError(
            f"No model configured for provider {conversation.provider}",
            provider=conversation.provider,
        )
    return ChatOptions(
        model=model,
        temperature=(
            conversation.temperature
            if conversation.temperature is not None
            else settings.default_temperature
        ),
        max_tokens=conversation.max_tokens or settings.default_max_tokens,
    )
