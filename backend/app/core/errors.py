import asyncio
import re
from dataclasses import dataclass
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    NETWORK = "network"
    PROTOCOL = "protocol"
    QUOTA = "quota"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    PROVIDER = "provider"


class ChatError(Exception):
    kind: ErrorKind = ErrorKind.PROVIDER
    retryable: bool = False

    def __init__(self, message: str, provider: str | None = None, kind: ErrorKind | None = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict:
        return {
            "error": self.kind.value,
            "message": self.message,
            "provider": self.provider,
            "retryable": self.retryable,
        }


class ConfigurationError(ChatError):
    kind = ErrorKind.CONFIGURATION


class ValidationError(ChatError):
    kind = ErrorKind.VALIDATION


class TransportError(ChatError):
    kind = ErrorKind.NETWORK
    retryable = True


class ProtocolError(ChatError):
    kind = ErrorKind.PROTOCOL


class QuotaError(ChatError):
    kind = ErrorKind.QUOTA
    retryable = True


class AuthError(ChatError):
    kind = ErrorKind.AUTH


class InvalidRequestError(ChatError):
    kind = ErrorKind.INVALID_REQUEST


class ProviderError(ChatError):
    kind = ErrorKind.PROVIDER
    retryable = True


class ProviderHTTPError(Exception):
    """Raw non-2xx provider response, before classification."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class StreamEventError(Exception):
    """Error event delivered inside an otherwise healthy stream."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


PROVIDER_LABELS = {
    "openai": "OpenAI",
    "copilot": "Copilot",
    "claude": "Claude",
    "gemini": "Gemini",
}

BILLING_HINTS = {
    "openai": "https://platform.openai.com/account/billing",
    "claude": "https://console.anthropic.com/settings/billing",
    "gemini": "https://ai.google.dev/pricing",
}

KEY_HINTS = {
    "openai": "https://platform.openai.com/api-keys",
    "claude": "https://console.anthropic.com/settings/keys",
    "gemini": "https://aistudio.google.com/app/apikey",
}


@dataclass(frozen=True)
class ErrorRule:
    error_class: type[ChatError]
    status_codes: tuple[int, ...]
    markers: tuple[str, ...]


# Order matters: the first matching rule wins.
ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        QuotaError,
        status_codes=(429,),
        markers=("429", "RESOURCE_EXHAUSTED", "insufficient_quota", "quota", "rate_limit"),
    ),
    ErrorRule(
        AuthError,
        status_codes=(401, 403),
        markers=(
            "401",
            "403",
            "PERMISSION_DENIED",
            "UNAUTHENTICATED",
            "invalid_api_key",
            "authentication_error",
            "invalid x-api-key",
        ),
    ),
    ErrorRule(
        InvalidRequestError,
        status_codes=(400, 404, 422),
        markers=("400", "INVALID_ARGUMENT", "invalid_request_error"),
    ),
)


def _label(provider: str | None) -> str:
    return PROVIDER_LABELS.get(provider or "", provider or "Provider")


def _message_for(error_class: type[ChatError], provider: str | None, detail: str) -> str:
    label = _label(provider)
    if error_class is QuotaError:
        hint = BILLING_HINTS.get(provider or "")
        suffix = f" Check your billing at {hint} or wait for the quota to reset." if hint else " Wait for the quota to reset and try again."
        return f"{label} API quota exceeded.{suffix}"
    if error_class is AuthError:
        hint = KEY_HINTS.get(provider or "")
        suffix = f" Check your key at {hint}." if hint else ""
        return f"{label} API key is invalid or doesn't have permission.{suffix}"
    if error_class is InvalidRequestError:
        return f"Invalid request to {label} API. Please check your model name and settings. ({detail})"
    return f"{label} API error: {detail}"


def _has_marker(marker: str, text: str) -> bool:
    # Bare status codes only count as whole numbers, not digits inside ids or counts
    if marker.isdigit():
        return re.search(rf"\b{marker}\b", text) is not None
    return marker in text


def match_rule(status_code: int | None, text: str) -> type[ChatError] | None:
    if status_code is not None:
        for rule in ERROR_RULES:
            if status_code in rule.status_codes:
                return rule.error_class
    for rule in ERROR_RULES:
        if any(_has_marker(marker, text) for marker in rule.markers):
            return rule.error_class
    return None


def classify_error(exc: BaseException, provider: str | None = None) -> ChatError:
    """Map any exception raised while talking to a provider onto the taxonomy."""
    if isinstance(exc, ChatError):
        if exc.provider is None:
            exc.provider = provider
        return exc

    label = _label(provider)
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return TransportError(
            f"{label} took too long to respond. Try a shorter message or check your API endpoint.",
            provider=provider,
            kind=ErrorKind.TIMEOUT,
        )

    status_code = getattr(exc, "status_code", None)
    if not isinstance(status_code, int):
        status_code = getattr(exc, "code", None)
        if not isinstance(status_code, int):
            status_code = None

    detail = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    text = f"{exc} {detail}"

    if isinstance(exc, httpx.TransportError):
        return TransportError(
            f"Cannot reach {label}. Check your network connection and API host.",
            provider=provider,
        )

    error_class = match_rule(status_code, text)
    if error_class is not None:
        return error_class(_message_for(error_class, provider, detail), provider=provider)

    return ProviderError(_message_for(ProviderError, provider, detail), provider=provider)


HTTP_STATUS_BY_KIND = {
    ErrorKind.CONFIGURATION: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.QUOTA: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.NETWORK: 502,
    ErrorKind.PROTOCOL: 502,
    ErrorKind.PROVIDER: 502,
}
