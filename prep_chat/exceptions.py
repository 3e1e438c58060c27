"""Domain exception hierarchy and failure classification for the chat engine."""

from __future__ import annotations

from enum import Enum


class PrepChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ChatValidationError(PrepChatError):
    """Raised synchronously when a request or mutation is not legal right now."""


class ChatNetworkError(PrepChatError):
    """Raised when the transport fails before or during a stream."""


class ChatRateLimitError(PrepChatError):
    """Raised when the provider reports a rate-limit or quota failure."""


class ChatProviderError(PrepChatError):
    """Raised for any other provider-reported failure."""


class ConversationNotFoundError(PrepChatError):
    """Raised when a conversation or message id cannot be resolved."""


class ConfigValidationError(PrepChatError):
    """Raised when configuration cannot be validated safely."""


class PersistenceError(PrepChatError):
    """Raised when persistence operations fail."""


class PersistenceFormatError(PersistenceError):
    """Raised when a persisted payload cannot be decoded safely."""


class ErrorKind(str, Enum):
    """User-facing failure classes with distinct notification behavior."""

    VALIDATION = "validation"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    PROVIDER = "provider"
    NOT_FOUND = "not_found"


# Codes stored on persisted error parts.
RATE_LIMIT_CODE = "RATE_LIMIT"
NETWORK_ERROR_CODE = "NETWORK_ERROR"
STREAM_ERROR_CODE = "STREAM_ERROR"

ERROR_CODES: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMIT: RATE_LIMIT_CODE,
    ErrorKind.NETWORK: NETWORK_ERROR_CODE,
    ErrorKind.PROVIDER: STREAM_ERROR_CODE,
}

RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "429",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "rate_limit",
    "quota",
    "resource_exhausted",
    "resource-exhausted",
    "resource exhausted",
    "too many requests",
)

_KIND_BY_EXCEPTION: tuple[tuple[type[PrepChatError], ErrorKind], ...] = (
    (ChatValidationError, ErrorKind.VALIDATION),
    (ChatRateLimitError, ErrorKind.RATE_LIMIT),
    (ChatNetworkError, ErrorKind.NETWORK),
    (ConversationNotFoundError, ErrorKind.NOT_FOUND),
    (ChatProviderError, ErrorKind.PROVIDER),
)


def looks_rate_limited(text: str | None) -> bool:
    """Return True when provider error text carries a rate-limit marker."""
    lowered = (text or "").lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def classify_error(error: BaseException | str, code: str | None = None) -> ErrorKind:
    """Classify an exception or provider error text into an ``ErrorKind``.

    Typed domain exceptions keep their class. Anything else is a provider
    failure unless its text or code looks like a rate limit.
    """
    if isinstance(error, BaseException):
        for exc_type, kind in _KIND_BY_EXCEPTION:
            if isinstance(error, exc_type):
                return kind
        text = str(error)
    else:
        text = error
    if code == RATE_LIMIT_CODE or looks_rate_limited(code) or looks_rate_limited(text):
        return ErrorKind.RATE_LIMIT
    if code == NETWORK_ERROR_CODE:
        return ErrorKind.NETWORK
    return ErrorKind.PROVIDER


def kind_from_code(code: str | None) -> ErrorKind:
    """Map a persisted error code back to its ``ErrorKind``."""
    for kind, known_code in ERROR_CODES.items():
        if code == known_code:
            return kind
    return ErrorKind.PROVIDER
