"""
Error taxonomy for LLM provider calls.

Every failure that crosses the provider boundary is normalised into an
AIError subclass. The `retryable` flag is what the retry executor consults;
classification lives in one place (classify_error) so providers, the
dispatcher and the loop agree on what is worth retrying.
"""

import asyncio
import builtins

import httpx

__all__ = [
    "AIError",
    "NetworkError",
    "ProviderTimeoutError",
    "TimeoutError",
    "RateLimitError",
    "InvalidRequestError",
    "APIError",
    "CancellationError",
    "NoProviderError",
    "classify_error",
    "is_retryable_error",
]


class AIError(Exception):
    """Base class for provider failures."""

    code = "AI_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.cause = cause

    def __str__(self):
        prefix = f"[{self.provider}] " if self.provider else ""
        suffix = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{prefix}{self.message}{suffix}"


class NetworkError(AIError):
    code = "NETWORK_ERROR"
    retryable = True


class ProviderTimeoutError(AIError):
    """Request exceeded the provider timeout. Not the builtin TimeoutError."""
    code = "TIMEOUT"
    retryable = True


# Exported under the taxonomy name; import it qualified to avoid shadowing the builtin
TimeoutError = ProviderTimeoutError


class RateLimitError(AIError):
    code = "RATE_LIMIT"
    retryable = True

    def __init__(self, message: str, provider: str = "unknown", status_code: int | None = 429,
                 cause: BaseException | None = None):
        super().__init__(message, provider, status_code, cause)


class InvalidRequestError(AIError):
    """Bad input or credentials. Retrying cannot help."""
    code = "INVALID_REQUEST"
    retryable = False


class APIError(AIError):
    code = "API_ERROR"
    retryable = True

    def __init__(self, message: str, provider: str = "unknown", status_code: int | None = 500,
                 cause: BaseException | None = None):
        super().__init__(message, provider, status_code, cause)


class CancellationError(AIError):
    code = "CANCELLED"
    retryable = False


class NoProviderError(AIError):
    code = "NO_PROVIDER"
    retryable = False


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_error(error: BaseException, provider: str = "unknown", context: str | None = None) -> AIError:
    """Map any exception onto the AIError taxonomy.

    Args:
        error: The exception raised by a provider call (or anything else)
        provider: Provider id to attach to the result
        context: Optional prefix for the message, e.g. "Ollama chat request failed"

    Returns:
        The error itself when already an AIError, otherwise a new AIError
        subclass with `cause` set to the original exception.
    """
    if isinstance(error, AIError):
        return error

    message = f"{context}: {error}" if context else str(error) or type(error).__name__

    if isinstance(error, asyncio.CancelledError):
        return CancellationError(message, provider, cause=error)

    # TimeoutException subclasses TransportError, so check it first
    if isinstance(error, (httpx.TimeoutException, builtins.TimeoutError, asyncio.TimeoutError)):
        return ProviderTimeoutError(message, provider, cause=error)

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return NetworkError(message, provider, cause=error)

    status = _status_of(error)
    if status is not None:
        if status == 429:
            return RateLimitError(message, provider, status, cause=error)
        if 400 <= status < 500:
            return InvalidRequestError(message, provider, status, cause=error)
        if status >= 500:
            return APIError(message, provider, status, cause=error)

    return APIError(message, provider, status_code=None, cause=error)


def is_retryable_error(error: BaseException) -> bool:
    """True only for AIError instances flagged retryable."""
    if isinstance(error, AIError):
        return error.retryable
    return False
