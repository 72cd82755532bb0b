"""Error kinds raised across chunking, embedding, execution and search."""

from __future__ import annotations

from typing import Any

THROTTLED_STATUS = 429
_SERVER_ERROR_MIN = 500
_SERVER_ERROR_MAX = 600  # Exclusive (5xx range)


class RAGError(Exception):
    """Base exception for the knowledge RAG package."""


class ConfigurationError(RAGError):
    """Raised when a component is used before it has been initialized."""


class ProviderError(RAGError):
    """Base for failures reported by an embedding or completion provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ThrottledError(ProviderError):
    """Provider signalled a request or token rate limit (HTTP 429)."""

    def __init__(self, message: str = "Rate limit exceeded", *, status_code: int | None = THROTTLED_STATUS) -> None:
        super().__init__(message, status_code=status_code)


class TransientProviderError(ProviderError):
    """Retryable server-side failure (HTTP 5xx)."""


class FatalProviderError(ProviderError):
    """Non-retryable provider failure such as auth or malformed requests."""


class InvalidEmbeddingError(RAGError):
    """An embedding is missing or is not a numeric sequence."""


class DimensionMismatchError(RAGError):
    """Query and candidate vectors have different lengths."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Vectors must have the same length: {expected} != {actual}")
        self.expected = expected
        self.actual = actual


class BatchCancelledError(RAGError):
    """Batch execution was cancelled through its cancellation event."""


class PartialBatchFailureError(RAGError):
    """Some batches of a rate-limited execution failed terminally."""

    def __init__(self, failures: list[Any]) -> None:
        ranges = ", ".join(f"[{f.start}:{f.start + f.size}]" for f in failures)
        super().__init__(f"{len(failures)} batch(es) failed for item ranges {ranges}")
        self.failures = failures


class KnowledgeStoreError(RAGError):
    """A persisted knowledge vector set could not be read or written."""


def extract_status_code(exc: BaseException) -> int | None:
    """Return the HTTP-like status code carried by a provider exception."""
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None) or getattr(response, "status", None)
        if isinstance(value, int):
            return value
    return None


def classify_provider_error(exc: BaseException) -> type[ProviderError]:
    """Map any exception to the retry classifier's three provider kinds."""
    if isinstance(exc, ThrottledError):
        return ThrottledError
    if isinstance(exc, TransientProviderError):
        return TransientProviderError
    if isinstance(exc, FatalProviderError):
        return FatalProviderError

    status = extract_status_code(exc)
    if status == THROTTLED_STATUS:
        return ThrottledError
    if status is not None and _SERVER_ERROR_MIN <= status < _SERVER_ERROR_MAX:
        return TransientProviderError
    return FatalProviderError


def to_provider_error(exc: BaseException) -> ProviderError:
    """Wrap an SDK exception into the matching provider error kind."""
    if isinstance(exc, ProviderError):
        return exc
    kind = classify_provider_error(exc)
    return kind(str(exc) or exc.__class__.__name__, status_code=extract_status_code(exc))
