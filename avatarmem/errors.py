"""Error taxonomy for the memory fragment subsystem.

Write-side errors are absorbed by the pipeline orchestrator; read-side errors
propagate to the caller. Every error carries a ``context`` dict for logging and
a ``retryable`` flag the orchestrator uses to decide whether to try again.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

TRANSIENT = "transient"
PERMANENT = "permanent"

_TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class AvatarMemoryError(Exception):
    """Base class for every error raised by avatarmem."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        context: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class InvalidScope(AvatarMemoryError, ValueError):
    """Owner or avatar identifier missing, or a malformed relationship token."""


class EmptyInputError(AvatarMemoryError, ValueError):
    """Text to embed is blank after trimming."""


class EmbeddingProviderError(AvatarMemoryError):
    """Embedding provider failed (network, quota, malformed response)."""


class ExtractionParseError(AvatarMemoryError):
    """Text-generation output could not be parsed as a list of fragments."""


class ExtractionUnavailable(AvatarMemoryError):
    """No text-generation client is configured, so nothing can be extracted."""


class FragmentTooLong(AvatarMemoryError, ValueError):
    def __init__(self, max_length: int, actual: int, **kwargs: Any) -> None:
        context = dict(kwargs.pop("context", None) or {})
        context.update({"max_length": max_length, "actual": actual})
        super().__init__(
            f"Fragment text has {actual} characters, limit is {max_length}",
            context=context,
            **kwargs,
        )
        self.max_length = max_length
        self.actual = actual


class CircuitOpenError(AvatarMemoryError):
    """A dependency failed repeatedly; calls are refused until it recovers."""


class DimensionMismatch(AvatarMemoryError, ValueError):
    def __init__(self, expected: int, actual: int, **kwargs: Any) -> None:
        context = dict(kwargs.pop("context", None) or {})
        context.update({"expected": expected, "actual": actual})
        super().__init__(
            f"Embedding has {actual} dimensions, expected {expected}",
            context=context,
            **kwargs,
        )
        self.expected = expected
        self.actual = actual


class StorageError(AvatarMemoryError):
    """Persistence failure, either transient (retryable) or permanent."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = PERMANENT,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if kind not in {TRANSIENT, PERMANENT}:
            raise ValueError(f"Unknown storage error kind: {kind}")
        super().__init__(message, context=context, retryable=kind == TRANSIENT)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind == TRANSIENT


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_storage_error(exc: BaseException, operation: str, **context: Any) -> StorageError:
    """Wrap a persistence-layer exception, deciding whether it is worth retrying."""
    if isinstance(exc, StorageError):
        return exc

    # Imported lazily so this module stays importable without the client stack.
    from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
    import httpx

    kind = PERMANENT
    status = _status_code(exc)
    if isinstance(exc, UnexpectedResponse):
        kind = TRANSIENT if status in _TRANSIENT_STATUS_CODES else PERMANENT
    elif isinstance(exc, (ResponseHandlingException, httpx.TransportError)):
        kind = TRANSIENT
    elif isinstance(exc, (ConnectionError, TimeoutError)):
        kind = TRANSIENT

    details = {"operation": operation, "cause": type(exc).__name__, **context}
    if status is not None:
        details["status_code"] = status
    return StorageError(f"{operation} failed: {exc}", kind=kind, context=details)


def classify_provider_error(exc: BaseException, provider: str, **context: Any) -> EmbeddingProviderError:
    """Wrap an embedding-provider exception with a retryable flag."""
    if isinstance(exc, EmbeddingProviderError):
        return exc

    import openai
    import requests

    retryable = False
    status = _status_code(exc)
    if isinstance(
        exc,
        (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError),
    ):
        retryable = True
        # A 429 caused by an exhausted quota will not clear on its own
        if getattr(exc, "code", None) == "insufficient_quota":
            retryable = False
    elif isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        retryable = True
    elif isinstance(exc, requests.HTTPError):
        retryable = status in _TRANSIENT_STATUS_CODES
    elif isinstance(exc, (ConnectionError, TimeoutError)):
        retryable = True

    details = {"provider": provider, "cause": type(exc).__name__, **context}
    if status is not None:
        details["status_code"] = status
    return EmbeddingProviderError(
        f"Embedding provider {provider} failed: {exc}",
        context=details,
        retryable=retryable,
    )
