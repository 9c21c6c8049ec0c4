"""Circuit breakers around the pipeline's provider and store calls.

A breaker has three states:

- CLOSED: calls go through and failures are counted
- OPEN: calls are refused with ``CircuitOpenError`` until the recovery
  timeout has passed
- HALF_OPEN: calls go through again; enough successes close the breaker,
  one failure reopens it
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from avatarmem.errors import CircuitOpenError, EmbeddingProviderError, StorageError

logger = logging.getLogger("avatarmem.circuit_breaker")

T = TypeVar("T")

EXTRACTION = "extraction"
EMBEDDING = "embedding"
STORAGE = "storage"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception_types: Tuple[Type[BaseException], ...] = (Exception,),
        success_threshold: int = 1,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            name: Operation the breaker guards, used in logs and health output
            failure_threshold: Consecutive failures before the breaker opens
            recovery_timeout: Seconds to stay open before trying half-open
            expected_exception_types: Exceptions that count as failures
            success_threshold: Half-open successes needed to close again
            time_fn: Clock used for the recovery timeout
        """
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_timeout = recovery_timeout
        self.expected_exception_types = expected_exception_types
        self.success_threshold = max(1, success_threshold)
        self._time = time_fn
        self._lock = threading.Lock()

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.times_opened = 0
        self.last_failure_time: Optional[float] = None
        self.last_exception: Optional[BaseException] = None

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return False
        return self._time() - self.last_failure_time >= self.recovery_timeout

    def before_call(self) -> None:
        """Raise ``CircuitOpenError`` if the breaker is refusing calls."""
        with self._lock:
            if self.state == CircuitState.OPEN and self._should_attempt_reset():
                logger.info("Circuit breaker '%s' attempting reset (half-open)", self.name)
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0

            if self.state == CircuitState.OPEN:
                retry_in = self.recovery_timeout - (self._time() - (self.last_failure_time or 0.0))
                message = f"Circuit breaker '{self.name}' is open"
                if self.last_exception is not None:
                    message += f" (last error: {self.last_exception})"
                raise CircuitOpenError(
                    message,
                    context={
                        "breaker": self.name,
                        "failure_count": self.failure_count,
                        "retry_in_seconds": round(max(0.0, retry_in), 3),
                    },
                    retryable=False,
                )

    def record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    logger.info("Circuit breaker '%s' closing after recovery", self.name)
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    self.success_count = 0
                    self.last_exception = None
            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0

    def record_failure(self, exception: BaseException) -> None:
        with self._lock:
            self.last_failure_time = self._time()
            self.last_exception = exception

            if self.state == CircuitState.HALF_OPEN:
                logger.warning("Circuit breaker '%s' reopening after half-open failure", self.name)
                self.state = CircuitState.OPEN
                self.failure_count = 1
                self.success_count = 0
                self.times_opened += 1
            elif self.state == CircuitState.CLOSED:
                self.failure_count += 1
                if self.failure_count >= self.failure_threshold:
                    logger.error(
                        "Circuit breaker '%s' opening after %d failures: %s",
                        self.name,
                        self.failure_count,
                        exception,
                    )
                    self.state = CircuitState.OPEN
                    self.times_opened += 1

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` through the breaker.

        Exceptions of ``expected_exception_types`` count as failures; anything
        else propagates without touching the breaker.
        """
        self.before_call()
        try:
            result = func(*args, **kwargs)
        except self.expected_exception_types as exc:
            self.record_failure(exc)
            raise
        self.record_success()
        return result

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self.state == CircuitState.OPEN and not self._should_attempt_reset()

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "times_opened": self.times_opened,
                "last_exception": str(self.last_exception) if self.last_exception else None,
            }


def _extraction_failures() -> Tuple[Type[BaseException], ...]:
    import openai

    return (openai.OpenAIError, ConnectionError, TimeoutError)


def build_pipeline_breakers(
    *,
    failure_threshold: int = 5,
    recovery_timeout: float = 60.0,
    time_fn: Callable[[], float] = time.monotonic,
) -> Dict[str, CircuitBreaker]:
    """One breaker per pipeline dependency: extraction, embedding and storage."""
    failures = {
        EXTRACTION: _extraction_failures(),
        EMBEDDING: (EmbeddingProviderError,),
        STORAGE: (StorageError,),
    }
    return {
        name: CircuitBreaker(
            name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception_types=expected,
            time_fn=time_fn,
        )
        for name, expected in failures.items()
    }


def breaker_status(breakers: Dict[str, CircuitBreaker]) -> Dict[str, Any]:
    """Health summary: every breaker's state plus whether all are accepting calls."""
    states = {name: breaker.get_state() for name, breaker in breakers.items()}
    return {
        "healthy": not any(breaker.is_open for breaker in breakers.values()),
        "breakers": states,
    }
