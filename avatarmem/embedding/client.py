from __future__ import annotations

import logging
import math
from typing import List

from avatarmem.embedding.provider import EmbeddingProvider
from avatarmem.errors import EmbeddingProviderError, EmptyInputError, classify_provider_error

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Turns text into a fixed-length vector through a configured provider.

    Validates input and output and maps provider failures onto
    ``EmbeddingProviderError``. One outbound call per ``embed``; no retries.
    """

    def __init__(self, provider: EmbeddingProvider, dimension: int | None = None) -> None:
        self.provider = provider
        self._dimension = dimension or provider.dimension()

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> List[float]:
        if not isinstance(text, str) or not text.strip():
            raise EmptyInputError("Cannot embed blank text")

        name = self.provider.provider_name()
        try:
            vector = self.provider.generate_embedding(text.strip())
        except Exception as exc:
            error = classify_provider_error(exc, name, text_length=len(text))
            logger.warning("Embedding request failed (%s, retryable=%s): %s", name, error.retryable, exc)
            raise error from exc

        if not isinstance(vector, (list, tuple)) or len(vector) != self._dimension:
            raise EmbeddingProviderError(
                f"Provider {name} returned a malformed embedding",
                context={
                    "provider": name,
                    "expected": self._dimension,
                    "actual": len(vector) if isinstance(vector, (list, tuple)) else None,
                },
            )
        try:
            values = [float(component) for component in vector]
        except (TypeError, ValueError) as exc:
            raise EmbeddingProviderError(
                f"Provider {name} returned non-numeric embedding values",
                context={"provider": name},
            ) from exc
        if not all(math.isfinite(value) for value in values):
            raise EmbeddingProviderError(
                f"Provider {name} returned non-finite embedding values",
                context={"provider": name},
            )
        return values
