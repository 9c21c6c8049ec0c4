"""Interface every embedding backend implements."""

from abc import ABC, abstractmethod
from typing import List, Sequence


class EmbeddingProvider(ABC):
    """Turns one piece of fragment or query text into a vector.

    Implementations make a single outbound call per request. They never retry;
    the pipeline decides whether a failure is worth another attempt.
    """

    @abstractmethod
    def generate_embedding(self, text: str) -> List[float]:
        """Embed ``text``; raise on transport errors or malformed responses."""

    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this provider returns."""

    @abstractmethod
    def provider_name(self) -> str:
        """Label used in logs and health output, e.g. ``openai:text-embedding-3-small``."""

    def check_dimension(self, vector: Sequence[float]) -> List[float]:
        """Return ``vector`` as a list, raising ValueError when its length is wrong."""
        values = list(vector)
        if len(values) != self.dimension():
            raise ValueError(
                f"{self.provider_name()} returned {len(values)} dimensions, "
                f"expected {self.dimension()}"
            )
        return values

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.provider_name()} d={self.dimension()}>"
