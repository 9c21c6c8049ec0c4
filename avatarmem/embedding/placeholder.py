"""Offline embeddings built by hashing words into buckets."""

import hashlib
import math
import re
from typing import List

from avatarmem.embedding.provider import EmbeddingProvider

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class PlaceholderEmbeddingProvider(EmbeddingProvider):
    """Deterministic, unit-length vectors for local development.

    Each lowercased word lands in one signed bucket, so texts that share words
    score above zero. There is no notion of synonyms: "dog" and "pets" are
    unrelated here, and recall quality is accordingly poor.
    """

    def __init__(self, dimension: int = 1536):
        if dimension < 1:
            raise ValueError("dimension must be positive")
        self._dimension = dimension

    def generate_embedding(self, text: str) -> List[float]:
        vector = [0.0] * self._dimension
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:7], "little") % self._dimension
            vector[bucket] += 1.0 if digest[7] & 1 else -1.0

        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0.0:
            # Text without word characters still needs a valid cosine vector
            vector[0] = 1.0
            return vector
        return [value / norm for value in vector]

    def dimension(self) -> int:
        return self._dimension

    def provider_name(self) -> str:
        return "placeholder"
