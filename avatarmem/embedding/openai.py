"""Embeddings through the OpenAI (or an OpenAI-compatible) embeddings endpoint."""

import logging
from typing import List, Optional

from openai import OpenAI

from avatarmem.embedding.provider import EmbeddingProvider

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Calls ``embeddings.create`` with an explicit ``dimensions`` argument.

    SDK-level retries are off by default (``max_retries=0``) so rate limits and
    outages reach the pipeline, which owns the retry policy.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        timeout: float = 30.0,
        max_retries: int = 0,
        base_url: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ):
        if client is None:
            client = OpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout,
                max_retries=max_retries,
            )
        self.client = client
        self.model = model
        self._dimension = dimension
        logger.info("OpenAI embeddings ready: %s (%dd, timeout %.0fs)", model, dimension, timeout)

    def generate_embedding(self, text: str) -> List[float]:
        response = self.client.embeddings.create(
            model=self.model,
            input=text,
            dimensions=self._dimension,
            encoding_format="float",
        )
        items = getattr(response, "data", None) or []
        vector = getattr(items[0], "embedding", None) if items else None
        if not vector:
            raise ValueError(f"OpenAI returned no embedding data (model={self.model})")
        return self.check_dimension(vector)

    def dimension(self) -> int:
        return self._dimension

    def provider_name(self) -> str:
        return f"openai:{self.model}"
