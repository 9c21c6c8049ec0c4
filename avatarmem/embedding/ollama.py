"""Embeddings from a local Ollama server."""

import logging
from typing import Any, Dict, List, Optional

import requests

from avatarmem.embedding.provider import EmbeddingProvider

logger = logging.getLogger(__name__)


def _first_vector(data: Dict[str, Any]) -> Optional[List[float]]:
    # /api/embed answers {"embeddings": [[...]]}; the legacy /api/embeddings
    # route and OpenAI-compatible proxies use other shapes.
    embeddings = data.get("embeddings")
    if isinstance(embeddings, list) and embeddings and isinstance(embeddings[0], list):
        return embeddings[0]
    if isinstance(data.get("embedding"), list):
        return data["embedding"]
    rows = data.get("data")
    if isinstance(rows, list) and rows and isinstance(rows[0], dict):
        candidate = rows[0].get("embedding")
        if isinstance(candidate, list):
            return candidate
    return None


class OllamaEmbeddingProvider(EmbeddingProvider):
    """POSTs to ``{base_url}/api/embed`` once per text.

    The model (e.g. ``nomic-embed-text``) must already be pulled on the server.
    """

    def __init__(
        self,
        base_url: str,
        model: str = "nomic-embed-text",
        dimension: int = 768,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._dimension = dimension
        self.session = session or requests.Session()
        logger.info("Ollama embeddings ready: %s at %s (%dd)", model, self.base_url, dimension)

    def generate_embedding(self, text: str) -> List[float]:
        response = self.session.post(
            f"{self.base_url}/api/embed",
            json={"model": self.model, "input": text},
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        vector = _first_vector(payload) if isinstance(payload, dict) else None
        if vector is None:
            raise ValueError(f"Unexpected Ollama embedding response format: {str(payload)[:200]}")
        return self.check_dimension(vector)

    def dimension(self) -> int:
        return self._dimension

    def provider_name(self) -> str:
        return f"ollama:{self.model}"
