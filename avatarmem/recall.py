from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from avatarmem.embedding.client import EmbeddingClient
from avatarmem.models import QueryHit
from avatarmem.scope import ScopeKey
from avatarmem.stores.memory_store import MemoryStore

logger = logging.getLogger("avatarmem.recall")


class MemoryRecall:
    """Read-side entry point used while composing an avatar's reply.

    Embeds the query text and runs a scoped similarity query. Failures are
    raised to the caller, which decides whether to answer without memories.
    """

    def __init__(
        self,
        *,
        embedding_client: EmbeddingClient,
        store: MemoryStore,
        default_threshold: float = 0.5,
        default_max_results: int = 5,
        logger: Any = logger,
    ) -> None:
        self._embedding_client = embedding_client
        self._store = store
        self._default_threshold = default_threshold
        self._default_max_results = default_max_results
        self._logger = logger

    def recall(
        self,
        scope: ScopeKey,
        text: str,
        similarity_threshold: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> List[QueryHit]:
        threshold = self._default_threshold if similarity_threshold is None else similarity_threshold
        limit = self._default_max_results if max_results is None else max_results
        vector = self._embedding_client.embed(text)
        hits = self._store.query(scope, vector, threshold, limit)
        self._logger.debug("Recalled %d fragments for %s", len(hits), scope)
        return hits


def format_for_prompt(hits: Iterable[QueryHit]) -> str:
    """Render recalled fragments as a block for the reply prompt; empty when none."""
    lines = [f"- {hit.fragment.fragment_text}" for hit in hits]
    if not lines:
        return ""
    return "\nRelevant memories about the user:\n" + "\n".join(lines) + "\n"
