"""Extraction -> embedding -> storage for one conversation turn.

``MemoryPipeline.process_turn`` never raises. Every failure is logged, counted
in ``PipelineStats`` and turned into "fewer (or zero) fragments stored".
Each stage runs behind its own circuit breaker, so a provider or store outage
stops costing a round of retries per turn once the breaker opens.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence

from avatarmem.circuit_breaker import (
    EMBEDDING,
    EXTRACTION,
    STORAGE,
    CircuitBreaker,
    build_pipeline_breakers,
)
from avatarmem.embedding.client import EmbeddingClient
from avatarmem.errors import AvatarMemoryError, EmptyInputError, StorageError
from avatarmem.extraction.fragment_extractor import FragmentExtractor
from avatarmem.models import (
    BatchStoreResult,
    ConversationContext,
    ConversationTurn,
    FragmentCandidate,
    FragmentDraft,
)
from avatarmem.scope import ScopeKey, resolve_scope
from avatarmem.service_state import PipelineStats
from avatarmem.stores.memory_store import MemoryStore
from avatarmem.utils.text import detect_emotional_tone, excerpt

logger = logging.getLogger("avatarmem.pipeline")


class MemoryPipeline:
    def __init__(
        self,
        *,
        extractor: FragmentExtractor,
        embedding_client: EmbeddingClient,
        store: MemoryStore,
        stats: Optional[PipelineStats] = None,
        breakers: Optional[Dict[str, CircuitBreaker]] = None,
        embed_concurrency: int = 4,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        excerpt_length: int = 200,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock_fn: Callable[[], float] = time.monotonic,
        logger: Any = logger,
    ) -> None:
        self._extractor = extractor
        self._embedding_client = embedding_client
        self._store = store
        self.stats = stats or PipelineStats()
        self.breakers = breakers if breakers is not None else build_pipeline_breakers()
        self._embed_concurrency = max(1, embed_concurrency)
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff_seconds = retry_backoff_seconds
        self._excerpt_length = excerpt_length
        self._sleep = sleep_fn
        self._clock = clock_fn
        self._logger = logger

    def process_turn(self, turn: ConversationTurn) -> int:
        """Run the full pipeline for ``turn`` and return how many fragments were stored."""
        try:
            return self._process(turn)
        except Exception as exc:
            self._logger.exception("Memory pipeline failed; no fragments stored this turn")
            self.stats.record_failure(f"{type(exc).__name__}: {exc}")
            return 0

    def _process(self, turn: ConversationTurn) -> int:
        scope = resolve_scope(turn.owner_user_id, turn.avatar_id, turn.relationship_token)

        started = self._clock()
        try:
            candidates = self.breakers[EXTRACTION].call(
                self._extractor.extract,
                turn.message,
                scope,
                turn.prior_context,
                threshold=turn.extraction_threshold,
            )
        except Exception as exc:
            self.stats.record_stage(EXTRACTION, self._clock() - started, success=False)
            self._logger.warning("Fragment extraction failed for %s: %s", scope, exc)
            self.stats.record_failure(f"extraction: {exc}")
            self.stats.record_run(0)
            return 0
        self.stats.record_stage(EXTRACTION, self._clock() - started)

        if not candidates:
            self._logger.debug("No fragments extracted for %s", scope)
            self.stats.record_run(0)
            return 0

        context = ConversationContext(
            timestamp=turn.received_at,
            message_excerpt=excerpt(turn.message, self._excerpt_length),
            emotional_tone=detect_emotional_tone(turn.message),
        )
        drafts = self._embed_candidates(scope, candidates, context)
        dropped = len(candidates) - len(drafts)
        if not drafts:
            self.stats.record_run(0, dropped)
            return 0

        stored, store_dropped = self._store_with_retry(scope, drafts)
        self.stats.record_run(stored, dropped + store_dropped)
        self._logger.info(
            "Stored %d of %d extracted fragments for %s", stored, len(candidates), scope
        )
        return stored

    def _embed_candidates(
        self,
        scope: ScopeKey,
        candidates: Sequence[FragmentCandidate],
        context: ConversationContext,
    ) -> List[FragmentDraft]:
        workers = min(self._embed_concurrency, len(candidates))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="avatarmem-embed") as pool:
            futures = [pool.submit(self._embed_with_retry, candidate.text) for candidate in candidates]

        drafts: List[FragmentDraft] = []
        for candidate, future in zip(candidates, futures):
            try:
                vector = future.result()
            except Exception as exc:
                self._logger.warning("Dropped fragment for %s after embedding failure: %s", scope, exc)
                self.stats.record_failure(f"embedding: {exc}")
                continue
            drafts.append(FragmentDraft(text=candidate.text, embedding=vector, context=context))
        return drafts

    def _embed_with_retry(self, text: str) -> List[float]:
        breaker = self.breakers[EMBEDDING]
        attempt = 0
        while True:
            attempt += 1
            started = self._clock()
            try:
                vector = breaker.call(self._embedding_client.embed, text)
            except EmptyInputError:
                raise
            except AvatarMemoryError as exc:
                self.stats.record_stage(EMBEDDING, self._clock() - started, success=False)
                if not exc.retryable or attempt >= self._max_attempts:
                    raise
                delay = self._backoff(attempt)
                self._logger.debug(
                    "Retrying embedding in %.2fs (attempt %d/%d): %s",
                    delay,
                    attempt + 1,
                    self._max_attempts,
                    exc,
                )
                self._sleep(delay)
            else:
                self.stats.record_stage(EMBEDDING, self._clock() - started)
                return vector

    def _store_with_retry(self, scope: ScopeKey, drafts: List[FragmentDraft]) -> tuple[int, int]:
        """Store drafts, retrying only the items that failed transiently."""
        stored = 0
        pending = drafts
        attempt = 0
        while pending:
            attempt += 1
            try:
                result = self._store_through_breaker(scope, pending)
            except AvatarMemoryError as exc:
                self._logger.warning("Skipped storing %d fragments for %s: %s", len(pending), scope, exc)
                self.stats.record_failure(f"storage: {exc}")
                break
            stored += result.stored

            retry: List[FragmentDraft] = []
            for failure in result.failures:
                error = failure.error
                if isinstance(error, StorageError) and error.transient and attempt < self._max_attempts:
                    retry.append(pending[failure.index])
                else:
                    self.stats.record_failure(f"storage: {error}")
            if retry:
                delay = self._backoff(attempt)
                self._logger.warning(
                    "Retrying %d fragments for %s in %.2fs after transient storage failure",
                    len(retry),
                    scope,
                    delay,
                )
                self._sleep(delay)
            pending = retry
        return stored, len(drafts) - stored

    def _store_through_breaker(self, scope: ScopeKey, drafts: List[FragmentDraft]) -> BatchStoreResult:
        # store_batch reports failures per item; the breaker only counts a
        # batch in which nothing was stored and the store itself failed.
        breaker = self.breakers[STORAGE]
        breaker.before_call()
        started = self._clock()
        result = self._store.store_batch(scope, drafts)
        storage_errors = [f.error for f in result.failures if isinstance(f.error, StorageError)]
        healthy = bool(result.ids) or not storage_errors
        self.stats.record_stage(STORAGE, self._clock() - started, success=healthy)
        if healthy:
            breaker.record_success()
        else:
            breaker.record_failure(storage_errors[-1])
        return result

    def _backoff(self, attempt: int) -> float:
        return self._retry_backoff_seconds * (2 ** (attempt - 1))
