"""Wires state, clients and workers into the callables a host application uses.

A host constructs one ``MemoryRuntimeBindings`` at process start::

    runtime = create_memory_runtime(state=ServiceState(), logger=configure_logging())
    runtime.start()
    runtime.submit_turn(ConversationTurn(...))     # after replying, never blocks
    hits = runtime.recall(scope, message)          # while composing a reply
    runtime.shutdown()
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from queue import Empty, Full, Queue
from threading import Event, Thread
from typing import Any, Callable, Dict, List, Optional

from openai import OpenAI
from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PayloadSchemaType, VectorParams

from avatarmem import config
from avatarmem.cache import ScopedCache
from avatarmem.circuit_breaker import breaker_status, build_pipeline_breakers
from avatarmem.embedding.client import EmbeddingClient
from avatarmem.embedding.provider_init import (
    init_embedding_provider as _init_embedding_provider_runtime,
)
from avatarmem.errors import StorageError, TRANSIENT
from avatarmem.extraction.client_init import init_extraction_client as _init_extraction_client_runtime
from avatarmem.extraction.fragment_extractor import FragmentExtractor
from avatarmem.models import ConversationTurn, MemoryFragment, QueryHit
from avatarmem.pipeline.orchestrator import MemoryPipeline
from avatarmem.pipeline.runtime_worker import enqueue_turn as _enqueue_turn_runtime
from avatarmem.pipeline.runtime_worker import init_memory_pipeline as _init_memory_pipeline_runtime
from avatarmem.pipeline.runtime_worker import pipeline_worker as _pipeline_worker_runtime
from avatarmem.pipeline.runtime_worker import (
    shutdown_memory_pipeline as _shutdown_memory_pipeline_runtime,
)
from avatarmem.recall import MemoryRecall
from avatarmem.scope import ScopeKey
from avatarmem.stores.memory_store import MemoryStore
from avatarmem.stores.runtime_clients import (
    ensure_qdrant_collection as _ensure_qdrant_collection_runtime,
)
from avatarmem.stores.runtime_clients import init_qdrant as _init_qdrant_runtime
from avatarmem.utils.validation import get_effective_vector_size


@dataclass(frozen=True)
class MemoryRuntimeBindings:
    init_openai: Callable[[], None]
    init_qdrant: Callable[[], None]
    ensure_qdrant_collection: Callable[[], None]
    init_embedding_provider: Callable[[], None]
    init_components: Callable[[], None]
    init_memory_pipeline: Callable[[], None]
    start: Callable[[], None]
    submit_turn: Callable[[ConversationTurn], bool]
    process_turn: Callable[[ConversationTurn], int]
    recall: Callable[..., List[QueryHit]]
    delete_scope: Callable[[ScopeKey], int]
    list_scope: Callable[..., List[MemoryFragment]]
    scope_stats: Callable[[ScopeKey], Dict[str, Any]]
    health: Callable[[], Dict[str, Any]]
    shutdown: Callable[..., None]


def create_memory_runtime(
    *,
    state: Any,
    logger: Any,
    openai_cls: Any = OpenAI,
    qdrant_client_cls: Any = QdrantClient,
    get_env_fn: Callable[[str], Optional[str]] = os.getenv,
    collection_name: str = config.COLLECTION_NAME,
    vector_size_config: int = config.VECTOR_SIZE,
    start_workers: bool = True,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> MemoryRuntimeBindings:
    def init_openai() -> None:
        _init_extraction_client_runtime(
            state=state,
            logger=logger,
            openai_cls=openai_cls,
            get_env_fn=get_env_fn,
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        )

    def ensure_qdrant_collection() -> None:
        _ensure_qdrant_collection_runtime(
            state=state,
            logger=logger,
            collection_name=collection_name,
            vector_size_config=vector_size_config,
            get_effective_vector_size_fn=lambda client: get_effective_vector_size(
                client, collection_name, vector_size_config
            ),
            vector_params_cls=VectorParams,
            distance_enum=Distance,
            payload_schema_type_enum=PayloadSchemaType,
        )

    def init_qdrant() -> None:
        _init_qdrant_runtime(
            state=state,
            logger=logger,
            qdrant_client_cls=qdrant_client_cls,
            ensure_collection_fn=ensure_qdrant_collection,
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        )

    def init_embedding_provider() -> None:
        _init_embedding_provider_runtime(
            state=state,
            logger=logger,
            vector_size_config=vector_size_config,
            embedding_model=config.EMBEDDING_MODEL,
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        )

    def init_components() -> None:
        if state.pipeline is not None:
            return
        if state.cache is None:
            state.cache = ScopedCache(
                default_ttl=config.CACHE_TTL_SECONDS,
                max_entries=config.CACHE_MAX_ENTRIES,
            )
        if state.qdrant is None or state.embedding_provider is None:
            logger.warning("Memory store unavailable; turns will not be remembered")
            return

        embedding_client = EmbeddingClient(state.embedding_provider, state.effective_vector_size)
        state.memory_store = MemoryStore(
            state.qdrant,
            collection_name=collection_name,
            dimension=state.effective_vector_size,
            cache=state.cache,
            max_limit=config.RECALL_MAX_LIMIT,
            max_length=config.FRAGMENT_MAX_LENGTH,
        )
        extractor = FragmentExtractor(
            ensure_openai_client=init_openai,
            get_openai_client=lambda: state.openai_client,
            extraction_model=config.EXTRACTION_MODEL,
            min_words=config.EXTRACTION_MIN_WORDS,
            max_candidates=config.EXTRACTION_MAX_CANDIDATES,
            min_confidence=config.EXTRACTION_MIN_CONFIDENCE,
            max_length=config.FRAGMENT_MAX_LENGTH,
            logger=logger,
        )
        state.recall = MemoryRecall(
            embedding_client=embedding_client,
            store=state.memory_store,
            default_threshold=config.RECALL_SIMILARITY_THRESHOLD,
            default_max_results=config.RECALL_MAX_RESULTS,
        )
        if not state.circuit_breakers:
            state.circuit_breakers = build_pipeline_breakers(
                failure_threshold=config.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=config.CIRCUIT_BREAKER_RECOVERY_SECONDS,
            )
        state.pipeline = MemoryPipeline(
            extractor=extractor,
            embedding_client=embedding_client,
            store=state.memory_store,
            stats=state.pipeline_stats,
            breakers=state.circuit_breakers,
            embed_concurrency=config.PIPELINE_EMBED_CONCURRENCY,
            max_attempts=config.PIPELINE_MAX_ATTEMPTS,
            retry_backoff_seconds=config.PIPELINE_RETRY_BACKOFF_SECONDS,
            excerpt_length=config.CONTEXT_EXCERPT_LENGTH,
            sleep_fn=sleep_fn,
        )

    def process_turn(turn: ConversationTurn) -> int:
        if state.pipeline is None:
            logger.debug("Memory pipeline not configured; skipping turn")
            return 0
        return state.pipeline.process_turn(turn)

    def pipeline_worker() -> None:
        _pipeline_worker_runtime(
            state=state,
            logger=logger,
            idle_sleep_seconds=config.PIPELINE_IDLE_SLEEP_SECONDS,
            empty_exc=Empty,
            process_turn_fn=process_turn,
            sleep_fn=sleep_fn,
        )

    def init_memory_pipeline() -> None:
        if state.pipeline is None:
            return
        _init_memory_pipeline_runtime(
            state=state,
            logger=logger,
            queue_cls=Queue,
            thread_cls=Thread,
            event_cls=Event,
            worker_target=pipeline_worker,
            worker_count=config.PIPELINE_WORKERS,
            queue_maxsize=config.PIPELINE_QUEUE_MAXSIZE,
        )

    def start() -> None:
        init_steps = [
            ("init_qdrant", init_qdrant),
            ("init_openai", init_openai),
            ("init_embedding_provider", init_embedding_provider),
            ("init_components", init_components),
        ]
        if start_workers:
            init_steps.append(("init_memory_pipeline", init_memory_pipeline))
        failed_step = "unknown"
        try:
            for failed_step, init_fn in init_steps:
                init_fn()
        except Exception:
            logger.exception("Memory runtime initialization failed at step %s", failed_step)
            raise

    def submit_turn(turn: ConversationTurn) -> bool:
        return _enqueue_turn_runtime(state=state, logger=logger, turn=turn, full_exc=Full)

    def _require_store() -> MemoryStore:
        if state.memory_store is None:
            raise StorageError("Memory store is not configured", kind=TRANSIENT)
        return state.memory_store

    def recall(
        scope: ScopeKey,
        text: str,
        similarity_threshold: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> List[QueryHit]:
        _require_store()
        return state.recall.recall(scope, text, similarity_threshold, max_results)

    def delete_scope(scope: ScopeKey) -> int:
        return _require_store().delete_scope(scope)

    def list_scope(scope: ScopeKey, limit: int = 100, offset: int = 0) -> List[MemoryFragment]:
        return _require_store().list_scope(scope, limit=limit, offset=offset)

    def scope_stats(scope: ScopeKey) -> Dict[str, Any]:
        return _require_store().scope_stats(scope)

    def health() -> Dict[str, Any]:
        queue = state.pipeline_queue
        return {
            "store": state.memory_store is not None,
            "extraction": state.openai_client is not None,
            "embedding_provider": (
                state.embedding_provider.provider_name() if state.embedding_provider else None
            ),
            "vector_size": state.effective_vector_size,
            "queue_depth": queue.qsize() if queue is not None else 0,
            "workers": sum(1 for thread in state.pipeline_threads if thread.is_alive()),
            "pipeline": state.pipeline_stats.to_dict(),
            "circuit_breakers": breaker_status(state.circuit_breakers),
            "cache": state.cache.stats() if state.cache is not None else None,
        }

    def shutdown(timeout: float = 10.0, drain: bool = True) -> None:
        _shutdown_memory_pipeline_runtime(
            state=state,
            logger=logger,
            timeout=timeout,
            drain=drain,
            monotonic_fn=time.monotonic,
            sleep_fn=time.sleep,
        )

    return MemoryRuntimeBindings(
        init_openai=init_openai,
        init_qdrant=init_qdrant,
        ensure_qdrant_collection=ensure_qdrant_collection,
        init_embedding_provider=init_embedding_provider,
        init_components=init_components,
        init_memory_pipeline=init_memory_pipeline,
        start=start,
        submit_turn=submit_turn,
        process_turn=process_turn,
        recall=recall,
        delete_scope=delete_scope,
        list_scope=list_scope,
        scope_stats=scope_stats,
        health=health,
        shutdown=shutdown,
    )
