"""Scoped persistence for memory fragments on top of a Qdrant collection."""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import models as qdrant_models

from avatarmem.cache import ScopedCache, scoped_key
from avatarmem.config import FRAGMENT_MAX_LENGTH, RECALL_MAX_LIMIT
from avatarmem.errors import (
    AvatarMemoryError,
    DimensionMismatch,
    EmptyInputError,
    FragmentTooLong,
    classify_storage_error,
)
from avatarmem.models import (
    BatchItemFailure,
    BatchStoreResult,
    FragmentDraft,
    MemoryFragment,
    QueryHit,
)
from avatarmem.scope import ScopeKey
from avatarmem.stores.vector_store import _build_scope_filter
from avatarmem.utils.time import epoch_seconds, parse_timestamp, utc_now

SCROLL_PAGE_SIZE = 256


class MemoryStore:
    """Insert, query and delete fragments, always within one ``ScopeKey``.

    The store never retries; persistence failures surface as ``StorageError``
    with ``transient`` telling the caller whether another attempt makes sense.
    Writes invalidate the scope's cache entries before returning.
    """

    def __init__(
        self,
        client: Any,
        *,
        collection_name: str,
        dimension: int,
        cache: Optional[ScopedCache] = None,
        max_limit: int = RECALL_MAX_LIMIT,
        max_length: int = FRAGMENT_MAX_LENGTH,
        logger: Any = None,
    ) -> None:
        self._client = client
        self.collection_name = collection_name
        self.dimension = dimension
        self._cache = cache
        self._max_limit = max_limit
        self._max_length = max_length
        self._logger = logger or logging.getLogger("avatarmem.store")

    # ------------------------------------------------------------------ write

    def store_batch(self, scope: ScopeKey, fragments: Sequence[FragmentDraft]) -> BatchStoreResult:
        """Insert each fragment independently and report per-item outcomes."""
        _build_scope_filter(scope)

        result = BatchStoreResult()
        try:
            for index, draft in enumerate(fragments):
                try:
                    point_id = self._insert_one(scope, draft)
                except AvatarMemoryError as exc:
                    result.failures.append(BatchItemFailure(index=index, error=exc))
                    self._logger.warning(
                        "Skipped fragment %d for %s: %s", index, scope, exc.message
                    )
                else:
                    result.ids.append(point_id)
        finally:
            if result.ids:
                self._invalidate(scope)

        if result.failures:
            self._logger.info(
                "Stored %d of %d fragments for %s",
                result.stored,
                result.stored + len(result.failures),
                scope,
            )
        return result

    def _insert_one(self, scope: ScopeKey, draft: FragmentDraft) -> str:
        if not isinstance(draft, FragmentDraft):
            raise AvatarMemoryError(
                "Fragment must be a FragmentDraft",
                context={"received": type(draft).__name__},
            )
        text = (draft.text or "").strip()
        if not text:
            raise EmptyInputError("Fragment text is blank")
        if len(text) > self._max_length:
            raise FragmentTooLong(self._max_length, len(text))
        vector = self._check_vector(draft.embedding)

        point_id = str(uuid.uuid4())
        created_at = draft.context.timestamp or utc_now()
        if parse_timestamp(created_at) is None:
            created_at = utc_now()
        payload = {
            **scope.as_payload(),
            "fragment_text": text,
            "conversation_context": draft.context.to_payload(),
            "created_at": created_at,
            "created_ts": epoch_seconds(created_at),
            "updated_at": created_at,
        }
        try:
            self._client.upsert(
                collection_name=self.collection_name,
                points=[qdrant_models.PointStruct(id=point_id, vector=vector, payload=payload)],
                wait=True,
            )
        except Exception as exc:
            raise classify_storage_error(exc, "upsert", scope=str(scope)) from exc
        return point_id

    def _check_vector(self, vector: Any) -> List[float]:
        if not isinstance(vector, (list, tuple)):
            raise DimensionMismatch(self.dimension, 0, context={"reason": "not a vector"})
        if len(vector) != self.dimension:
            raise DimensionMismatch(self.dimension, len(vector))
        try:
            values = [float(component) for component in vector]
        except (TypeError, ValueError) as exc:
            raise AvatarMemoryError("Embedding contains non-numeric values") from exc
        if not all(math.isfinite(value) for value in values):
            raise AvatarMemoryError("Embedding contains non-finite values")
        return values

    # ------------------------------------------------------------------- read

    def query(
        self,
        scope: ScopeKey,
        query_embedding: Sequence[float],
        similarity_threshold: float,
        max_results: int,
    ) -> List[QueryHit]:
        """Return fragments in ``scope`` at or above the threshold, best first.

        Ties on similarity are ordered by most recent ``created_at``. An empty
        list is a valid answer.
        """
        scope_filter = _build_scope_filter(scope)
        if not 0.0 <= float(similarity_threshold) <= 1.0:
            raise ValueError("similarity_threshold must be within [0, 1]")
        if int(max_results) < 1:
            raise ValueError("max_results must be at least 1")
        limit = min(int(max_results), self._max_limit)
        vector = self._check_vector(query_embedding)

        # Qdrant picks arbitrarily among equal scores, so widen the fetch until
        # every point tied with the cut-off score is in hand.
        fetch_limit = limit * 2
        while True:
            points = self._search(scope, scope_filter, vector, similarity_threshold, fetch_limit)
            if len(points) < fetch_limit:
                break
            cutoff = sorted((float(point.score) for point in points), reverse=True)[limit - 1]
            if min(float(point.score) for point in points) < cutoff:
                break
            fetch_limit *= 2

        ranked = []
        for point in points:
            payload = point.payload or {}
            ranked.append(
                (
                    float(point.score),
                    float(payload.get("created_ts") or 0.0),
                    MemoryFragment.from_point(point.id, payload),
                )
            )
        ranked.sort(key=lambda item: (-item[0], -item[1]))

        hits = [
            QueryHit(fragment=fragment, similarity=min(1.0, score))
            for score, _, fragment in ranked[:limit]
        ]
        self._logger.debug(
            "Query for %s returned %d hits (threshold=%.2f)", scope, len(hits), similarity_threshold
        )
        return hits

    def _search(
        self,
        scope: ScopeKey,
        scope_filter: qdrant_models.Filter,
        vector: List[float],
        similarity_threshold: float,
        limit: int,
    ) -> List[Any]:
        try:
            response = self._client.query_points(
                collection_name=self.collection_name,
                query=vector,
                query_filter=scope_filter,
                limit=limit,
                score_threshold=float(similarity_threshold),
                with_payload=True,
            )
        except Exception as exc:
            raise classify_storage_error(exc, "query", scope=str(scope)) from exc
        return list(response.points)

    def count_scope(self, scope: ScopeKey) -> int:
        scope_filter = _build_scope_filter(scope)
        try:
            result = self._client.count(
                collection_name=self.collection_name,
                count_filter=scope_filter,
                exact=True,
            )
        except Exception as exc:
            raise classify_storage_error(exc, "count", scope=str(scope)) from exc
        return int(result.count)

    def list_scope(self, scope: ScopeKey, limit: int = 100, offset: int = 0) -> List[MemoryFragment]:
        """Fragments in ``scope``, newest first. Served from cache when warm."""
        if limit < 1 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        key = scoped_key(scope, "list", limit, offset)
        cached = self._cache.get_cached(key) if self._cache is not None else None
        if cached is not None:
            return list(cached)

        fragments = self._scan_scope(scope)
        fragments.sort(key=lambda fragment: epoch_seconds(fragment.created_at), reverse=True)
        page = fragments[offset : offset + limit]
        if self._cache is not None:
            self._cache.set_cached(key, page)
        return page

    def scope_stats(self, scope: ScopeKey) -> Dict[str, Any]:
        key = scoped_key(scope, "stats")
        cached = self._cache.get_cached(key) if self._cache is not None else None
        if cached is not None:
            return dict(cached)

        fragments = self._scan_scope(scope)
        timestamps = sorted(fragment.created_at for fragment in fragments if fragment.created_at)
        stats = {
            "total_fragments": len(fragments),
            "oldest": timestamps[0] if timestamps else None,
            "newest": timestamps[-1] if timestamps else None,
        }
        if self._cache is not None:
            self._cache.set_cached(key, stats)
        return stats

    def _scan_scope(self, scope: ScopeKey) -> List[MemoryFragment]:
        return [
            MemoryFragment.from_point(point.id, point.payload or {})
            for point in self._scroll(scope, with_payload=True)
        ]

    def _scroll(self, scope: ScopeKey, *, with_payload: bool) -> List[Any]:
        scope_filter = _build_scope_filter(scope)
        points: List[Any] = []
        next_offset = None
        try:
            while True:
                page, next_offset = self._client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=scope_filter,
                    limit=SCROLL_PAGE_SIZE,
                    offset=next_offset,
                    with_payload=with_payload,
                    with_vectors=False,
                )
                points.extend(page)
                if next_offset is None:
                    break
        except Exception as exc:
            raise classify_storage_error(exc, "scroll", scope=str(scope)) from exc
        return points

    # ----------------------------------------------------------------- delete

    def delete_scope(self, scope: ScopeKey) -> int:
        """Delete every fragment in ``scope``; returns how many were removed.

        Points are deleted by id, so the count is exactly what was removed. A
        fragment written after the scan survives and needs another call.
        Deleting an empty scope returns 0.
        """
        _build_scope_filter(scope)
        point_ids: List[Any] = []
        try:
            point_ids = [point.id for point in self._scroll(scope, with_payload=False)]
            if point_ids:
                self._client.delete(
                    collection_name=self.collection_name,
                    points_selector=qdrant_models.PointIdsList(points=point_ids),
                    wait=True,
                )
        except AvatarMemoryError:
            raise
        except Exception as exc:
            raise classify_storage_error(exc, "delete", scope=str(scope)) from exc
        finally:
            self._invalidate(scope)

        if point_ids:
            self._logger.info("Deleted %d fragments for %s", len(point_ids), scope)
        return len(point_ids)

    def _invalidate(self, scope: ScopeKey) -> None:
        if self._cache is not None:
            self._cache.invalidate_scope(scope)
