import random
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import httpx
import pytest
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from avatarmem.cache import scoped_key
from avatarmem.errors import (
    DimensionMismatch,
    FragmentTooLong,
    InvalidScope,
    StorageError,
    classify_storage_error,
)
from avatarmem.models import ConversationContext, FragmentDraft
from avatarmem.scope import resolve_scope
from avatarmem.stores.memory_store import MemoryStore

from tests.support.fake_providers import DIMENSION

OWNER = resolve_scope("U1", "A1")
VISITOR = resolve_scope("U1", "A1", "tokenX")
COLLECTION = "test_fragments"


def _iso(minutes_ago: int = 0) -> str:
    base = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return (base - timedelta(minutes=minutes_ago)).isoformat()


def _draft(provider, text, minutes_ago=0, embedding=None):
    return FragmentDraft(
        text=text,
        embedding=embedding if embedding is not None else provider.generate_embedding(text),
        context=ConversationContext(timestamp=_iso(minutes_ago), message_excerpt=text[:20]),
    )


def _query(store, provider, scope, text, threshold=0.5, limit=5):
    return store.query(scope, provider.generate_embedding(text), threshold, limit)


class TestStoreBatch:
    def test_returns_ids_in_input_order(self, store, keyword_provider):
        result = store.store_batch(
            OWNER,
            [
                _draft(keyword_provider, "User has a dog"),
                _draft(keyword_provider, "User plays guitar"),
            ],
        )
        assert result.stored == 2
        assert len(set(result.ids)) == 2
        assert not result.failures
        assert store.count_scope(OWNER) == 2

    def test_dimension_mismatch_skips_single_item(self, store, keyword_provider):
        drafts = [
            _draft(keyword_provider, "User has a dog"),
            _draft(keyword_provider, "User plays guitar", embedding=[0.1, 0.2]),
            _draft(keyword_provider, "User loves sushi"),
            _draft(keyword_provider, "User works as an engineer"),
        ]
        result = store.store_batch(OWNER, drafts)

        assert result.stored == 3
        assert result.partial
        (failure,) = result.failures
        assert failure.index == 1
        assert isinstance(failure.error, DimensionMismatch)
        assert failure.error.expected == DIMENSION
        assert failure.error.actual == 2

        stored = {fragment.id: fragment.fragment_text for fragment in store.list_scope(OWNER)}
        assert set(stored) == set(result.ids)
        assert sorted(stored.values()) == [
            "User has a dog",
            "User loves sushi",
            "User works as an engineer",
        ]

    def test_blank_text_is_item_failure(self, store, keyword_provider):
        result = store.store_batch(
            OWNER,
            [_draft(keyword_provider, "   ", embedding=[0.1] * DIMENSION), _draft(keyword_provider, "User has a cat")],
        )
        assert result.stored == 1
        assert result.failures[0].index == 0

    def test_overlong_text_is_item_failure(self, store, keyword_provider):
        result = store.store_batch(
            OWNER,
            [
                _draft(keyword_provider, "User has a dog " + "x" * 2990),
                _draft(keyword_provider, "User has a cat"),
            ],
        )

        assert result.stored == 1
        (failure,) = result.failures
        assert failure.index == 0
        assert isinstance(failure.error, FragmentTooLong)
        assert failure.error.max_length == 500
        assert [fragment.fragment_text for fragment in store.list_scope(OWNER)] == ["User has a cat"]

    def test_text_at_limit_is_stored(self, qdrant, keyword_provider):
        store = MemoryStore(qdrant, collection_name=COLLECTION, dimension=DIMENSION, max_length=20)
        result = store.store_batch(OWNER, [_draft(keyword_provider, "User has a dog named")])
        assert result.stored == 1

    def test_persistence_failure_reported_per_item(self, keyword_provider):
        client = Mock()
        client.upsert.side_effect = [None, httpx.ConnectError("refused"), None]
        store = MemoryStore(client, collection_name=COLLECTION, dimension=DIMENSION)

        result = store.store_batch(
            OWNER, [_draft(keyword_provider, f"User fact number {i}") for i in range(3)]
        )

        assert result.stored == 2
        (failure,) = result.failures
        assert isinstance(failure.error, StorageError)
        assert failure.error.transient

    def test_empty_batch(self, store):
        result = store.store_batch(OWNER, [])
        assert result.ids == [] and result.failures == []

    def test_rejects_raw_identifiers(self, store, keyword_provider):
        with pytest.raises(InvalidScope):
            store.store_batch(("U1", "A1", None), [_draft(keyword_provider, "User has a dog")])

    def test_payload_preserves_context(self, store, keyword_provider):
        draft = FragmentDraft(
            text="User is nervous about exams",
            embedding=keyword_provider.generate_embedding("User is nervous about exams"),
            context=ConversationContext(
                timestamp=_iso(5), message_excerpt="I'm so nervous", emotional_tone="anxious"
            ),
        )
        store.store_batch(VISITOR, [draft])
        (fragment,) = store.list_scope(VISITOR)

        assert fragment.relationship_token == "tokenX"
        assert fragment.scope == VISITOR
        assert fragment.created_at == _iso(5)
        assert fragment.conversation_context.emotional_tone == "anxious"
        assert fragment.conversation_context.message_excerpt == "I'm so nervous"


class TestQuery:
    def test_round_trip_related_phrase(self, store, keyword_provider):
        store.store_batch(OWNER, [_draft(keyword_provider, "User has a golden retriever named Max")])
        hits = _query(store, keyword_provider, OWNER, "tell me about pets", threshold=0.5, limit=5)

        assert [hit.fragment.fragment_text for hit in hits] == ["User has a golden retriever named Max"]
        assert hits[0].similarity >= 0.5

    def test_owner_fragment_invisible_to_visitor(self, store, keyword_provider):
        store.store_batch(OWNER, [_draft(keyword_provider, "loves hiking on weekends")])

        assert _query(store, keyword_provider, VISITOR, "outdoor hobbies") == []
        assert len(_query(store, keyword_provider, OWNER, "outdoor hobbies")) == 1

    def test_fragment_created_under_visitor_scope_is_visible_to_visitor(self, store, keyword_provider):
        store.store_batch(VISITOR, [_draft(keyword_provider, "loves hiking on weekends")])
        assert len(_query(store, keyword_provider, VISITOR, "outdoor hobbies")) == 1
        assert _query(store, keyword_provider, OWNER, "outdoor hobbies") == []

    def test_unrelated_fragments_filtered_by_threshold(self, store, keyword_provider):
        store.store_batch(
            OWNER,
            [
                _draft(keyword_provider, "User has a dog"),
                _draft(keyword_provider, "User loves sushi"),
            ],
        )
        hits = _query(store, keyword_provider, OWNER, "pets", threshold=0.5)
        assert [hit.fragment.fragment_text for hit in hits] == ["User has a dog"]

    def test_empty_scope_returns_empty_list(self, store, keyword_provider):
        assert _query(store, keyword_provider, OWNER, "anything at all") == []

    def test_ordered_by_similarity(self, store, keyword_provider):
        store.store_batch(
            OWNER,
            [
                _draft(keyword_provider, "User has a dog and likes pizza"),
                _draft(keyword_provider, "User has a dog"),
            ],
        )
        hits = _query(store, keyword_provider, OWNER, "my dog", threshold=0.0)
        assert hits[0].fragment.fragment_text == "User has a dog"
        assert hits[0].similarity >= hits[1].similarity

    def test_ties_broken_by_most_recent(self, store, keyword_provider):
        vector = keyword_provider.generate_embedding("User has a dog")
        store.store_batch(
            OWNER,
            [
                _draft(keyword_provider, "oldest dog fact", minutes_ago=30, embedding=vector),
                _draft(keyword_provider, "newest dog fact", minutes_ago=1, embedding=vector),
                _draft(keyword_provider, "middle dog fact", minutes_ago=10, embedding=vector),
            ],
        )
        hits = store.query(OWNER, vector, 0.5, 5)
        assert [hit.fragment.fragment_text for hit in hits] == [
            "newest dog fact",
            "middle dog fact",
            "oldest dog fact",
        ]

    def test_ties_at_cutoff_resolved_by_recency(self, store, keyword_provider):
        vector = keyword_provider.generate_embedding("User has a dog")
        days = list(range(1, 21))
        random.Random(7).shuffle(days)
        drafts = [
            FragmentDraft(
                text=f"dog fact from day {day}",
                embedding=vector,
                context=ConversationContext(
                    timestamp=datetime(2024, 1, day, tzinfo=timezone.utc).isoformat()
                ),
            )
            for day in days
        ]
        assert store.store_batch(OWNER, drafts).stored == 20

        hits = store.query(OWNER, vector, 0.5, 2)
        assert [hit.fragment.created_at[:10] for hit in hits] == ["2024-01-20", "2024-01-19"]

    def test_max_results_bounds_response(self, store, keyword_provider):
        store.store_batch(
            OWNER, [_draft(keyword_provider, f"User has dog number {i}") for i in range(8)]
        )
        assert len(_query(store, keyword_provider, OWNER, "dog", threshold=0.0, limit=3)) == 3

    def test_max_results_clamped_to_store_limit(self, qdrant, keyword_provider):
        store = MemoryStore(qdrant, collection_name=COLLECTION, dimension=DIMENSION, max_limit=2)
        store.store_batch(
            OWNER, [_draft(keyword_provider, f"User has dog number {i}") for i in range(4)]
        )
        assert len(_query(store, keyword_provider, OWNER, "dog", threshold=0.0, limit=50)) == 2

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_threshold_out_of_range(self, store, keyword_provider, threshold):
        with pytest.raises(ValueError):
            _query(store, keyword_provider, OWNER, "dog", threshold=threshold)

    def test_max_results_must_be_positive(self, store, keyword_provider):
        with pytest.raises(ValueError):
            _query(store, keyword_provider, OWNER, "dog", limit=0)

    def test_query_dimension_mismatch_raises(self, store):
        with pytest.raises(DimensionMismatch):
            store.query(OWNER, [0.1, 0.2], 0.5, 5)

    def test_rejects_raw_identifiers(self, store, keyword_provider):
        with pytest.raises(InvalidScope):
            store.query({"owner_user_id": "U1"}, keyword_provider.generate_embedding("dog"), 0.5, 5)

    def test_persistence_failure_surfaces_as_storage_error(self, keyword_provider):
        client = Mock()
        client.query_points.side_effect = ResponseHandlingException(TimeoutError("timed out"))
        store = MemoryStore(client, collection_name=COLLECTION, dimension=DIMENSION)
        with pytest.raises(StorageError) as excinfo:
            _query(store, keyword_provider, OWNER, "dog")
        assert excinfo.value.transient

    def test_scope_filter_is_always_sent(self, keyword_provider):
        client = Mock()
        client.query_points.return_value = Mock(points=[])
        store = MemoryStore(client, collection_name=COLLECTION, dimension=DIMENSION)
        _query(store, keyword_provider, VISITOR, "dog")

        query_filter = client.query_points.call_args.kwargs["query_filter"]
        clauses = {condition.key: condition.match.value for condition in query_filter.must}
        assert clauses == {
            "owner_user_id": "U1",
            "avatar_id": "A1",
            "relationship_token": "tokenX",
        }


class TestIsolationProperty:
    def test_no_cross_scope_leakage(self, store):
        rng = random.Random(1234)
        owners = ["U1", "U2", "U3"]
        avatars = ["A1", "A2"]
        tokens = [None, "t1", "t2"]
        scopes = [resolve_scope(o, a, t) for o in owners for a in avatars for t in tokens]

        expected = {scope: set() for scope in scopes}
        for _ in range(120):
            scope = rng.choice(scopes)
            vector = [rng.random() + 0.01 for _ in range(DIMENSION)]
            result = store.store_batch(
                scope,
                [
                    FragmentDraft(
                        text=f"fragment for {scope}",
                        embedding=vector,
                        context=ConversationContext(timestamp=_iso(rng.randint(0, 1000))),
                    )
                ],
            )
            expected[scope].update(result.ids)

        for _ in range(60):
            scope = rng.choice(scopes)
            query_vector = [rng.random() for _ in range(DIMENSION)]
            threshold = rng.choice([0.0, 0.2, 0.5, 0.8])
            limit = rng.randint(1, 50)
            hits = store.query(scope, query_vector, threshold, limit)

            assert len(hits) <= limit
            for hit in hits:
                assert hit.fragment.scope == scope
                assert hit.fragment.id in expected[scope]


class TestThresholdMonotonicity:
    def test_lower_threshold_returns_superset(self, store):
        rng = random.Random(99)
        for _ in range(40):
            vector = [rng.random() for _ in range(DIMENSION)]
            store.store_batch(
                OWNER,
                [FragmentDraft(text="x", embedding=vector, context=ConversationContext(timestamp=_iso()))],
            )

        for _ in range(10):
            query_vector = [rng.random() for _ in range(DIMENSION)]
            t1, t2 = sorted(rng.sample([0.0, 0.3, 0.5, 0.7, 0.85, 0.95], 2))
            low = {hit.fragment.id for hit in store.query(OWNER, query_vector, t1, 50)}
            high = {hit.fragment.id for hit in store.query(OWNER, query_vector, t2, 50)}
            assert high <= low


class TestDeleteScope:
    def test_delete_is_idempotent(self, store, keyword_provider):
        store.store_batch(
            OWNER,
            [_draft(keyword_provider, "User has a dog"), _draft(keyword_provider, "User likes pizza")],
        )

        assert store.delete_scope(OWNER) == 2
        assert store.delete_scope(OWNER) == 0
        assert _query(store, keyword_provider, OWNER, "dog", threshold=0.0) == []

    def test_delete_leaves_other_scopes(self, store, keyword_provider):
        store.store_batch(OWNER, [_draft(keyword_provider, "User has a dog")])
        store.store_batch(VISITOR, [_draft(keyword_provider, "Visitor has a dog")])

        assert store.delete_scope(VISITOR) == 1
        assert store.count_scope(OWNER) == 1

    def test_delete_empty_scope(self, store):
        assert store.delete_scope(resolve_scope("nobody", "nothing")) == 0

    def test_count_matches_points_removed_with_concurrent_insert(
        self, qdrant, store, keyword_provider, monkeypatch
    ):
        store.store_batch(OWNER, [_draft(keyword_provider, "User has a dog")])
        writer = MemoryStore(qdrant, collection_name=COLLECTION, dimension=DIMENSION)
        original_delete = qdrant.delete

        def delete_after_late_write(**kwargs):
            writer.store_batch(OWNER, [_draft(keyword_provider, "User has a cat")])
            return original_delete(**kwargs)

        monkeypatch.setattr(qdrant, "delete", delete_after_late_write)
        deleted = store.delete_scope(OWNER)

        remaining = store.count_scope(OWNER)
        assert deleted == 1
        assert deleted + remaining == 2
        assert [fragment.fragment_text for fragment in store.list_scope(OWNER)] == ["User has a cat"]


class TestCachedReads:
    def test_list_scope_newest_first_with_paging(self, store, keyword_provider):
        store.store_batch(
            OWNER,
            [
                _draft(keyword_provider, "User fact old", minutes_ago=30),
                _draft(keyword_provider, "User fact new", minutes_ago=1),
                _draft(keyword_provider, "User fact mid", minutes_ago=10),
            ],
        )
        assert [f.fragment_text for f in store.list_scope(OWNER)] == [
            "User fact new",
            "User fact mid",
            "User fact old",
        ]
        assert [f.fragment_text for f in store.list_scope(OWNER, limit=1, offset=1)] == [
            "User fact mid"
        ]

    def test_list_scope_served_from_cache(self, store, cache, keyword_provider):
        store.store_batch(OWNER, [_draft(keyword_provider, "User has a dog")])
        first = store.list_scope(OWNER)
        assert cache.contains(scoped_key(OWNER, "list", 100, 0))
        assert store.list_scope(OWNER) == first

    def test_write_invalidates_before_returning(self, store, keyword_provider):
        store.store_batch(OWNER, [_draft(keyword_provider, "User has a dog")])
        assert len(store.list_scope(OWNER)) == 1
        assert store.scope_stats(OWNER)["total_fragments"] == 1

        store.store_batch(OWNER, [_draft(keyword_provider, "User has a cat")])
        assert len(store.list_scope(OWNER)) == 2
        assert store.scope_stats(OWNER)["total_fragments"] == 2

        store.delete_scope(OWNER)
        assert store.list_scope(OWNER) == []
        assert store.scope_stats(OWNER)["total_fragments"] == 0

    def test_write_keeps_other_scope_cached(self, store, cache, keyword_provider):
        store.list_scope(VISITOR)
        store.store_batch(OWNER, [_draft(keyword_provider, "User has a dog")])
        assert cache.contains(scoped_key(VISITOR, "list", 100, 0))

    def test_scope_stats(self, store, keyword_provider):
        store.store_batch(
            OWNER,
            [
                _draft(keyword_provider, "User fact old", minutes_ago=30),
                _draft(keyword_provider, "User fact new", minutes_ago=1),
            ],
        )
        assert store.scope_stats(OWNER) == {
            "total_fragments": 2,
            "oldest": _iso(30),
            "newest": _iso(1),
        }

    def test_stats_for_empty_scope(self, store):
        assert store.scope_stats(OWNER) == {"total_fragments": 0, "oldest": None, "newest": None}


class TestClassifyStorageError:
    def test_transport_error_is_transient(self):
        error = classify_storage_error(httpx.ConnectTimeout("slow"), "upsert")
        assert error.transient
        assert error.context["operation"] == "upsert"

    @pytest.mark.parametrize("status,transient", [(503, True), (429, True), (400, False), (404, False)])
    def test_unexpected_response_status(self, status, transient):
        exc = UnexpectedResponse(status, "reason", b"{}", httpx.Headers())
        assert classify_storage_error(exc, "query").transient is transient

    def test_value_error_is_permanent(self):
        error = classify_storage_error(ValueError("bad payload"), "upsert")
        assert not error.transient
        assert error.kind == "permanent"

    def test_storage_error_passes_through(self):
        original = StorageError("x", kind="transient")
        assert classify_storage_error(original, "delete") is original
