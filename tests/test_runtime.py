"""Runtime wiring: background workers, submission, shutdown and health."""

import logging
from queue import Full, Queue
from threading import Event
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from qdrant_client import QdrantClient

from avatarmem import config
from avatarmem.errors import StorageError
from avatarmem.extraction.client_init import init_extraction_client
from avatarmem.models import ConversationTurn
from avatarmem.pipeline.runtime_worker import enqueue_turn
from avatarmem.runtime_bindings import create_memory_runtime
from avatarmem.scope import resolve_scope
from avatarmem.service_state import PipelineStats, ServiceState
from tests.support.fake_providers import (
    DIMENSION,
    FakeChatClient,
    KeywordEmbeddingProvider,
    fragments_response,
)

logger = logging.getLogger("tests.runtime")
OWNER = resolve_scope("U1", "A1")
VISITOR = resolve_scope("U1", "A1", "tokenX")


@pytest.fixture
def fast_workers(monkeypatch):
    monkeypatch.setattr(config, "PIPELINE_IDLE_SLEEP_SECONDS", 0.05)
    monkeypatch.setattr(config, "PIPELINE_WORKERS", 2)


@pytest.fixture
def runtime_state():
    client = QdrantClient(":memory:")
    state = ServiceState(
        qdrant=client,
        openai_client=FakeChatClient(fragments_response("User has a golden retriever named Max")),
        embedding_provider=KeywordEmbeddingProvider(),
        effective_vector_size=DIMENSION,
    )
    yield state
    client.close()


@pytest.fixture
def runtime(runtime_state, fast_workers):
    bindings = create_memory_runtime(
        state=runtime_state,
        logger=logger,
        collection_name="runtime_fragments",
        vector_size_config=DIMENSION,
        sleep_fn=lambda _: None,
    )
    bindings.ensure_qdrant_collection()
    bindings.start()
    yield bindings
    bindings.shutdown(timeout=2.0, drain=False)


def test_collection_created_with_configured_dimension(runtime, runtime_state):
    info = runtime_state.qdrant.get_collection("runtime_fragments")
    assert info.config.params.vectors.size == DIMENSION
    assert runtime_state.effective_vector_size == DIMENSION


def test_submitted_turn_is_remembered(runtime):
    turn = ConversationTurn.for_scope(OWNER, "I have a golden retriever named Max")
    assert runtime.submit_turn(turn) is True

    runtime.shutdown(timeout=5.0, drain=True)

    (fragment,) = runtime.list_scope(OWNER)
    assert fragment.fragment_text == "User has a golden retriever named Max"
    hits = runtime.recall(OWNER, "tell me about pets", similarity_threshold=0.5, max_results=5)
    assert hits and hits[0].similarity >= 0.5
    assert runtime.recall(VISITOR, "tell me about pets") == []


def test_submit_after_shutdown_is_dropped(runtime):
    runtime.shutdown(timeout=2.0, drain=False)
    assert runtime.submit_turn(ConversationTurn.for_scope(OWNER, "hello")) is False


def test_process_turn_synchronously(runtime):
    assert runtime.process_turn(ConversationTurn.for_scope(VISITOR, "I have a dog")) == 1
    assert runtime.scope_stats(VISITOR)["total_fragments"] == 1
    assert runtime.scope_stats(OWNER)["total_fragments"] == 0


def test_delete_scope_through_runtime(runtime):
    runtime.process_turn(ConversationTurn.for_scope(OWNER, "I have a dog"))
    assert runtime.delete_scope(OWNER) == 1
    assert runtime.delete_scope(OWNER) == 0
    assert runtime.list_scope(OWNER) == []


def test_health_reports_components(runtime):
    runtime.process_turn(ConversationTurn.for_scope(OWNER, "I have a dog"))
    health = runtime.health()
    assert health["store"] is True
    assert health["embedding_provider"] == "keyword-test"
    assert health["vector_size"] == DIMENSION
    assert health["workers"] == 2
    assert health["pipeline"]["fragments_stored"] == 1
    assert health["pipeline"]["stages"]["storage"]["calls"] == 1
    assert health["circuit_breakers"]["healthy"] is True
    assert set(health["circuit_breakers"]["breakers"]) == {"extraction", "embedding", "storage"}


def test_reads_fail_loudly_without_store(fast_workers):
    state = ServiceState()
    bindings = create_memory_runtime(state=state, logger=logger, start_workers=False)
    bindings.init_components()

    with pytest.raises(StorageError) as excinfo:
        bindings.recall(OWNER, "pets")
    assert excinfo.value.transient
    assert bindings.submit_turn(ConversationTurn.for_scope(OWNER, "hello")) is False
    assert bindings.process_turn(ConversationTurn.for_scope(OWNER, "hello")) == 0


class TestEnqueueTurn:
    def test_full_queue_drops_turn(self):
        queue = Queue(maxsize=1)
        queue.put("busy")
        state = SimpleNamespace(
            pipeline_queue=queue, pipeline_stop_event=Event(), pipeline_stats=PipelineStats()
        )
        turn = ConversationTurn.for_scope(OWNER, "hello")

        assert enqueue_turn(state=state, logger=logger, turn=turn, full_exc=Full) is False
        assert state.pipeline_stats.to_dict()["turns_dropped"] == 1

    def test_not_running_drops_turn(self):
        state = SimpleNamespace(
            pipeline_queue=None, pipeline_stop_event=None, pipeline_stats=PipelineStats()
        )
        turn = ConversationTurn.for_scope(OWNER, "hello")
        assert enqueue_turn(state=state, logger=logger, turn=turn, full_exc=Full) is False


class TestInitExtractionClient:
    def test_missing_key_leaves_client_unset(self):
        state = ServiceState()
        openai_cls = Mock()
        init_extraction_client(
            state=state, logger=logger, openai_cls=openai_cls, get_env_fn=lambda _: None, timeout=5
        )
        assert state.openai_client is None
        openai_cls.assert_not_called()

    def test_builds_client_with_base_url(self):
        state = ServiceState()
        openai_cls = Mock()
        env = {"OPENAI_API_KEY": "sk-test", "OPENAI_BASE_URL": "http://proxy/v1"}
        init_extraction_client(
            state=state, logger=logger, openai_cls=openai_cls, get_env_fn=env.get, timeout=5
        )
        openai_cls.assert_called_once_with(api_key="sk-test", timeout=5, base_url="http://proxy/v1")
        assert state.openai_client is openai_cls.return_value

    def test_existing_client_kept(self):
        existing = FakeChatClient()
        state = ServiceState(openai_client=existing)
        init_extraction_client(
            state=state, logger=logger, openai_cls=Mock(), get_env_fn=lambda _: "sk", timeout=5
        )
        assert state.openai_client is existing


def test_start_from_environment_with_embedded_qdrant(monkeypatch, fast_workers):
    monkeypatch.delenv("QDRANT_URL", raising=False)
    monkeypatch.setenv("QDRANT_PATH", ":memory:")
    monkeypatch.setenv("EMBEDDING_PROVIDER", "placeholder")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    state = ServiceState()
    bindings = create_memory_runtime(
        state=state,
        logger=logger,
        collection_name="env_fragments",
        vector_size_config=32,
        start_workers=False,
    )
    bindings.start()

    assert state.qdrant is not None
    assert state.qdrant.get_collection("env_fragments").config.params.vectors.size == 32
    assert state.embedding_provider.provider_name() == "placeholder"
    assert state.openai_client is None
    # Nothing extracted without a chat client, and the failure stays inside the pipeline
    assert bindings.process_turn(ConversationTurn.for_scope(OWNER, "I have a dog")) == 0
    assert bindings.list_scope(OWNER) == []
    state.qdrant.close()
