import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from qdrant_client import QdrantClient  # noqa: E402
from qdrant_client.models import Distance, VectorParams  # noqa: E402

from avatarmem.cache import ScopedCache  # noqa: E402
from avatarmem.stores.memory_store import MemoryStore  # noqa: E402
from tests.support.fake_providers import DIMENSION, KeywordEmbeddingProvider  # noqa: E402

COLLECTION = "test_fragments"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ScopedCache(default_ttl=60.0, max_entries=64, time_fn=clock)


@pytest.fixture
def qdrant():
    """Real qdrant-client running in local in-memory mode."""
    client = QdrantClient(":memory:")
    client.create_collection(
        collection_name=COLLECTION,
        vectors_config=VectorParams(size=DIMENSION, distance=Distance.COSINE),
    )
    yield client
    client.close()


@pytest.fixture
def store(qdrant, cache):
    return MemoryStore(qdrant, collection_name=COLLECTION, dimension=DIMENSION, cache=cache)


@pytest.fixture
def keyword_provider():
    return KeywordEmbeddingProvider()
