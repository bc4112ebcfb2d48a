"""Shared fixtures for all test modules."""
import os
import sys
import tempfile
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(_ROOT))

# Pin import-time settings before collection so nothing touches a developer's
# data directory, database or API keys.
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="concept-graph-tests-")
os.environ["CONCEPT_GRAPH_DATA_DIR"] = _TEST_DATA_DIR
os.environ["CONCEPT_GRAPH_DATABASE_URL"] = f"sqlite:///{Path(_TEST_DATA_DIR) / 'test.db'}"
os.environ["EMBEDDING_BACKEND"] = "hash"
os.environ["EMBEDDING_DIMENSION"] = "64"
os.environ["ENABLE_MOCK_PROVIDER"] = "true"
os.environ["MEMORY_MONITOR_INTERVAL"] = "0"
os.environ.pop("MEMORY_EMERGENCY_CLEAR", None)
os.environ.pop("OPENAI_API_KEY", None)

from knowledge_graph.embedding_cache import EmbeddingCache
from knowledge_graph.embedding_service import HashEmbeddingBackend
from knowledge_graph.expansion import ExpansionEngine
from knowledge_graph.graph_store import InMemoryGraphStore
from knowledge_graph.memory_governor import MemoryGovernor
from knowledge_graph.models import Graph, Node, Edge
from knowledge_graph.providers import MockGenerationProvider

OWNER = "alice"
CONTEXT = "ctx"


class StubMemoryReader:
    """Replays usage ratios against a 1000-byte limit; the last ratio repeats."""

    def __init__(self, *ratios):
        self.ratios = list(ratios) or [0.1]
        self.calls = 0

    def __call__(self):
        ratio = self.ratios[min(self.calls, len(self.ratios) - 1)]
        self.calls += 1
        return int(round(ratio * 1000)), 1000


class FakeClock:
    """Monotonic epoch-ms clock advancing one millisecond per read"""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        self.now += 1
        return self.now


def build_seed_graph() -> Graph:
    return Graph(
        nodes=[Node(id="n1", name="n1"), Node(id="n2", name="n2"), Node(id="n3", name="n3")],
        edges=[Edge(source="n1", target="n2"), Edge(source="n2", target="n3")],
    )


@pytest.fixture
def backend():
    return HashEmbeddingBackend(dimension=64)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(backend, clock):
    return EmbeddingCache(backend, max_entries=1000, batch_size=4, clock=clock)


@pytest.fixture
def seed_graph():
    return build_seed_graph()


@pytest.fixture
def store(seed_graph):
    graph_store = InMemoryGraphStore()
    graph_store.graphs[(OWNER, CONTEXT)] = seed_graph
    return graph_store


@pytest.fixture
def make_governor():
    def factory(*ratios, **kwargs):
        return MemoryGovernor(
            warning_threshold=kwargs.get("warning_threshold", 0.75),
            critical_threshold=kwargs.get("critical_threshold", 0.9),
            memory_reader=StubMemoryReader(*ratios),
            emergency_clear=kwargs.get("emergency_clear", False),
        )
    return factory


@pytest.fixture
def make_engine(store, backend, clock, make_governor):
    """Engine factory with the mock provider registered under "mock"."""

    def factory(governor=None, graph_store=None, embedding_backend=None, **kwargs):
        governor = governor or make_governor(0.1)
        embedding_cache = EmbeddingCache(
            embedding_backend or backend,
            max_entries=1000,
            batch_size=8,
            memory_governor=governor,
            clock=clock,
        )
        engine = ExpansionEngine(
            graph_store or store,
            embedding_cache,
            governor,
            max_depth=kwargs.pop("max_depth", 5),
            **kwargs,
        )
        engine.register_provider("mock", MockGenerationProvider())
        return engine

    return factory
