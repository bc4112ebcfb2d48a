"""
Knowledge Graph Module

Asynchronous expansion of concept graphs through pluggable generation
providers, with a shared embedding cache and memory-pressure governor.

Architecture:
- models: Domain models (Node, Edge, Graph, ExpansionOptions, cache records)
- embedding_service / embedding_cache: vectors, similarity, snapshots
- providers / prompts: concept, connection and insight generation
- memory_governor: pressure sampling and admission control
- jobs / expansion: job table and the level-by-level engine
- graph_store: seed graph source and result sink
- routes: API endpoints
"""

from .embedding_cache import EmbeddingCache, SimilarityMetric, similarity
from .expansion import ExpansionEngine
from .jobs import JobManager, JobStatus
from .memory_governor import MemoryGovernor
from .models import Graph, Node, Edge, ExpansionOptions

__all__ = [
    "EmbeddingCache",
    "SimilarityMetric",
    "similarity",
    "ExpansionEngine",
    "JobManager",
    "JobStatus",
    "MemoryGovernor",
    "Graph",
    "Node",
    "Edge",
    "ExpansionOptions",
]
