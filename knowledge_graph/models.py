"""
Knowledge Graph Domain Models

Defines the concept graph (nodes, edges), the options that drive an expansion
job and the embedding cache records.
"""

import math
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Iterable, FrozenSet

import numpy as np

from config import settings
from knowledge_graph.errors import ValidationError, CacheFormatError

SNAPSHOT_VERSION = 1


def normalize_name(name: str) -> str:
    """Key used for exact-name de-duplication"""
    return " ".join((name or "").split()).lower()


@dataclass
class Node:
    """
    A concept in the knowledge graph.

    Seed nodes have depth_level 0; generated nodes sit one level below the
    node they were expanded from.
    """
    id: str
    name: str
    weight: float = 1.0
    embedding: Optional[List[float]] = None
    generated: bool = False
    depth_level: int = 0
    type: str = "concept"
    properties: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.weight < 0:
            raise ValueError(f"Node {self.id} has negative weight {self.weight}")
        if self.depth_level < 0:
            raise ValueError(f"Node {self.id} has negative depth level {self.depth_level}")

    def attach_embedding(self, vector: Iterable[float]) -> None:
        self.embedding = [float(v) for v in vector]

    def to_dict(self) -> Dict[str, Any]:
        """Convert node to dictionary for storage and API responses"""
        return {
            "id": self.id,
            "name": self.name,
            "weight": self.weight,
            "type": self.type,
            "generated": self.generated,
            "depth_level": self.depth_level,
            "properties": self.properties,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            weight=float(data.get("weight", 1.0)),
            embedding=data.get("embedding"),
            generated=bool(data.get("generated", False)),
            depth_level=int(data.get("depth_level", 0)),
            type=data.get("type", "concept"),
            properties=dict(data.get("properties") or {}),
        )


@dataclass(frozen=True)
class Edge:
    """A directed relation between two concepts. Immutable once created."""
    source: str
    target: str
    weight: float = 1.0
    generated: bool = False
    statement: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "weight": self.weight,
            "generated": self.generated,
            "statement": self.statement,
            "properties": self.properties,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        return cls(
            source=str(data["source"]),
            target=str(data["target"]),
            weight=float(data.get("weight", 1.0)),
            generated=bool(data.get("generated", False)),
            statement=data.get("statement"),
            properties=dict(data.get("properties") or {}),
        )


class Graph:
    """
    Concept graph: insertion-ordered nodes keyed by id plus an edge list.

    Every edge must reference existing node ids. Duplicate edges are allowed.
    """

    def __init__(self, nodes: Iterable[Node] = (), edges: Iterable[Edge] = ()):
        self.nodes: "OrderedDict[str, Node]" = OrderedDict()
        self.edges: List[Edge] = []
        for node in nodes:
            self.add_node(node)
        for edge in edges:
            self.add_edge(edge)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def add_node(self, node: Node) -> Node:
        if node.id in self.nodes:
            raise ValueError(f"Duplicate node id: {node.id}")
        self.nodes[node.id] = node
        return node

    def add_edge(self, edge: Edge) -> Edge:
        missing = [nid for nid in (edge.source, edge.target) if nid not in self.nodes]
        if missing:
            raise ValueError(f"Edge {edge.source}->{edge.target} references unknown node(s): {missing}")
        self.edges.append(edge)
        return edge

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def node_names(self) -> List[str]:
        return [node.name for node in self.nodes.values()]

    def copy(self) -> "Graph":
        """Shallow structural copy: new containers, same (immutable) edges"""
        clone = Graph()
        for node in self.nodes.values():
            clone.nodes[node.id] = replace(node, properties=dict(node.properties))
        clone.edges = list(self.edges)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes.values()],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Graph":
        return cls(
            nodes=[Node.from_dict(n) for n in data.get("nodes", [])],
            edges=[Edge.from_dict(e) for e in data.get("edges", [])],
        )


@dataclass
class ExpansionOptions:
    """
    Budgets and knobs for one expansion job.

    fanout_factor multiplies the number of nodes introduced at the current
    level to size the next level's candidate request.
    """
    depth: int = field(default_factory=lambda: settings.DEFAULT_EXPANSION_DEPTH)
    fanout_factor: float = field(default_factory=lambda: settings.DEFAULT_FANOUT_FACTOR)
    max_new_per_node: int = field(default_factory=lambda: settings.DEFAULT_MAX_NEW_PER_NODE)
    max_total_new: int = field(default_factory=lambda: settings.DEFAULT_MAX_TOTAL_NEW)
    provider_id: str = field(default_factory=lambda: settings.DEFAULT_GENERATION_PROVIDER)
    strategy: str = "balanced"
    focus_node_ids: FrozenSet[str] = frozenset()
    exclude_node_ids: FrozenSet[str] = frozenset()
    memory_admission_ratio: float = field(default_factory=lambda: settings.DEFAULT_MEMORY_ADMISSION_RATIO)

    def validated(self, max_depth: int) -> "ExpansionOptions":
        """Return a normalized copy, raising ValidationError on bad values."""
        if not isinstance(self.depth, int) or self.depth < 1:
            raise ValidationError(f"depth must be an integer >= 1 (got {self.depth!r})")
        if not _is_finite_number(self.fanout_factor) or self.fanout_factor <= 0:
            raise ValidationError(f"fanout_factor must be > 0 (got {self.fanout_factor!r})")
        if not isinstance(self.max_new_per_node, int) or self.max_new_per_node < 0:
            raise ValidationError(f"max_new_per_node must be a non-negative integer (got {self.max_new_per_node!r})")
        if not isinstance(self.max_total_new, int) or self.max_total_new < 0:
            raise ValidationError(f"max_total_new must be a non-negative integer (got {self.max_total_new!r})")
        if not _is_finite_number(self.memory_admission_ratio) or not 0 < self.memory_admission_ratio <= 1:
            raise ValidationError(
                f"memory_admission_ratio must be in (0, 1] (got {self.memory_admission_ratio!r})"
            )
        if not self.provider_id:
            raise ValidationError("provider_id is required")

        return replace(
            self,
            depth=min(self.depth, max_depth),
            focus_node_ids=frozenset(self.focus_node_ids or ()),
            exclude_node_ids=frozenset(self.exclude_node_ids or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "depth": self.depth,
            "fanout_factor": self.fanout_factor,
            "max_new_per_node": self.max_new_per_node,
            "max_total_new": self.max_total_new,
            "provider_id": self.provider_id,
            "strategy": self.strategy,
            "focus_node_ids": sorted(self.focus_node_ids),
            "exclude_node_ids": sorted(self.exclude_node_ids),
            "memory_admission_ratio": self.memory_admission_ratio,
        }


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


@dataclass
class CacheEntry:
    """An embedding memoized by its source text. last_accessed_at is epoch-ms."""
    text: str
    vector: np.ndarray
    last_accessed_at: float


@dataclass
class SnapshotEntry:
    text: str
    vector: List[float]
    timestamp: float


@dataclass
class CacheSnapshot:
    """
    Portable copy of the embedding cache.

    Serialized to the on-disk JSON format:
    {version, modelName, dimension, createdAt, entries: {text: {vector, timestamp}}}
    """
    model_name: str
    dimension: int
    entries: List[SnapshotEntry] = field(default_factory=list)
    version: int = SNAPSHOT_VERSION
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)

    def to_json_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "modelName": self.model_name,
            "dimension": self.dimension,
            "createdAt": self.created_at.isoformat(),
            "entries": {
                e.text: {"vector": list(e.vector), "timestamp": e.timestamp}
                for e in self.entries
            },
        }

    @classmethod
    def from_json_dict(cls, data: Any) -> "CacheSnapshot":
        """Parse the on-disk format, raising CacheFormatError when malformed."""
        if not isinstance(data, dict):
            raise CacheFormatError("Snapshot must be a JSON object")

        model_name = data.get("modelName")
        dimension = data.get("dimension")
        entries = data.get("entries")
        if not model_name or not isinstance(model_name, str):
            raise CacheFormatError("Snapshot is missing modelName")
        if not isinstance(dimension, int) or isinstance(dimension, bool) or dimension <= 0:
            raise CacheFormatError("Snapshot is missing a positive integer dimension")
        if not isinstance(entries, dict):
            raise CacheFormatError("Snapshot entries must be an object keyed by text")

        parsed: List[SnapshotEntry] = []
        for text, payload in entries.items():
            if not isinstance(payload, dict) or not isinstance(payload.get("vector"), list):
                raise CacheFormatError(f"Snapshot entry {text!r} has no vector")
            try:
                vector = [float(v) for v in payload["vector"]]
                timestamp = float(payload.get("timestamp") or 0)
            except (TypeError, ValueError) as exc:
                raise CacheFormatError(f"Snapshot entry {text!r} is not numeric: {exc}") from exc
            parsed.append(SnapshotEntry(text=text, vector=vector, timestamp=timestamp))

        created_at = None
        raw_created = data.get("createdAt")
        if isinstance(raw_created, str):
            try:
                created_at = datetime.fromisoformat(raw_created)
            except ValueError:
                created_at = None

        return cls(
            model_name=model_name,
            dimension=dimension,
            entries=parsed,
            version=int(data.get("version") or SNAPSHOT_VERSION),
            created_at=created_at,
        )
