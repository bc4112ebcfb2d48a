"""
Embedding Cache & Similarity Service

Wraps one EmbeddingBackend and memoizes vectors by text. The cache is shared
by every running expansion job; writes are last-write-wins since the vector
for a given text does not depend on which job computed it.

Eviction:
- inserting beyond max_entries evicts the least recently accessed entry
- trim(keep_ratio) drops the oldest (1 - keep_ratio) fraction
- critical memory pressure trims with a conservative keep ratio
"""

import json
import logging
import math
import time
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import List, Dict, Any, Optional, Callable, Union, Sequence

import numpy as np

from config import settings
from knowledge_graph.embedding_service import EmbeddingBackend
from knowledge_graph.errors import ValidationError, CacheFormatError
from knowledge_graph.models import CacheEntry, CacheSnapshot, SnapshotEntry

logger = logging.getLogger(__name__)


class SimilarityMetric(str, Enum):
    """Supported vector similarity metrics"""
    COSINE = "cosine"
    DOT = "dot"  # dot product normalized to [0, 1]
    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"


def _as_metric(metric: Union[str, SimilarityMetric]) -> SimilarityMetric:
    try:
        return SimilarityMetric(str(getattr(metric, "value", metric)).lower())
    except ValueError:
        raise ValidationError(f"Unknown similarity metric: {metric}") from None


def similarity(
    a: Sequence[float],
    b: Sequence[float],
    metric: Union[str, SimilarityMetric] = SimilarityMetric.COSINE,
) -> float:
    """
    Similarity between two vectors, clamped to [0, 1].

    Args:
        a, b: Vectors of equal dimension
        metric: cosine (default), dot, euclidean or manhattan

    Returns:
        Similarity score; 0.0 when a norm-based metric meets a zero vector
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or va.shape != vb.shape:
        raise ValidationError(f"Vector shapes differ: {va.shape} vs {vb.shape}")

    metric = _as_metric(metric)

    if metric == SimilarityMetric.EUCLIDEAN:
        value = 1.0 / (1.0 + float(np.linalg.norm(va - vb)))
    elif metric == SimilarityMetric.MANHATTAN:
        value = 1.0 / (1.0 + float(np.sum(np.abs(va - vb))))
    else:
        denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
        if denom == 0.0:
            return 0.0
        dot = float(np.dot(va, vb))
        if metric == SimilarityMetric.DOT:
            value = (dot + denom) / (2.0 * denom)
        else:
            value = dot / denom

    if not math.isfinite(value):
        return 0.0
    # Absorb floating error outside [0, 1]
    return max(0.0, min(1.0, value))


def _epoch_ms() -> float:
    return time.time() * 1000.0


class EmbeddingCache:
    """
    Recency-ordered embedding cache with similarity queries.

    Entries are kept in an OrderedDict ordered from least to most recently
    accessed, so eviction pops from the front.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        max_entries: Optional[int] = None,
        batch_size: Optional[int] = None,
        default_metric: Optional[str] = None,
        pressure_keep_ratio: Optional[float] = None,
        memory_governor=None,
        component_name: str = "embedding-cache",
        clock: Optional[Callable[[], float]] = None,
    ):
        self.backend = backend
        self.max_entries = max_entries if max_entries is not None else settings.EMBEDDING_CACHE_MAX_ENTRIES
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.default_metric = _as_metric(default_metric or settings.SIMILARITY_METRIC)
        self.pressure_keep_ratio = (
            pressure_keep_ratio if pressure_keep_ratio is not None
            else settings.EMBEDDING_CACHE_PRESSURE_KEEP_RATIO
        )
        self._clock = clock or _epoch_ms
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

        if self.max_entries < 1:
            raise ValidationError("max_entries must be >= 1")

        if memory_governor is not None:
            memory_governor.register_component(
                component_name,
                on_memory_pressure=self.handle_memory_pressure,
                clear_cache=self.clear,
                memory_usage=self.memory_usage,
            )

    @property
    def model_name(self) -> str:
        return self.backend.model_name

    @property
    def dimension(self) -> int:
        return self.backend.dimension

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, text: str) -> bool:
        return text in self._entries

    def get(self, text: str) -> Optional[np.ndarray]:
        """Cached vector for text (refreshing its recency), or None"""
        entry = self._entries.get(text)
        if entry is None:
            return None
        entry.last_accessed_at = self._clock()
        self._entries.move_to_end(text)
        return entry.vector

    def _store(self, text: str, vector: np.ndarray) -> None:
        if text in self._entries:
            self._entries.move_to_end(text)
        else:
            while len(self._entries) >= self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted embedding for {evicted!r} (cache at {self.max_entries} entries)")
        self._entries[text] = CacheEntry(text=text, vector=vector, last_accessed_at=self._clock())

    async def embed(self, texts: Union[str, Sequence[str]], use_cache: bool = True) -> List[np.ndarray]:
        """
        Embed texts, serving cached vectors where possible.

        Uncached texts are sent to the backend in batches of batch_size;
        identical texts within one call are embedded once.

        Returns:
            One vector per input text, in input order
        """
        if isinstance(texts, str):
            texts = [texts]
        if not texts:
            return []

        resolved: Dict[str, np.ndarray] = {}
        pending: List[str] = []
        for text in dict.fromkeys(texts):
            cached = self.get(text) if use_cache else None
            if cached is not None:
                resolved[text] = cached
            else:
                pending.append(text)

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            vectors = await self.backend.embed_batch(batch)
            if len(vectors) != len(batch):
                raise ValueError(f"Backend returned {len(vectors)} vectors for {len(batch)} texts")
            for text, raw in zip(batch, vectors):
                vector = np.asarray(raw, dtype=np.float64)
                if vector.shape != (self.dimension,):
                    raise ValueError(
                        f"Backend returned a {vector.shape} vector, expected ({self.dimension},)"
                    )
                resolved[text] = vector
                if use_cache:
                    self._store(text, vector)

        return [resolved[text] for text in texts]

    async def embed_one(self, text: str, use_cache: bool = True) -> np.ndarray:
        vectors = await self.embed([text], use_cache=use_cache)
        return vectors[0]

    def similarity(
        self,
        a: Sequence[float],
        b: Sequence[float],
        metric: Optional[Union[str, SimilarityMetric]] = None,
    ) -> float:
        return similarity(a, b, metric or self.default_metric)

    async def compute_text_similarity(self, text_a: str, text_b: str, metric=None) -> float:
        vec_a, vec_b = await self.embed([text_a, text_b])
        return self.similarity(vec_a, vec_b, metric)

    async def find_similar(
        self,
        query_text: str,
        candidate_texts: Sequence[str],
        threshold: float = 0.5,
        limit: int = 10,
        metric: Optional[Union[str, SimilarityMetric]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Rank candidates by similarity to a query text.

        Returns:
            [{"text": ..., "similarity": ...}, ...] with similarity >= threshold,
            sorted descending and truncated to limit
        """
        if not candidate_texts or limit <= 0:
            return []

        query_vector = await self.embed_one(query_text)
        candidate_vectors = await self.embed(list(candidate_texts))

        scored = [
            {"text": text, "similarity": self.similarity(query_vector, vector, metric)}
            for text, vector in zip(candidate_texts, candidate_vectors)
        ]
        matches = [item for item in scored if item["similarity"] >= threshold]
        matches.sort(key=lambda item: item["similarity"], reverse=True)
        return matches[:limit]

    def export_snapshot(self) -> CacheSnapshot:
        return CacheSnapshot(
            model_name=self.model_name,
            dimension=self.dimension,
            entries=[
                SnapshotEntry(text=e.text, vector=e.vector.tolist(), timestamp=e.last_accessed_at)
                for e in self._entries.values()
            ],
        )

    def import_snapshot(
        self,
        snapshot: Union[CacheSnapshot, Dict[str, Any]],
        clear_existing: bool = False,
        validate_dimension: bool = True,
    ) -> int:
        """
        Load entries from a snapshot.

        The snapshot is fully validated before the cache is touched. Existing
        texts are never overwritten unless clear_existing is set.

        Returns:
            Number of imported entries
        """
        if isinstance(snapshot, dict):
            snapshot = CacheSnapshot.from_json_dict(snapshot)
        if not isinstance(snapshot, CacheSnapshot):
            raise CacheFormatError(f"Unsupported snapshot type: {type(snapshot).__name__}")

        if validate_dimension and snapshot.dimension != self.dimension:
            raise CacheFormatError(
                f"Dimension mismatch: snapshot uses {snapshot.dimension}, cache uses {self.dimension}"
            )
        vectors = []
        for entry in snapshot.entries:
            vector = np.asarray(entry.vector, dtype=np.float64)
            if vector.shape != (snapshot.dimension,):
                raise CacheFormatError(
                    f"Entry {entry.text!r} has {vector.size} values, snapshot dimension is {snapshot.dimension}"
                )
            vectors.append(vector)

        if clear_existing:
            self.clear()

        imported = 0
        for entry, vector in zip(snapshot.entries, vectors):
            if entry.text in self._entries:
                continue
            self._entries[entry.text] = CacheEntry(
                text=entry.text,
                vector=vector,
                last_accessed_at=entry.timestamp or self._clock(),
            )
            imported += 1

        # Restore recency order, then enforce the cap
        ordered = sorted(self._entries.values(), key=lambda e: e.last_accessed_at)
        self._entries = OrderedDict((e.text, e) for e in ordered)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

        logger.info(f"Imported {imported} embeddings from snapshot ({snapshot.model_name}, {snapshot.dimension} dims)")
        return imported

    def save_snapshot(self, path: Union[str, Path]) -> int:
        """Write the cache to a JSON snapshot file. Returns the entry count."""
        snapshot = self.export_snapshot()
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(snapshot.to_json_dict()), encoding="utf-8")
        logger.info(f"Embedding cache exported to {target} ({len(snapshot.entries)} entries)")
        return len(snapshot.entries)

    def load_snapshot(self, path: Union[str, Path], clear_existing: bool = False, validate_dimension: bool = True) -> int:
        raw = Path(path).read_text(encoding="utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CacheFormatError(f"Snapshot {path} is not valid JSON: {exc}") from exc
        return self.import_snapshot(data, clear_existing=clear_existing, validate_dimension=validate_dimension)

    def trim(self, keep_ratio: float) -> int:
        """
        Drop the least recently accessed (1 - keep_ratio) fraction.

        At least one entry survives unless keep_ratio is 0.

        Returns:
            Number of removed entries
        """
        if not 0 <= keep_ratio <= 1:
            raise ValidationError(f"keep_ratio must be in [0, 1] (got {keep_ratio})")
        total = len(self._entries)
        if total == 0:
            return 0
        keep = 0 if keep_ratio == 0 else max(1, math.floor(total * keep_ratio))
        removed = total - keep
        for _ in range(removed):
            self._entries.popitem(last=False)
        if removed:
            logger.debug(f"Trimmed embedding cache from {total} to {keep} entries")
        return removed

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Embedding cache cleared")

    def handle_memory_pressure(self, level: str) -> None:
        if level == "critical":
            removed = self.trim(self.pressure_keep_ratio)
            logger.warning(f"Critical memory pressure: dropped {removed} cached embeddings")

    def memory_usage(self) -> Dict[str, Any]:
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "estimated_bytes": len(self._entries) * self.dimension * 8,  # float64
        }
