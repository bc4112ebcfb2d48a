"""
Knowledge Graph Expansion Engine

Grows a seed graph level by level through a registered generation provider.

Per level:
1. size the candidate request: ceil(fanout_factor * frontier size), capped by
   the remaining max_total_new budget
2. ask the provider for up to max_new_per_node concepts per frontier node
3. drop exact name collisions, embed the rest and flag near duplicates
4. add accepted concepts at parent.depth_level + 1 with a parent -> child edge
5. ask for cross connections and insights over the new nodes

Between levels the engine checks, in order: cancellation, memory admission,
then depth / frontier / budget exhaustion.
"""

import asyncio
import logging
import math
import uuid
from typing import Dict, Any, List, Optional, Tuple

import numpy as np

from config import settings
from knowledge_graph.embedding_cache import EmbeddingCache
from knowledge_graph.errors import ValidationError, ProviderError, JobTimeoutError, ExpansionError
from knowledge_graph.events import EventChannel, ExpansionEvent
from knowledge_graph.graph_store import GraphStore
from knowledge_graph.jobs import JobManager, JobStatus, ExpansionJob, ExpansionResult
from knowledge_graph.memory_governor import MemoryGovernor
from knowledge_graph.models import Graph, Node, Edge, ExpansionOptions, normalize_name
from knowledge_graph.providers import GenerationContext, validate_provider

logger = logging.getLogger(__name__)


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class ExpansionEngine:
    """
    Runs expansion jobs as asyncio tasks.

    Args:
        graph_store: source of seed graphs and sink for results
        embedding_cache: shared cache used for candidate embeddings
        memory_governor: consulted once per depth-level boundary
        events: lifecycle notification channel
        job_manager: job table (a fresh one when omitted)
        max_depth: upper clamp for options.depth
        dedup_threshold: similarity at which a candidate is flagged as a near duplicate
    """

    def __init__(
        self,
        graph_store: GraphStore,
        embedding_cache: EmbeddingCache,
        memory_governor: MemoryGovernor,
        events: Optional[EventChannel] = None,
        job_manager: Optional[JobManager] = None,
        max_depth: Optional[int] = None,
        dedup_threshold: Optional[float] = None,
    ):
        self.graph_store = graph_store
        self.embedding_cache = embedding_cache
        self.memory_governor = memory_governor
        self.events = events or EventChannel()
        self.jobs = job_manager or JobManager()
        self.max_depth = max_depth or settings.MAX_EXPANSION_DEPTH
        self.dedup_threshold = (
            dedup_threshold if dedup_threshold is not None else settings.DEDUP_SIMILARITY_THRESHOLD
        )
        self.providers: Dict[str, Any] = {}
        self.running_tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register_provider(self, provider_id: str, provider: Any) -> None:
        if not provider_id:
            raise ValidationError("provider_id is required")
        validate_provider(provider)
        self.providers[provider_id] = provider
        logger.info(f"Registered generation provider: {provider_id}")

    async def start(self, owner_id: str, context_ref: str, options: Optional[ExpansionOptions] = None) -> str:
        """
        Validate and schedule an expansion job without waiting for it.

        Raises:
            ValidationError: bad options, unknown provider or unknown context
        """
        options = (options or ExpansionOptions()).validated(self.max_depth)
        if options.provider_id not in self.providers:
            raise ValidationError(f"Unknown provider: {options.provider_id}")
        if not context_ref:
            raise ValidationError("context_ref is required")
        if not await self.graph_store.exists(owner_id, context_ref):
            raise ValidationError(f"Unknown context: {context_ref}")

        job = self.jobs.create(owner_id, context_ref, options)

        task = asyncio.create_task(self._run_job(job))
        self.running_tasks[job.id] = task
        task.add_done_callback(lambda t, job_id=job.id: self.running_tasks.pop(job_id, None))
        return job.id

    def get_job(self, job_id: str) -> ExpansionJob:
        return self.jobs.get(job_id)

    def status(self, job_id: str) -> Dict[str, Any]:
        return self.jobs.status(job_id)

    def cancel(self, job_id: str) -> bool:
        return self.jobs.cancel(job_id)

    def results(self, job_id: str) -> Dict[str, Any]:
        return self.jobs.results(job_id)

    async def await_job(
        self, job_id: str, timeout: Optional[float] = None, poll_interval: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Wait until the job reaches a terminal state and return its result.

        The wait is on the job's completion event rather than a polling
        loop, so poll_interval is accepted for API compatibility and ignored.
        A timeout raises JobTimeoutError and leaves the job running.

        Raises:
            ProviderError: the job failed
        """
        job = self.jobs.get(job_id)
        timeout = settings.JOB_AWAIT_TIMEOUT if timeout is None else timeout
        try:
            await asyncio.wait_for(job.done.wait(), timeout)
        except asyncio.TimeoutError:
            raise JobTimeoutError(
                f"Job {job_id} still {job.status.value} after {timeout}s"
            ) from None

        if job.status == JobStatus.FAILED:
            raise ProviderError(job.error_message or f"Job {job_id} failed", provider_id=job.options.provider_id)
        return self.jobs.results(job_id)

    async def shutdown(self) -> None:
        """Cancel outstanding job tasks (process teardown)"""
        tasks = list(self.running_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} running expansion job(s)")

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _run_job(self, job: ExpansionJob) -> None:
        provider = self.providers[job.options.provider_id]
        job.status = JobStatus.CANCELLING if job.cancel_requested else JobStatus.RUNNING
        job.touch()
        logger.info(f"🚀 Starting expansion job {job.id} (provider: {job.options.provider_id})")
        self.events.emit(ExpansionEvent.STARTED, {"job_id": job.id})

        result = ExpansionResult()
        try:
            status, message = await self._expand(job, provider, result)
            if result.nodes or result.edges:
                await self.graph_store.persist(job.owner_id, job.context_ref, result.nodes, result.edges)
                # cancel() may have been accepted while persist was pending
                if job.cancel_requested and status != JobStatus.CANCELLED:
                    status, message = JobStatus.CANCELLED, None
        except asyncio.CancelledError:
            self._finish(job, JobStatus.CANCELLED, "Expansion engine shut down", result)
            raise
        except Exception as exc:
            logger.exception(f"❌ Expansion job {job.id} failed: {exc}")
            self._fail(job, exc)
            return

        self._finish(job, status, message, result)

    def _finish(self, job: ExpansionJob, status: JobStatus, message: Optional[str], result: ExpansionResult) -> None:
        job.status = status
        job.error_message = message
        job.result = result
        if status == JobStatus.COMPLETED:
            job.progress_percent = 100
        job.touch()

        if status == JobStatus.COMPLETED:
            logger.info(
                f"✅ Expansion job {job.id} completed "
                f"({job.generated_node_count} nodes, {job.generated_edge_count} edges)"
            )
            self.events.emit(ExpansionEvent.COMPLETED, {
                "job_id": job.id,
                "node_count": job.generated_node_count,
                "edge_count": job.generated_edge_count,
            })
        elif status == JobStatus.PARTIALLY_COMPLETED:
            logger.warning(f"⚠️ Expansion job {job.id} stopped early at depth {job.current_depth}: {message}")
            self.events.emit(ExpansionEvent.PARTIALLY_COMPLETED, {"job_id": job.id, "reason": message})
        else:
            logger.info(f"🛑 Expansion job {job.id} cancelled at depth {job.current_depth}")
            self.events.emit(ExpansionEvent.CANCELLED, {"job_id": job.id})

        job.done.set()

    def _fail(self, job: ExpansionJob, exc: Exception) -> None:
        job.status = JobStatus.FAILED
        job.error_message = str(exc) or exc.__class__.__name__
        job.result = None
        job.touch()
        self.events.emit(ExpansionEvent.FAILED, {"job_id": job.id, "error": job.error_message})
        job.done.set()

    def _boundary(self, job: ExpansionJob, level: int) -> Optional[Tuple[JobStatus, Optional[str]]]:
        """Checks before starting a level; returns the terminal outcome, if any"""
        job.current_depth = level
        job.touch()

        if job.cancel_requested:
            return JobStatus.CANCELLED, None

        if not self.memory_governor.admit(job.options.memory_admission_ratio):
            sample = getattr(self.memory_governor, "last_sample", None)
            if sample is not None:
                return JobStatus.PARTIALLY_COMPLETED, f"Memory limit reached ({sample.usage_percent:.1f}%)"
            return JobStatus.PARTIALLY_COMPLETED, "Memory limit reached"

        return None

    async def _expand(self, job: ExpansionJob, provider: Any, result: ExpansionResult) -> Tuple[JobStatus, Optional[str]]:
        options = job.options
        graph = await self.graph_store.fetch_graph(job.owner_id, job.context_ref)
        if graph is None:
            raise ValidationError(f"Unknown context: {job.context_ref}")

        seen_names = {normalize_name(node.name) for node in graph.nodes.values()}
        vectors: Dict[str, np.ndarray] = {}
        if graph.nodes:
            seed_nodes = list(graph.nodes.values())
            for node, vector in zip(seed_nodes, await self.embedding_cache.embed([n.name for n in seed_nodes])):
                vectors[node.id] = vector

        frontier = [
            node for node in graph.nodes.values()
            if (not options.focus_node_ids or node.id in options.focus_node_ids)
            and node.id not in options.exclude_node_ids
        ]

        level = 0
        while True:
            outcome = self._boundary(job, level)
            if outcome is not None:
                return outcome

            remaining = options.max_total_new - job.generated_node_count
            if level >= options.depth or not frontier or remaining <= 0:
                return JobStatus.COMPLETED, None

            accepted = await self._expand_level(
                job, provider, graph, frontier, level, remaining, seen_names, vectors, result
            )

            job.progress_percent = min(95, math.floor(100 * level / options.depth))
            job.touch()
            logger.info(
                f"📈 Job {job.id} level {level + 1}/{options.depth}: +{len(accepted)} nodes "
                f"({job.generated_node_count} total, {job.progress_percent}%)"
            )
            self.events.emit(ExpansionEvent.PROGRESS, {
                "job_id": job.id,
                "depth": level + 1,
                "progress_percent": job.progress_percent,
                "generated_node_count": job.generated_node_count,
                "generated_edge_count": job.generated_edge_count,
            })

            frontier = [node for node in accepted if node.id not in options.exclude_node_ids]
            level += 1

    async def _expand_level(
        self,
        job: ExpansionJob,
        provider: Any,
        graph: Graph,
        frontier: List[Node],
        level: int,
        remaining: int,
        seen_names: set,
        vectors: Dict[str, np.ndarray],
        result: ExpansionResult,
    ) -> List[Node]:
        options = job.options
        target = min(math.ceil(options.fanout_factor * len(frontier)), remaining)
        accepted: List[Node] = []
        level_edges: List[Edge] = []

        for parent in frontier:
            wanted = min(options.max_new_per_node, target - len(accepted))
            if wanted <= 0:
                break

            context = GenerationContext(
                depth=level,
                strategy=options.strategy,
                parent=parent,
                exclude_names=set(seen_names),
                job_id=job.id,
            )
            candidates = await self._call_provider(options.provider_id, "generate_concepts", graph, wanted, context)

            fresh = []
            for candidate in (candidates or [])[:wanted]:
                key = normalize_name(candidate.name)
                if not key or key in seen_names:
                    continue
                seen_names.add(key)
                fresh.append(candidate)
            if not fresh:
                continue

            parent_vector = vectors.get(parent.id)
            if parent_vector is None:
                parent_vector = await self.embedding_cache.embed_one(parent.name)
                vectors[parent.id] = parent_vector
            candidate_vectors = await self.embedding_cache.embed([c.name.strip() for c in fresh])

            for candidate, vector in zip(fresh, candidate_vectors):
                properties = dict(candidate.properties or {})
                near = self._nearest_duplicate(vector, vectors)
                if near is not None:
                    properties["near_duplicate_of"] = near

                node = graph.add_node(Node(
                    id=f"concept-{uuid.uuid4().hex[:12]}",
                    name=" ".join(candidate.name.split()),
                    weight=1.0,
                    generated=True,
                    depth_level=parent.depth_level + 1,
                    properties=properties,
                ))
                node.attach_embedding(vector)
                vectors[node.id] = vector

                if candidate.confidence is not None:
                    weight = _clamp_unit(candidate.confidence)
                else:
                    weight = self.embedding_cache.similarity(parent_vector, vector)
                edge = graph.add_edge(Edge(
                    source=parent.id,
                    target=node.id,
                    weight=weight,
                    generated=True,
                    statement=candidate.statement,
                ))
                accepted.append(node)
                level_edges.append(edge)

        result.nodes.extend(accepted)
        result.edges.extend(level_edges)
        job.generated_node_count += len(accepted)
        job.generated_edge_count += len(level_edges)

        if not accepted:
            return accepted

        context = GenerationContext(
            depth=level,
            strategy=options.strategy,
            exclude_names=set(seen_names),
            new_nodes=list(accepted),
            new_edges=list(level_edges),
            job_id=job.id,
        )

        connection_count = math.floor(len(accepted) * (1 + level * 0.5))
        if connection_count > 0:
            links = await self._call_provider(options.provider_id, "generate_connections", graph, connection_count, context)
            added = 0
            for link in (links or [])[:connection_count]:
                if link.source == link.target or link.source not in graph or link.target not in graph:
                    logger.debug(f"Skipping connection {link.source}->{link.target}")
                    continue
                if link.weight is not None:
                    weight = _clamp_unit(link.weight)
                elif link.source in vectors and link.target in vectors:
                    weight = self.embedding_cache.similarity(vectors[link.source], vectors[link.target])
                else:
                    weight = 0.5
                edge = graph.add_edge(Edge(
                    source=link.source,
                    target=link.target,
                    weight=weight,
                    generated=True,
                    statement=link.statement,
                ))
                result.edges.append(edge)
                level_edges.append(edge)
                added += 1
            job.generated_edge_count += added

        generate_insights = getattr(provider, "generate_insights", None)
        if callable(generate_insights):
            insights = await self._call_provider(options.provider_id, "generate_insights", graph, context)
            for insight in insights or []:
                result.insights.append(insight.to_dict() if hasattr(insight, "to_dict") else dict(insight))

        return accepted

    def _nearest_duplicate(self, vector: np.ndarray, vectors: Dict[str, np.ndarray]) -> Optional[str]:
        best_id, best_score = None, self.dedup_threshold
        for node_id, other in vectors.items():
            if other.shape != vector.shape:
                continue
            score = self.embedding_cache.similarity(vector, other)
            if score >= best_score:
                best_id, best_score = node_id, score
        return best_id

    async def _call_provider(self, provider_id: str, method: str, *args):
        provider = self.providers[provider_id]
        try:
            return await getattr(provider, method)(*args)
        except ExpansionError:
            raise
        except Exception as exc:
            raise ProviderError(f"Provider {provider_id} failed in {method}: {exc}", provider_id=provider_id) from exc
