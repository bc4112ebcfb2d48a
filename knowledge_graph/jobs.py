"""
Expansion Job Manager

Keeps the table of expansion jobs for the process lifetime. A job's fields
are written only by the engine coroutine running that job; status and
result reads are free.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Optional, Dict, Any, List

from knowledge_graph.errors import NotFoundError, JobStateError
from knowledge_graph.models import ExpansionOptions, Node, Edge

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Expansion job lifecycle"""
    QUEUED = "queued"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def has_result(self) -> bool:
        return self in RESULT_STATUSES


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.PARTIALLY_COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})
RESULT_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.PARTIALLY_COMPLETED,
    JobStatus.CANCELLED,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExpansionResult:
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    insights: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "insights": list(self.insights),
        }


@dataclass
class ExpansionJob:
    """One bounded run of the expansion algorithm"""
    owner_id: str
    context_ref: str
    options: ExpansionOptions
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.QUEUED
    progress_percent: int = 0
    current_depth: int = 0
    generated_node_count: int = 0
    generated_edge_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    result: Optional[ExpansionResult] = None
    error_message: Optional[str] = None
    cancel_requested: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def status_view(self) -> Dict[str, Any]:
        """Status payload for API responses"""
        view = {
            "job_id": self.id,
            "owner_id": self.owner_id,
            "context_ref": self.context_ref,
            "status": self.status.value,
            "progress_percent": self.progress_percent,
            "current_depth": self.current_depth,
            "generated_node_count": self.generated_node_count,
            "generated_edge_count": self.generated_edge_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.error_message is not None:
            view["error_message"] = self.error_message
        return view

    def to_dict(self) -> Dict[str, Any]:
        data = self.status_view()
        data["options"] = self.options.to_dict()
        data["result"] = self.result.to_dict() if self.result else None
        return data


class JobManager:
    """In-memory job table"""

    def __init__(self):
        self.jobs: Dict[str, ExpansionJob] = {}

    def __len__(self) -> int:
        return len(self.jobs)

    def create(self, owner_id: str, context_ref: str, options: ExpansionOptions) -> ExpansionJob:
        job = ExpansionJob(owner_id=owner_id, context_ref=context_ref, options=options)
        self.jobs[job.id] = job
        logger.info(f"📋 Queued expansion job {job.id} for {owner_id}/{context_ref} (depth {options.depth})")
        return job

    def get(self, job_id: str) -> ExpansionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Expansion job not found: {job_id}")
        return job

    def status(self, job_id: str) -> Dict[str, Any]:
        return self.get(job_id).status_view()

    def cancel(self, job_id: str) -> bool:
        """
        Request cooperative cancellation.

        Returns:
            True when the request was accepted, False for unknown or finished jobs
        """
        job = self.jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        if job.status == JobStatus.CANCELLING:
            return True

        job.cancel_requested = True
        if job.status == JobStatus.RUNNING:
            job.status = JobStatus.CANCELLING
        job.touch()
        logger.info(f"🛑 Cancellation requested for job {job_id}")
        return True

    def results(self, job_id: str) -> Dict[str, Any]:
        job = self.get(job_id)
        if not job.status.has_result or job.result is None:
            raise JobStateError(f"Job {job_id} has no result (status: {job.status.value})")
        return job.result.to_dict()

    def prune(self, older_than: timedelta) -> int:
        """Drop terminal jobs last updated more than older_than ago"""
        cutoff = _utcnow() - older_than
        stale = [
            job_id for job_id, job in self.jobs.items()
            if job.status.is_terminal and job.updated_at < cutoff
        ]
        for job_id in stale:
            del self.jobs[job_id]
        if stale:
            logger.info(f"🧹 Pruned {len(stale)} finished expansion job(s)")
        return len(stale)
