"""
HTTP glue for the expansion engine.

The caller's identity comes from the X-OWNER-ID header; jobs and graphs are
only visible to their owner.
"""

import logging
from typing import Dict, Any

from fastapi import APIRouter, Header, HTTPException, Request

from config import settings
from knowledge_graph.errors import ValidationError, NotFoundError, JobStateError
from knowledge_graph.expansion import ExpansionEngine
from knowledge_graph.jobs import ExpansionJob
from knowledge_graph.models import Graph, ExpansionOptions
from models import (
    StartExpansionRequest,
    StartExpansionResponse,
    ExpansionStatusResponse,
    ExpansionResultResponse,
    CancelResponse,
    GraphPayload,
)

logger = logging.getLogger(__name__)

router = APIRouter()
graph_router = APIRouter()


def _engine(request: Request) -> ExpansionEngine:
    return request.app.state.expansion_engine


def _owned_job(engine: ExpansionEngine, job_id: str, owner_id: str) -> ExpansionJob:
    try:
        job = engine.get_job(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if job.owner_id != owner_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return job


@router.post("", response_model=StartExpansionResponse, status_code=202)
async def start_expansion(
    payload: StartExpansionRequest,
    request: Request,
    x_owner_id: str = Header(..., alias="X-OWNER-ID"),
):
    engine = _engine(request)

    if not engine.memory_governor.admit(settings.EXPANSION_ADMISSION_RATIO):
        sample = engine.memory_governor.last_sample
        usage = f" ({sample.usage_percent:.1f}% in use)" if sample else ""
        raise HTTPException(status_code=503, detail=f"Server under memory pressure{usage}, try again later")

    overrides = {
        key: value
        for key, value in payload.options.model_dump().items()
        if value is not None
    }
    try:
        options = ExpansionOptions(**overrides)
        job_id = await engine.start(x_owner_id, payload.context_ref, options)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return StartExpansionResponse(job_id=job_id, status=engine.get_job(job_id).status.value)


@router.get("/memory")
def memory_stats(request: Request) -> Dict[str, Any]:
    governor = _engine(request).memory_governor
    governor.sample()
    return governor.stats()


@router.get("/{job_id}", response_model=ExpansionStatusResponse)
def expansion_status(job_id: str, request: Request, x_owner_id: str = Header(..., alias="X-OWNER-ID")):
    job = _owned_job(_engine(request), job_id, x_owner_id)
    return job.status_view()


@router.post("/{job_id}/cancel", response_model=CancelResponse)
def cancel_expansion(job_id: str, request: Request, x_owner_id: str = Header(..., alias="X-OWNER-ID")):
    engine = _engine(request)
    _owned_job(engine, job_id, x_owner_id)
    return CancelResponse(job_id=job_id, accepted=engine.cancel(job_id))


@router.get("/{job_id}/results", response_model=ExpansionResultResponse)
def expansion_results(job_id: str, request: Request, x_owner_id: str = Header(..., alias="X-OWNER-ID")):
    engine = _engine(request)
    job = _owned_job(engine, job_id, x_owner_id)
    try:
        result = engine.results(job_id)
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ExpansionResultResponse(job_id=job_id, status=job.status.value, **result)


@graph_router.put("/{context_ref}")
async def put_graph(
    context_ref: str,
    payload: GraphPayload,
    request: Request,
    x_owner_id: str = Header(..., alias="X-OWNER-ID"),
):
    try:
        graph = Graph.from_dict(payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _engine(request).graph_store.put_graph(x_owner_id, context_ref, graph)
    return {"context_ref": context_ref, "nodes": len(graph.nodes), "edges": len(graph.edges)}


@graph_router.get("/{context_ref}")
async def get_graph(context_ref: str, request: Request, x_owner_id: str = Header(..., alias="X-OWNER-ID")):
    graph = await _engine(request).graph_store.fetch_graph(x_owner_id, context_ref)
    if graph is None:
        raise HTTPException(status_code=404, detail=f"Graph not found: {context_ref}")
    return graph.to_dict()
