from sqlalchemy import Column, Integer, String, Boolean, Float, Text, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
from pydantic import BaseModel
from typing import Optional, List, Dict, Any

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


# SQLAlchemy Models
class ConceptNodeRecord(Base):
    __tablename__ = "concept_nodes"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String, nullable=False)
    context_ref = Column(String, nullable=False)
    node_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    weight = Column(Float, default=1.0)
    node_type = Column(String, default="concept")
    generated = Column(Boolean, default=False)
    depth_level = Column(Integer, default=0)
    properties = Column(JSON, default=dict)
    embedding = Column(JSON, nullable=True)  # list of floats
    created_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("idx_concept_nodes_context", "owner_id", "context_ref"),
        Index("uq_concept_nodes_node", "owner_id", "context_ref", "node_id", unique=True),
    )


class ConceptEdgeRecord(Base):
    __tablename__ = "concept_edges"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String, nullable=False)
    context_ref = Column(String, nullable=False)
    source_id = Column(String, nullable=False)
    target_id = Column(String, nullable=False)
    weight = Column(Float, default=1.0)
    generated = Column(Boolean, default=False)
    statement = Column(Text, nullable=True)
    properties = Column(JSON, default=dict)
    created_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("idx_concept_edges_context", "owner_id", "context_ref"),
    )


# Pydantic Models for API
class ExpansionOptionsRequest(BaseModel):
    depth: Optional[int] = None
    fanout_factor: Optional[float] = None
    max_new_per_node: Optional[int] = None
    max_total_new: Optional[int] = None
    provider_id: Optional[str] = None
    strategy: str = "balanced"
    focus_node_ids: List[str] = []
    exclude_node_ids: List[str] = []
    memory_admission_ratio: Optional[float] = None


class StartExpansionRequest(BaseModel):
    context_ref: str
    options: ExpansionOptionsRequest = ExpansionOptionsRequest()


class StartExpansionResponse(BaseModel):
    job_id: str
    status: str


class ExpansionStatusResponse(BaseModel):
    job_id: str
    owner_id: str
    context_ref: str
    status: str
    progress_percent: int
    current_depth: int
    generated_node_count: int
    generated_edge_count: int
    created_at: datetime
    updated_at: datetime
    error_message: Optional[str] = None


class CancelResponse(BaseModel):
    job_id: str
    accepted: bool


class ConceptNodePayload(BaseModel):
    id: str
    name: str
    weight: float = 1.0
    type: str = "concept"
    generated: bool = False
    depth_level: int = 0
    properties: Dict[str, Any] = {}


class ConceptEdgePayload(BaseModel):
    source: str
    target: str
    weight: float = 1.0
    generated: bool = False
    statement: Optional[str] = None
    properties: Dict[str, Any] = {}


class ExpansionResultResponse(BaseModel):
    job_id: str
    status: str
    nodes: List[ConceptNodePayload]
    edges: List[ConceptEdgePayload]
    insights: List[Dict[str, Any]]


class GraphPayload(BaseModel):
    nodes: List[ConceptNodePayload]
    edges: List[ConceptEdgePayload] = []
