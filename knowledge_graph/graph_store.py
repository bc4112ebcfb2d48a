"""
Graph Store

Where seed graphs come from and where expansion results go. Graphs are
scoped by (owner_id, context_ref).
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Tuple, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from knowledge_graph.models import Graph, Node, Edge

logger = logging.getLogger(__name__)


class GraphStore(ABC):
    """Collaborator contract used by the expansion engine"""

    @abstractmethod
    async def exists(self, owner_id: str, context_ref: str) -> bool:
        ...

    @abstractmethod
    async def fetch_graph(self, owner_id: str, context_ref: str) -> Optional[Graph]:
        """Return the stored graph, or None for an unknown context"""

    @abstractmethod
    async def persist(self, owner_id: str, context_ref: str, new_nodes: Sequence[Node], new_edges: Sequence[Edge]) -> None:
        """Append expansion output to an existing context"""

    @abstractmethod
    async def put_graph(self, owner_id: str, context_ref: str, graph: Graph) -> None:
        """Create or replace a context's seed graph"""


class InMemoryGraphStore(GraphStore):
    """Dict-backed store for tests and single-process development"""

    def __init__(self):
        self.graphs: Dict[Tuple[str, str], Graph] = {}

    async def exists(self, owner_id: str, context_ref: str) -> bool:
        return (owner_id, context_ref) in self.graphs

    async def fetch_graph(self, owner_id: str, context_ref: str) -> Optional[Graph]:
        graph = self.graphs.get((owner_id, context_ref))
        return graph.copy() if graph is not None else None

    async def put_graph(self, owner_id: str, context_ref: str, graph: Graph) -> None:
        self.graphs[(owner_id, context_ref)] = graph.copy()

    async def persist(self, owner_id: str, context_ref: str, new_nodes: Sequence[Node], new_edges: Sequence[Edge]) -> None:
        graph = self.graphs.setdefault((owner_id, context_ref), Graph())
        for node in new_nodes:
            if node.id not in graph:
                graph.add_node(node)
        for edge in new_edges:
            graph.add_edge(edge)


class SqlGraphStore(GraphStore):
    """Stores nodes and edges in the concept_nodes / concept_edges tables"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    async def exists(self, owner_id: str, context_ref: str) -> bool:
        from models import ConceptNodeRecord

        db = self.session_factory()
        try:
            return db.query(ConceptNodeRecord.id).filter(
                ConceptNodeRecord.owner_id == owner_id,
                ConceptNodeRecord.context_ref == context_ref,
            ).first() is not None
        finally:
            db.close()

    async def fetch_graph(self, owner_id: str, context_ref: str) -> Optional[Graph]:
        from models import ConceptNodeRecord, ConceptEdgeRecord

        db = self.session_factory()
        try:
            node_rows = db.query(ConceptNodeRecord).filter(
                ConceptNodeRecord.owner_id == owner_id,
                ConceptNodeRecord.context_ref == context_ref,
            ).order_by(ConceptNodeRecord.id).all()
            if not node_rows:
                return None

            edge_rows = db.query(ConceptEdgeRecord).filter(
                ConceptEdgeRecord.owner_id == owner_id,
                ConceptEdgeRecord.context_ref == context_ref,
            ).order_by(ConceptEdgeRecord.id).all()

            graph = Graph(nodes=[
                Node(
                    id=row.node_id,
                    name=row.name,
                    weight=row.weight if row.weight is not None else 1.0,
                    embedding=row.embedding,
                    generated=bool(row.generated),
                    depth_level=row.depth_level or 0,
                    type=row.node_type or "concept",
                    properties=dict(row.properties or {}),
                )
                for row in node_rows
            ])
            for row in edge_rows:
                if row.source_id not in graph or row.target_id not in graph:
                    logger.warning(f"Skipping dangling edge {row.source_id}->{row.target_id} in {owner_id}/{context_ref}")
                    continue
                graph.add_edge(Edge(
                    source=row.source_id,
                    target=row.target_id,
                    weight=row.weight if row.weight is not None else 1.0,
                    generated=bool(row.generated),
                    statement=row.statement,
                    properties=dict(row.properties or {}),
                ))
            return graph
        finally:
            db.close()

    def _add_rows(self, db, owner_id: str, context_ref: str, nodes: Sequence[Node], edges: Sequence[Edge]) -> None:
        from models import ConceptNodeRecord, ConceptEdgeRecord

        for node in nodes:
            db.add(ConceptNodeRecord(
                owner_id=owner_id,
                context_ref=context_ref,
                node_id=node.id,
                name=node.name,
                weight=node.weight,
                node_type=node.type,
                generated=node.generated,
                depth_level=node.depth_level,
                properties=node.properties,
                embedding=node.embedding,
            ))
        for edge in edges:
            db.add(ConceptEdgeRecord(
                owner_id=owner_id,
                context_ref=context_ref,
                source_id=edge.source,
                target_id=edge.target,
                weight=edge.weight,
                generated=edge.generated,
                statement=edge.statement,
                properties=edge.properties,
            ))

    async def put_graph(self, owner_id: str, context_ref: str, graph: Graph) -> None:
        from models import ConceptNodeRecord, ConceptEdgeRecord

        db = self.session_factory()
        try:
            for record in (ConceptEdgeRecord, ConceptNodeRecord):
                db.query(record).filter(
                    record.owner_id == owner_id,
                    record.context_ref == context_ref,
                ).delete(synchronize_session=False)
            self._add_rows(db, owner_id, context_ref, list(graph.nodes.values()), graph.edges)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info(f"💾 Stored graph {owner_id}/{context_ref} ({len(graph.nodes)} nodes, {len(graph.edges)} edges)")

    async def persist(self, owner_id: str, context_ref: str, new_nodes: Sequence[Node], new_edges: Sequence[Edge]) -> None:
        db = self.session_factory()
        try:
            self._add_rows(db, owner_id, context_ref, new_nodes, new_edges)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info(f"💾 Persisted {len(new_nodes)} nodes and {len(new_edges)} edges to {owner_id}/{context_ref}")
