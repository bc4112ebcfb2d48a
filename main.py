"""
Concept Graph API - Knowledge Graph Expansion Service

Handles:
- Seed graphs per owner and context
- Asynchronous expansion jobs (start, status, cancel, results)
- Shared embedding cache with snapshot load/save
- Memory-pressure admission control
"""
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from knowledge_graph import routes as expansion_routes
from knowledge_graph.embedding_cache import EmbeddingCache
from knowledge_graph.embedding_service import create_embedding_backend
from knowledge_graph.errors import CacheFormatError
from knowledge_graph.expansion import ExpansionEngine
from knowledge_graph.graph_store import SqlGraphStore
from knowledge_graph.memory_governor import MemoryGovernor
from knowledge_graph.providers import MockGenerationProvider, OpenAIGenerationProvider

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_engine() -> ExpansionEngine:
    """Wire the default engine from settings"""
    from database import create_tables

    create_tables()
    governor = MemoryGovernor()
    cache = EmbeddingCache(create_embedding_backend(), memory_governor=governor)
    engine = ExpansionEngine(SqlGraphStore(), cache, governor)

    if settings.ENABLE_MOCK_PROVIDER:
        engine.register_provider("mock", MockGenerationProvider())
    if settings.OPENAI_API_KEY:
        engine.register_provider("openai", OpenAIGenerationProvider())
    return engine


def create_app(
    engine: Optional[ExpansionEngine] = None,
    snapshot_path: Optional[str] = None,
    monitor_interval: Optional[float] = None,
) -> FastAPI:
    app = FastAPI(
        title="Concept Graph API",
        version="1.0.0",
        description="Asynchronous knowledge graph expansion service"
    )
    app.state.expansion_engine = engine or build_engine()
    app.state.snapshot_path = snapshot_path if snapshot_path is not None else settings.EMBEDDING_CACHE_SNAPSHOT_PATH
    app.state.monitor_interval = monitor_interval if monitor_interval is not None else settings.MEMORY_MONITOR_INTERVAL

    # Embedding cache and memory monitor lifecycle events
    @app.on_event("startup")
    async def startup():
        path = app.state.snapshot_path
        if path and Path(path).exists():
            try:
                app.state.expansion_engine.embedding_cache.load_snapshot(path)
            except CacheFormatError as exc:
                logger.warning(f"Ignoring embedding cache snapshot {path}: {exc}")
        app.state.expansion_engine.memory_governor.start_monitoring(app.state.monitor_interval)

    @app.on_event("shutdown")
    async def shutdown():
        current = app.state.expansion_engine
        await current.memory_governor.stop_monitoring()
        await current.shutdown()
        if app.state.snapshot_path and len(current.embedding_cache):
            current.embedding_cache.save_snapshot(app.state.snapshot_path)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(expansion_routes.router, prefix="/expansions", tags=["Expansion"])
    app.include_router(expansion_routes.graph_router, prefix="/graphs", tags=["Graphs"])

    @app.get("/")
    def root():
        return {
            "service": "concept-graph-api",
            "version": "1.0.0",
            "description": "Asynchronous knowledge graph expansion service"
        }

    @app.get("/health")
    def health():
        return {"status": "healthy", "service": "concept-graph-api"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
