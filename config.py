import os
from pathlib import Path
from dotenv import load_dotenv
from typing import Optional

# Load .env robustly (try project root and CWD)
_ROOT = Path(__file__).resolve().parent
_candidates = [
    _ROOT / ".env",
    Path.cwd() / ".env",
]
for p in _candidates:
    if p.exists():
        load_dotenv(p, override=False)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return int(raw)


_DATA_DIR = Path(os.getenv("CONCEPT_GRAPH_DATA_DIR", "./data")).expanduser()

_DATABASE_URL_ENV = os.getenv("CONCEPT_GRAPH_DATABASE_URL") or os.getenv("DATABASE_URL")
if not _DATABASE_URL_ENV:
    _DATABASE_URL_ENV = f"sqlite:///{_DATA_DIR / 'concept_graph.db'}"

_EMBEDDING_BACKEND_ENV = os.getenv("EMBEDDING_BACKEND", "hash").strip().lower()
# text-embedding-3-large returns 3072-dimensional vectors by default
_DEFAULT_DIMENSION = "3072" if _EMBEDDING_BACKEND_ENV == "openai" else "256"


class Settings:
    # Storage
    DATA_DIR: str = str(_DATA_DIR)
    DATABASE_URL: str = _DATABASE_URL_ENV

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Expansion budgets
    MAX_EXPANSION_DEPTH: int = int(os.getenv("MAX_EXPANSION_DEPTH", "5"))
    DEFAULT_EXPANSION_DEPTH: int = int(os.getenv("DEFAULT_EXPANSION_DEPTH", "2"))
    DEFAULT_FANOUT_FACTOR: float = float(os.getenv("DEFAULT_FANOUT_FACTOR", "1.5"))
    DEFAULT_MAX_NEW_PER_NODE: int = int(os.getenv("DEFAULT_MAX_NEW_PER_NODE", "3"))
    DEFAULT_MAX_TOTAL_NEW: int = int(os.getenv("DEFAULT_MAX_TOTAL_NEW", "100"))
    DEFAULT_MEMORY_ADMISSION_RATIO: float = float(os.getenv("DEFAULT_MEMORY_ADMISSION_RATIO", "0.85"))
    EXPANSION_ADMISSION_RATIO: float = float(os.getenv("EXPANSION_ADMISSION_RATIO", "0.8"))
    JOB_AWAIT_TIMEOUT: float = float(os.getenv("JOB_AWAIT_TIMEOUT", "60"))

    # Memory governor
    MEMORY_WARNING_THRESHOLD: float = float(os.getenv("MEMORY_WARNING_THRESHOLD", "0.75"))
    MEMORY_CRITICAL_THRESHOLD: float = float(os.getenv("MEMORY_CRITICAL_THRESHOLD", "0.9"))
    MEMORY_LIMIT_BYTES: Optional[int] = _env_optional_int("MEMORY_LIMIT_BYTES")
    MEMORY_MONITOR_INTERVAL: float = float(os.getenv("MEMORY_MONITOR_INTERVAL", "30"))  # seconds, 0 disables
    MEMORY_EMERGENCY_CLEAR: bool = _env_bool("MEMORY_EMERGENCY_CLEAR", "false")

    # Embeddings
    EMBEDDING_BACKEND: str = _EMBEDDING_BACKEND_ENV
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-large")
    EMBEDDING_DIMENSION: int = int(os.getenv("EMBEDDING_DIMENSION", _DEFAULT_DIMENSION))
    EMBEDDING_BATCH_SIZE: int = int(os.getenv("EMBEDDING_BATCH_SIZE", "16"))
    EMBEDDING_CACHE_MAX_ENTRIES: int = int(os.getenv("EMBEDDING_CACHE_MAX_ENTRIES", "10000"))
    EMBEDDING_CACHE_PRESSURE_KEEP_RATIO: float = float(os.getenv("EMBEDDING_CACHE_PRESSURE_KEEP_RATIO", "0.5"))
    EMBEDDING_CACHE_SNAPSHOT_PATH: str = os.getenv(
        "EMBEDDING_CACHE_SNAPSHOT_PATH", str(_DATA_DIR / "embedding_cache.json")
    )
    SIMILARITY_METRIC: str = os.getenv("SIMILARITY_METRIC", "cosine")
    DEDUP_SIMILARITY_THRESHOLD: float = float(os.getenv("DEDUP_SIMILARITY_THRESHOLD", "0.92"))

    # Generation providers
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    GENERATION_MODEL: str = os.getenv("GENERATION_MODEL", "gpt-4o-mini")
    ENABLE_MOCK_PROVIDER: bool = _env_bool("ENABLE_MOCK_PROVIDER", "true")
    DEFAULT_GENERATION_PROVIDER: str = os.getenv("DEFAULT_GENERATION_PROVIDER", "mock")

    # HTTP
    CORS_ORIGINS: list = [
        o.strip()
        for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if o.strip()
    ]


settings = Settings()
