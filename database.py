import logging
import os
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from config import settings

logger = logging.getLogger(__name__)

# Database setup
_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "40"))
_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "10"))
_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "1800"))


def create_db_engine(url: str = None):
    """Build an engine; SQLite gets WAL pragmas and a thread-agnostic connection"""
    url = url or settings.DATABASE_URL

    if not url.startswith("sqlite"):
        return create_engine(
            url,
            pool_size=_POOL_SIZE,
            max_overflow=_MAX_OVERFLOW,
            pool_timeout=_POOL_TIMEOUT,
            pool_recycle=_POOL_RECYCLE,
            pool_pre_ping=True,
        )

    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    sqlite_engine = create_engine(url, connect_args={"check_same_thread": False})

    # Enable WAL and reasonable SQLite pragmas to improve concurrent access
    @event.listens_for(sqlite_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA busy_timeout=5000;")
            cursor.close()
        except Exception as exc:
            logger.warning(f"Could not apply SQLite pragmas: {exc}")

    return sqlite_engine


engine = create_db_engine()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(bind=None):
    """Create all database tables"""
    from models import Base  # Import here to avoid circular dependency
    try:
        Base.metadata.create_all(bind=bind or engine)
    except OperationalError as exc:
        # Ignore concurrent creation attempts when tables already exist (SQLite multi-worker startup)
        if "already exists" in str(exc).lower():
            logger.info(f"Ignoring table creation race condition: {exc}")
        else:
            raise
