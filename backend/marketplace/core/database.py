"""
Database utilities and connection management.

WHAT: SQLite/SQLAlchemy setup for the offer and transaction tables
WHY: One durable entity store with WAL so readers never block the writer
HOW: SQLAlchemy sync engine v2 with WAL mode, session factory, health ping
"""

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from pathlib import Path

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Base for models
Base = declarative_base()


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not url.startswith("sqlite:///") or url.endswith(":memory:"):
        return
    data_dir = Path(url.replace("sqlite:///", "")).parent
    if not data_dir.exists():
        data_dir.mkdir(parents=True, exist_ok=True)


def build_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections get WAL mode, foreign keys and a bounded busy timeout
    so a locked database surfaces as an error instead of an indefinite wait.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        _ensure_sqlite_dir(url)
        connect_args = {
            "check_same_thread": False,  # Allow multi-threaded access
            "timeout": settings.DB_BUSY_TIMEOUT_SECONDS,
        }

    new_engine = create_engine(url, connect_args=connect_args, echo=echo, future=True)

    if url.startswith("sqlite"):
        @event.listens_for(new_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable WAL mode for better concurrency."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


def make_session_factory(bind: Engine) -> sessionmaker:
    """Session factory used by every service; one session per operation."""
    return sessionmaker(
        bind=bind,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
SessionLocal = make_session_factory(engine)


def ping_database(bind: Engine = None) -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with status and info
    """
    bind = bind or engine
    try:
        with bind.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {
            "available": True,
            "url": str(bind.url),
            "error": None
        }
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {
            "available": False,
            "url": str(bind.url),
            "error": str(e)
        }


def init_db(bind: Engine = None):
    """Create all tables (idempotent)."""
    # Models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    logger.info(f"Database initialized ({bind.url})")


def close_db(bind: Engine = None):
    """Close database connections."""
    (bind or engine).dispose()
    logger.info("Database connections closed")
