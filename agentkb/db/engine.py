# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines point at the same PostgreSQL database:
#   - async (asyncpg)  → FastAPI handlers: /ask, /train/status, /agents/*
#   - sync  (psycopg2) → Celery workers: job transitions, chunk inserts
#
# The sync engine is built on first use, so the API process never needs
# psycopg2 and the worker never opens an asyncpg pool.
# =============================================================================

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from agentkb.config import settings

# ---------------------------------------------------------------------------
# Async Engine — FastAPI
# ---------------------------------------------------------------------------
# Callers open `async with async_session_factory() as session:` and commit
# explicitly; expire_on_commit=False keeps rows readable after the commit.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
)

async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------

_sync_engine: Engine | None = None
_sync_sessions: sessionmaker | None = None


def get_sync_engine() -> Engine:
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
        )
    return _sync_engine


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Transactional sync session for the worker.

    Commits when the block exits cleanly, rolls back and re-raises otherwise:

        with get_sync_session() as session:
            session.add_all(rows)
    """
    global _sync_sessions
    if _sync_sessions is None:
        _sync_sessions = sessionmaker(bind=get_sync_engine(), expire_on_commit=False)

    session = _sync_sessions()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_schema() -> None:
    """Create the pgvector extension, the three tables and their indexes."""
    from agentkb.db.models import Base

    with get_sync_engine().begin() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        Base.metadata.create_all(conn)
