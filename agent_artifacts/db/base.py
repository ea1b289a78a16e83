"""
Engine and session management.

The engine is built on first use from ``DATABASE_URL`` so that tests and the
CLI can point the service at another database before anything connects.
SQLite is the local default; PostgreSQL is used in deployments and always
goes through the synchronous psycopg driver.
"""

import logging
from typing import Any, Dict, Generator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by the artifact, job, chunk and attempt tables."""


DEFAULT_DATABASE_URL = "sqlite:///./agent_artifacts.db"

# Async drivers people paste into DATABASE_URL, mapped to what the ORM needs.
_SYNC_DRIVERS = {
    "postgresql+asyncpg": "postgresql+psycopg",
    "postgresql+aiopg": "postgresql+psycopg",
    "postgresql+psycopg_async": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def _to_sync(url: URL) -> URL:
    driver = _SYNC_DRIVERS.get(url.drivername)
    return url.set(drivername=driver) if driver else url


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Resolve the configured database URL, rewritten to a synchronous driver."""
    url = _to_sync(make_url(raw_url or get_settings().database_url or DEFAULT_DATABASE_URL))
    return url.render_as_string(hide_password=False)


def _engine_options(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        # The API hands sessions to background tasks on other threads.
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}

    settings = get_settings()
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


_engine: Optional[Engine] = None
_session_local: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first call."""
    global _engine
    if _engine is None:
        url = get_database_url()
        _engine = create_engine(url, **_engine_options(url))
        logger.info(f"Database engine created for {make_url(url).get_backend_name()}")
    return _engine


def get_session_local() -> sessionmaker:
    """Session factory bound to the process-wide engine."""
    global _session_local
    if _session_local is None:
        _session_local = sessionmaker(bind=get_engine(), autoflush=False)
    return _session_local


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session."""
    db = get_session_local()()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """FastAPI dependency for work that outlives the request, such as background tasks."""
    return get_session_local()


async def init_database() -> None:
    """Create any missing tables."""
    from . import audit_models, models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
    logger.info("Database initialized")
