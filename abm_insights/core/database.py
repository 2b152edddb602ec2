from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlmodel import SQLModel, create_engine

from abm_insights.config import settings

logger = logging.getLogger(__name__)

# Global engine shared by the run repository and the insight store
engine: Engine | None = None


def init_database() -> Engine | None:
    """Initialize the database engine if DATABASE_URL is provided."""
    global engine  # noqa: PLW0603

    if engine is not None:
        return engine
    if not settings.database_url:
        logger.info("No DATABASE_URL provided, running with in-memory storage")
        return None

    try:
        engine = build_engine(settings.database_url)
        logger.info("Database connection initialized successfully")
        return engine
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def dispose_database() -> None:
    global engine  # noqa: PLW0603
    if engine is not None:
        engine.dispose()
        engine = None


def build_engine(
    database_url: str,
    *,
    pool_min_size: int | None = None,
    pool_max_size: int | None = None,
    auto_create_schema: bool = False,
) -> Engine:
    """Create a sync SQLAlchemy engine with bounded connect/statement timeouts."""
    parsed_url = make_url(database_url)
    sync_url, connect_args, drivername = _coerce_sync_database_url(parsed_url)
    pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
    pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
    is_sqlite = drivername.startswith("sqlite")
    engine_kwargs: dict[str, Any] = {
        "echo": False,
        "connect_args": connect_args,
        "pool_pre_ping": not is_sqlite,
    }
    if not is_sqlite:
        engine_kwargs["pool_size"] = pool_min
        engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)

    created = create_engine(sync_url, **engine_kwargs)
    if auto_create_schema:
        SQLModel.metadata.create_all(created)
    return created


def check_database_health(target: Engine | None = None) -> bool:
    """Check if the database is accessible."""
    resolved = target or engine
    if resolved is None:
        return True  # No database configured, consider healthy

    try:
        with resolved.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def backend_tag(target: Engine) -> str:
    """Metrics tag describing the storage backend behind an engine."""
    host = (target.url.host or "").lower()
    if "supabase.co" in host:
        return "supabase"
    if target.url.drivername.startswith("sqlite"):
        return "sqlite"
    return "postgres"


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+psycopg"):
        drivername = drivername.replace("+psycopg", "+psycopg2")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = False
    if "ssl" in query:
        query.pop("ssl", None)
        removed_ssl = True
    if query:
        sync_url = sync_url.set(query=query)
    else:
        sync_url = sync_url.set(query=None)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql"):
        query = dict(sync_url.query) if sync_url.query else {}
        if "sslmode" not in query and (removed_ssl or "supabase.co" in host):
            connect_args["sslmode"] = "require"
        connect_args["connect_timeout"] = settings.db_connect_timeout_seconds
        connect_args["options"] = f"-c statement_timeout={settings.db_statement_timeout_ms}"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", settings.db_connect_timeout_seconds)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def vector_store_status(target: Engine | None = None) -> str:
    """Describe similarity search support: memory, pgvector, unranked or unavailable."""
    resolved = target or engine
    if resolved is None:
        return "memory"
    if resolved.url.drivername.startswith("sqlite"):
        return "unranked"

    try:
        with resolved.connect() as conn:
            installed = conn.execute(
                text("SELECT 1 FROM pg_extension WHERE extname = 'vector'")
            ).first()
    except Exception as e:
        logger.error(f"Vector store health check failed: {e}")
        return "unavailable"
    return "pgvector" if installed else "unranked"
