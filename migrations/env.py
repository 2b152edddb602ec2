"""Alembic environment configuration for run and vector persistence."""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.engine.url import make_url
from sqlmodel import SQLModel, create_engine

from abm_insights.config import settings
from abm_insights.core.database import _coerce_sync_database_url
from abm_insights.models import insight_record, run_record  # noqa: F401 - ensure models are imported

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("abm_insights.alembic")
logger.setLevel(logging.INFO)
target_metadata = SQLModel.metadata


def _log_database_url(url: str, source: str) -> None:
    try:
        rendered = make_url(url).render_as_string(hide_password=True)
    except Exception:  # pragma: no cover - log only
        rendered = "<invalid DATABASE_URL>"
    logger.info("Alembic resolved DATABASE_URL from %s: %s", source, rendered)
    config.print_stdout(f"[Alembic] DATABASE_URL source={source}: {rendered}")


def _resolve_database_url() -> str:
    candidates = [
        ("environment variable", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("app settings", settings.database_url),
    ]
    for source, value in candidates:
        if not value:
            continue
        _log_database_url(value, source)
        return value
    raise RuntimeError("DATABASE_URL must be set to run migrations.")


def run_migrations_offline() -> None:
    """Run migrations offline (e.g., CI)."""
    url, _, _ = _coerce_sync_database_url(make_url(_resolve_database_url()))
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations using a sync engine with the application's URL coercion."""
    url, connect_args, _ = _coerce_sync_database_url(make_url(_resolve_database_url()))
    connectable = create_engine(url, connect_args=connect_args, poolclass=pool.NullPool)

    try:
        with connectable.connect() as connection:
            do_run_migrations(connection)
    finally:
        connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
