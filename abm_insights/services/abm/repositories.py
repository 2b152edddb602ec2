"""Persistence backends for ABM runs."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from abm_insights.core.database import backend_tag
from abm_insights.models.insights import Run, RunStatus
from abm_insights.models.run_record import AbmRunRecord
from abm_insights.observability.metrics import metrics
from abm_insights.services.abm.errors import (
    RunNotFoundError,
    RunPersistenceError,
    RunStateError,
)

logger = logging.getLogger(__name__)


class RunRepository(Protocol):
    """Persistence contract for runs; status only moves out of ``processing`` once."""

    def create(self, company: str, domain: str) -> Run:
        ...

    def get(self, run_id: UUID) -> Run | None:
        ...

    def complete(self, run_id: UUID, result: dict[str, Any]) -> Run:
        ...

    def fail(self, run_id: UUID) -> Run:
        ...


class InMemoryRunRepository(RunRepository):
    """Thread-safe repository used for API/local development."""

    def __init__(self) -> None:
        self._runs: dict[UUID, Run] = {}
        self._lock = Lock()

    def create(self, company: str, domain: str) -> Run:
        run = Run(company=company, domain=domain)
        with self._lock:
            self._runs[run.id] = run
        metrics.increment("run.persistence.created", tags={"repository": "memory"})
        return run.model_copy(deep=True)

    def get(self, run_id: UUID) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def complete(self, run_id: UUID, result: dict[str, Any]) -> Run:
        return self._transition(run_id, RunStatus.COMPLETED, result)

    def fail(self, run_id: UUID) -> Run:
        return self._transition(run_id, RunStatus.FAILED, None)

    def _transition(self, run_id: UUID, status: RunStatus, result: dict[str, Any] | None) -> Run:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status.is_terminal:
                raise RunStateError(f"Run {run_id} is already {run.status.value}.")
            updated = run.model_copy(
                update={
                    "status": status,
                    "result": result,
                    "updated_at": datetime.now(timezone.utc),
                },
                deep=True,
            )
            self._runs[run_id] = updated
        metrics.increment(f"run.persistence.{status.value}", tags={"repository": "memory"})
        return updated.model_copy(deep=True)


class SqlRunRepository(RunRepository):
    """SQLModel-backed repository that persists runs to Postgres/Supabase."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._metrics_tags = {"repository": backend_tag(engine)}

    def create(self, company: str, domain: str) -> Run:
        record = AbmRunRecord.from_run(Run(company=company, domain=domain))
        try:
            with self._session() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                run = record.to_run()
        except SQLAlchemyError as exc:
            logger.exception(
                "abm.run.persistence_error",
                extra={"company": company, "operation": "create", **self._metrics_tags},
            )
            raise RunPersistenceError("Failed to create run record.") from exc
        metrics.increment("run.persistence.created", tags=self._metrics_tags)
        return run

    def get(self, run_id: UUID) -> Run | None:
        try:
            with self._session() as session:
                record = session.get(AbmRunRecord, run_id)
                return record.to_run() if record else None
        except SQLAlchemyError as exc:
            logger.exception(
                "abm.run.persistence_error",
                extra={"run_id": str(run_id), "operation": "get", **self._metrics_tags},
            )
            raise RunPersistenceError("Failed to load run record.") from exc

    def complete(self, run_id: UUID, result: dict[str, Any]) -> Run:
        return self._transition(run_id, RunStatus.COMPLETED, result)

    def fail(self, run_id: UUID) -> Run:
        return self._transition(run_id, RunStatus.FAILED, None)

    def _transition(self, run_id: UUID, status: RunStatus, result: dict[str, Any] | None) -> Run:
        # Guarded single UPDATE: status and result change together, and only from processing.
        values: dict[str, Any] = {"status": status.value, "updated_at": datetime.now(timezone.utc)}
        if result is not None:
            values["result_json"] = result
        statement = (
            update(AbmRunRecord)
            .where(AbmRunRecord.id == run_id)
            .where(AbmRunRecord.status == RunStatus.PROCESSING.value)
            .values(**values)
        )
        try:
            with self._session() as session:
                outcome = session.execute(statement)
                session.commit()
                if outcome.rowcount == 0:
                    existing = session.get(AbmRunRecord, run_id)
                    if existing is None:
                        raise RunNotFoundError(run_id)
                    raise RunStateError(f"Run {run_id} is already {existing.status}.")
                record = session.get(AbmRunRecord, run_id, populate_existing=True)
                run = record.to_run()
        except SQLAlchemyError as exc:
            logger.exception(
                "abm.run.persistence_error",
                extra={"run_id": str(run_id), "operation": status.value, **self._metrics_tags},
            )
            raise RunPersistenceError(f"Failed to mark run {status.value}.") from exc
        metrics.increment(f"run.persistence.{status.value}", tags=self._metrics_tags)
        return run

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def build_run_repository(engine: Engine | None = None) -> RunRepository:
    """Instantiate a RunRepository using the database engine when available."""
    if engine is None:
        logger.info("abm.run.repository_initialized", extra={"backend": "memory"})
        return InMemoryRunRepository()
    logger.info("abm.run.repository_initialized", extra={"backend": backend_tag(engine)})
    return SqlRunRepository(engine)
