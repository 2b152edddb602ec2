"""Run-scoped vector store backends for embedded ABM chunks."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol
from uuid import UUID, uuid4

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError
from sqlmodel import Session, select

from abm_insights.core.database import backend_tag
from abm_insights.models.insight_record import AbmInsightRecord
from abm_insights.models.insights import Citation, InsightMatch, StoredInsight
from abm_insights.observability.metrics import metrics
from abm_insights.services.abm.errors import InsightStoreError, SimilarityUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InsightRow:
    """One chunk ready to persist: content, vector and its (0 or 1) citations."""

    text: str
    chunk_index: int
    embedding: list[float]
    citations: list[Citation] = field(default_factory=list)

    @property
    def content(self) -> dict[str, object]:
        return {"text": self.text, "chunk_index": self.chunk_index}


class InsightStore(Protocol):
    """Persistence and similarity contract; every call is scoped to one run."""

    def insert(self, run_id: UUID, rows: Sequence[InsightRow]) -> int:
        ...

    def query(
        self,
        run_id: UUID,
        query_embedding: list[float],
        *,
        threshold: float,
        limit: int,
    ) -> list[InsightMatch]:
        ...

    def list_for_run(self, run_id: UUID, *, limit: int | None = None) -> list[InsightMatch]:
        ...

    def records_for_run(self, run_id: UUID) -> list[StoredInsight]:
        ...


def cosine_distance(left: Sequence[float], right: Sequence[float]) -> float:
    """Cosine distance as pgvector's ``<=>`` computes it; NaN for zero vectors.

    Neither store treats a NaN distance as a match, although Postgres orders NaN
    above every number; ``SqlInsightStore`` filters those rows explicitly.
    """
    if len(left) != len(right):
        raise ValueError(f"Embedding dimensions differ: {len(left)} != {len(right)}")
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0 or right_norm == 0:
        return math.nan
    return 1.0 - dot / (left_norm * right_norm)


def similarity_statement(
    run_id: UUID,
    query_embedding: list[float],
    *,
    threshold: float,
    limit: int,
):
    """Run-scoped nearest-neighbour query; zero-vector rows (NaN distance) never match."""
    distance = AbmInsightRecord.embedding.cosine_distance(query_embedding)  # type: ignore[attr-defined]
    return (
        select(AbmInsightRecord, distance.label("distance"))
        .where(AbmInsightRecord.run_id == run_id)
        .where(distance != float("nan"))
        .where((1 - distance) > threshold)
        .order_by(distance)
        .limit(max(0, limit))
    )


@dataclass(frozen=True)
class _StoredRow:
    id: UUID
    run_id: UUID
    row: InsightRow
    created_at: datetime


class InMemoryInsightStore(InsightStore):
    """Thread-safe store used for local development and tests."""

    def __init__(self) -> None:
        self._rows: dict[UUID, list[_StoredRow]] = {}
        self._lock = Lock()

    def insert(self, run_id: UUID, rows: Sequence[InsightRow]) -> int:
        stored = [
            _StoredRow(id=uuid4(), run_id=run_id, row=row, created_at=datetime.now(timezone.utc))
            for row in rows
        ]
        with self._lock:
            self._rows.setdefault(run_id, []).extend(stored)
        metrics.increment("vector_store.inserted", value=len(stored), tags={"repository": "memory"})
        return len(stored)

    def query(
        self,
        run_id: UUID,
        query_embedding: list[float],
        *,
        threshold: float,
        limit: int,
    ) -> list[InsightMatch]:
        with self._lock:
            candidates = list(self._rows.get(run_id, []))
        scored: list[tuple[float, _StoredRow]] = []
        for entry in candidates:
            distance = cosine_distance(entry.row.embedding, query_embedding)
            if math.isnan(distance):
                continue
            if 1.0 - distance > threshold:
                scored.append((distance, entry))
        scored.sort(key=lambda item: (item[0], item[1].row.chunk_index))
        return [
            InsightMatch(
                text=entry.row.text,
                chunk_index=entry.row.chunk_index,
                citations=list(entry.row.citations),
                similarity=1.0 - distance,
            )
            for distance, entry in scored[: max(0, limit)]
        ]

    def list_for_run(self, run_id: UUID, *, limit: int | None = None) -> list[InsightMatch]:
        with self._lock:
            entries = sorted(self._rows.get(run_id, []), key=lambda entry: entry.row.chunk_index)
        if limit is not None:
            entries = entries[: max(0, limit)]
        return [
            InsightMatch(
                text=entry.row.text,
                chunk_index=entry.row.chunk_index,
                citations=list(entry.row.citations),
            )
            for entry in entries
        ]

    def records_for_run(self, run_id: UUID) -> list[StoredInsight]:
        with self._lock:
            entries = list(self._rows.get(run_id, []))
        return [
            StoredInsight(
                id=entry.id,
                run_id=entry.run_id,
                content=entry.row.content,
                citations=list(entry.row.citations),
                embedding=list(entry.row.embedding),
                created_at=entry.created_at,
            )
            for entry in entries
        ]


class SqlInsightStore(InsightStore):
    """SQLModel-backed store; similarity ranking relies on pgvector's ``<=>`` operator."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._metrics_tags = {"repository": backend_tag(engine)}

    def insert(self, run_id: UUID, rows: Sequence[InsightRow]) -> int:
        records = [
            AbmInsightRecord(
                run_id=run_id,
                content_json=row.content,
                embedding=list(row.embedding),
                citations=[citation.model_dump() for citation in row.citations],
            )
            for row in rows
        ]
        try:
            with self._session() as session:
                session.add_all(records)
                session.commit()
        except SQLAlchemyError as exc:
            logger.exception(
                "abm.vector_store.insert_error",
                extra={"run_id": str(run_id), **self._metrics_tags},
            )
            raise InsightStoreError("Failed to store embeddings.") from exc
        metrics.increment("vector_store.inserted", value=len(records), tags=self._metrics_tags)
        return len(records)

    def query(
        self,
        run_id: UUID,
        query_embedding: list[float],
        *,
        threshold: float,
        limit: int,
    ) -> list[InsightMatch]:
        statement = similarity_statement(run_id, query_embedding, threshold=threshold, limit=limit)
        try:
            with self._session() as session:
                rows = session.exec(statement).all()
                return [record.to_match(similarity=1.0 - float(dist)) for record, dist in rows]
        except (OperationalError, ProgrammingError) as exc:
            logger.warning(
                "abm.vector_store.similarity_unavailable",
                extra={"run_id": str(run_id), "error": type(exc.orig).__name__, **self._metrics_tags},
            )
            raise SimilarityUnavailableError() from exc
        except SQLAlchemyError as exc:
            logger.exception("abm.vector_store.query_error", extra={"run_id": str(run_id)})
            raise InsightStoreError("Failed to query embeddings.") from exc

    def list_for_run(self, run_id: UUID, *, limit: int | None = None) -> list[InsightMatch]:
        records = self._load(run_id)
        if limit is not None:
            records = records[: max(0, limit)]
        return [record.to_match() for record in records]

    def records_for_run(self, run_id: UUID) -> list[StoredInsight]:
        return [record.to_stored_insight() for record in self._load(run_id)]

    def _load(self, run_id: UUID) -> list[AbmInsightRecord]:
        statement = (
            select(AbmInsightRecord)
            .where(AbmInsightRecord.run_id == run_id)
            .order_by(AbmInsightRecord.created_at)
        )
        try:
            with self._session() as session:
                records = list(session.exec(statement).all())
        except SQLAlchemyError as exc:
            logger.exception("abm.vector_store.list_error", extra={"run_id": str(run_id)})
            raise InsightStoreError("Failed to list embeddings.") from exc
        return sorted(records, key=lambda record: record.chunk_index)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def build_insight_store(engine: Engine | None = None) -> InsightStore:
    """Use the database when an engine is configured, otherwise keep chunks in memory."""
    if engine is None:
        logger.info("abm.vector_store.initialized", extra={"backend": "memory"})
        return InMemoryInsightStore()
    logger.info("abm.vector_store.initialized", extra={"backend": backend_tag(engine)})
    return SqlInsightStore(engine)
