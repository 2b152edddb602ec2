"""SQLModel mapping for embedded chunks stored per run."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy import Column, DateTime, ForeignKey, Uuid
from sqlmodel import Field, SQLModel

from abm_insights.config import settings
from abm_insights.models.insights import Citation, InsightMatch, StoredInsight
from abm_insights.models.run_record import JSON_BACKING_TYPE, UtcNow, _utcnow

# pgvector on Postgres, plain JSON arrays on SQLite for local runs and tests.
EMBEDDING_TYPE = Vector(settings.embedding_dimensions).with_variant(sa.JSON(), "sqlite")


class AbmInsightRecord(SQLModel, table=True):
    """ORM model for the ``abm_insights`` vector table."""

    __tablename__ = "abm_insights"
    __table_args__ = (sa.Index("abm_insights_run_id_idx", "run_id"),)

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    run_id: UUID = Field(
        sa_column=Column(
            Uuid(as_uuid=True),
            ForeignKey("abm_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    content_json: dict[str, Any] = Field(
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    embedding: list[float] = Field(sa_column=Column(EMBEDDING_TYPE, nullable=False))
    citations: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
        ),
    )

    @property
    def chunk_index(self) -> int:
        return int((self.content_json or {}).get("chunk_index", 0))

    def to_match(self, *, similarity: float | None = None) -> InsightMatch:
        content = self.content_json or {}
        return InsightMatch(
            text=content.get("text") or "",
            chunk_index=self.chunk_index,
            citations=[Citation(**entry) for entry in self.citations or []],
            similarity=similarity,
        )

    def to_stored_insight(self) -> StoredInsight:
        return StoredInsight(
            id=self.id,
            run_id=self.run_id,
            content=dict(self.content_json or {}),
            citations=[Citation(**entry) for entry in self.citations or []],
            embedding=[float(value) for value in self.embedding],
            created_at=self.created_at,
        )
