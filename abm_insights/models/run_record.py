"""SQLModel mapping for persisted ABM runs."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel

from abm_insights.models.insights import Run, RunStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


class AbmRunRecord(SQLModel, table=True):
    """ORM model for the ``abm_runs`` table."""

    __tablename__ = "abm_runs"
    __table_args__ = (sa.Index("ix_abm_runs_status", "status"),)

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    company: str = Field(sa_column=Column(Text, nullable=False))
    domain: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(
        default=RunStatus.PROCESSING.value,
        sa_column=Column(String(length=32), nullable=False),
    )
    result_json: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON_BACKING_TYPE, nullable=True),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
        ),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
            onupdate=UtcNow(),
        ),
    )

    @classmethod
    def from_run(cls, run: Run) -> AbmRunRecord:
        return cls(
            id=run.id,
            company=run.company,
            domain=run.domain,
            status=run.status.value,
            result_json=run.result,
            created_at=run.created_at,
            updated_at=run.updated_at or run.created_at,
        )

    def to_run(self) -> Run:
        return Run(
            id=self.id,
            company=self.company,
            domain=self.domain,
            status=RunStatus(self.status),
            result=self.result_json,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
