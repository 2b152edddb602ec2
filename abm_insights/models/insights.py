"""Domain models for ABM research runs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import AliasChoices, BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Citation(BaseModel):
    """A cited research snippet; deduplicated by ``url``."""

    text: str = ""
    url: str = ""
    title: str | None = None


class ProfileMetadata(BaseModel):
    title: str | None = None
    keywords: str | None = None
    about: str | None = None


class CompanyProfile(BaseModel):
    """Best-effort profile scraped from the company's website."""

    name: str
    description: str = ""
    domain: str
    metadata: ProfileMetadata = Field(default_factory=ProfileMetadata)


class TextChunk(BaseModel):
    """Unit of retrievable content, embedded and stored individually."""

    text: str
    citation: Citation


class ABMInsights(BaseModel):
    """Final artifact: insights plus a personalized outreach email."""

    insights: list[str] = Field(default_factory=list)
    email_subject: str = ""
    email_body: str = ""
    citations: list[str] = Field(default_factory=list)


class RunStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.PROCESSING


class RunResult(BaseModel):
    """Payload persisted on a completed run."""

    insights: ABMInsights
    scraped_data: CompanyProfile
    external_citation_count: int = 0


class Run(BaseModel):
    """One end-to-end pipeline execution for a company/domain pair."""

    id: UUID = Field(default_factory=uuid4)
    company: str
    domain: str
    status: RunStatus = RunStatus.PROCESSING
    result: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None


class InsightMatch(BaseModel):
    """A stored chunk returned from a run-scoped retrieval."""

    text: str
    chunk_index: int
    citations: list[Citation] = Field(default_factory=list)
    similarity: float | None = None


class StoredInsight(BaseModel):
    """Raw vector-store row exposed by the run lookup endpoint."""

    id: UUID
    run_id: UUID
    content: dict[str, Any]
    citations: list[Citation] = Field(default_factory=list)
    embedding: list[float] = Field(default_factory=list)
    created_at: datetime


class AbmRunRequest(BaseModel):
    """Inbound request to create a run."""

    company: str = Field(min_length=1)
    domain: str = Field(min_length=1)
    send_via_n8n: bool = Field(
        default=False,
        validation_alias=AliasChoices("send_via_n8n", "notify"),
    )

    @field_validator("company", "domain", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class AbmRunResponse(BaseModel):
    success: bool = True
    run_id: UUID
    company: str
    domain: str
    insights: ABMInsights
    scraped_data: CompanyProfile
    external_citation_count: int


class AbmRunDetail(BaseModel):
    run_id: UUID
    company: str
    domain: str
    status: RunStatus
    insights: dict[str, Any] = Field(default_factory=dict)
    scraped_data: dict[str, Any] = Field(default_factory=dict)
    external_citation_count: int = 0
    vector_insights: list[StoredInsight] = Field(default_factory=list)
