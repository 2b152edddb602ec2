"""Retrieval-augmented insight generation with a deterministic fallback artifact."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar
from uuid import UUID

from abm_insights.clients.openai_client import Embedder, JsonGenerator
from abm_insights.models.insights import (
    ABMInsights,
    Citation,
    CompanyProfile,
    InsightMatch,
    TextChunk,
)
from abm_insights.observability.metrics import metrics
from abm_insights.services.abm.errors import (
    InsightStoreError,
    PipelineStageError,
    SimilarityUnavailableError,
)
from abm_insights.services.abm.prompts import (
    SYSTEM_PROMPT,
    render_context_block,
    render_insights_prompt,
    render_retrieval_query,
)
from abm_insights.services.abm.vector_store import InsightRow, InsightStore

logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_U = TypeVar("_U")

DEFAULT_MATCH_THRESHOLD = 0.7
DEFAULT_MATCH_COUNT = 5


@dataclass(frozen=True)
class StageResult(Generic[_T]):
    """Outcome of one pipeline stage: a value, or the failing stage and its error."""

    value: _T | None = None
    stage: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: _T) -> StageResult[_T]:
        return cls(value=value)

    @classmethod
    def failure(cls, stage: str, error: Exception) -> StageResult[_T]:
        return cls(stage=stage, error=error)

    def then(self, func: Callable[[_T], StageResult[_U]]) -> StageResult[_U]:
        if not self.ok:
            return StageResult(stage=self.stage, error=self.error)
        return func(self.value)  # type: ignore[arg-type]


@dataclass(frozen=True)
class Retrieval:
    matches: list[InsightMatch]
    context: str
    citations: list[Citation]
    ranked: bool = True


@dataclass
class PipelineOutcome:
    """What the orchestrator hands back; ``failed_stage`` is None on the happy path."""

    insights: ABMInsights
    failed_stage: str | None = None
    error_code: str | None = None
    retrieved: list[InsightMatch] = field(default_factory=list)
    ranked: bool = True

    @property
    def used_fallback(self) -> bool:
        return self.failed_stage is not None


def site_citation(profile: CompanyProfile) -> Citation:
    return Citation(text="", url=f"https://{profile.domain}", title=profile.name)


def build_chunks(profile: CompanyProfile, citations: Sequence[Citation]) -> list[TextChunk]:
    """Profile chunks first (description, about), then one chunk per research citation."""
    chunks: list[TextChunk] = []
    if profile.description:
        chunks.append(
            TextChunk(
                text=f"Company: {profile.name}\nDescription: {profile.description}",
                citation=site_citation(profile),
            )
        )
    about = profile.metadata.about if profile.metadata else None
    if about:
        chunks.append(TextChunk(text=f"About: {about}", citation=site_citation(profile)))
    for citation in citations:
        chunks.append(TextChunk(text=citation.text, citation=citation))
    return chunks


def dedupe_citations(citations: Iterable[Citation]) -> list[Citation]:
    """Keep one citation per URL: the last one seen, at the position its URL first appeared."""
    unique: dict[str, Citation] = {}
    for citation in citations:
        unique[citation.url] = citation
    return list(unique.values())


def build_fallback_insights(profile: CompanyProfile, citations: Sequence[Citation]) -> ABMInsights:
    """Low-information artifact returned whenever the pipeline cannot finish normally."""
    return ABMInsights(
        insights=[
            f"Company: {profile.name}",
            f"Domain: {profile.domain}",
            "Research completed with available data",
        ],
        email_subject=f"Opportunity for {profile.name}",
        email_body=(
            f"Hello {profile.name} team,\n\n"
            "I wanted to reach out regarding potential collaboration opportunities.\n\n"
            "Best regards"
        ),
        citations=[citation.url for citation in citations],
    )


def parse_insights_payload(raw_text: str, fallback_citations: Sequence[Citation]) -> ABMInsights:
    """Decode the model's JSON; backfill citations when the model omitted them."""
    try:
        payload = _parse_json_payload(raw_text)
    except ValueError as exc:
        raise PipelineStageError(
            "Model response was not valid JSON.", code="502_INVALID_MODEL_OUTPUT"
        ) from exc
    if not isinstance(payload, dict):
        raise PipelineStageError(
            "Model response was not a JSON object.", code="502_INVALID_MODEL_OUTPUT"
        )

    insights = ABMInsights(
        insights=[str(item) for item in _as_list(payload.get("insights"))],
        email_subject=_as_text(payload.get("email_subject")),
        email_body=_as_text(payload.get("email_body")),
        citations=[url for url in (_citation_url(item) for item in _as_list(payload.get("citations"))) if url],
    )
    if not insights.citations:
        insights.citations = [citation.url for citation in fallback_citations]
    return insights


class RagPipeline:
    """Chunks, embeds, stores, retrieves and generates; never raises past ``run``."""

    def __init__(
        self,
        *,
        embedder: Embedder,
        store: InsightStore,
        generator: JsonGenerator | None,
        match_threshold: float = DEFAULT_MATCH_THRESHOLD,
        match_count: int = DEFAULT_MATCH_COUNT,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._generator = generator
        self._match_threshold = match_threshold
        self._match_count = match_count

    def run(
        self,
        *,
        run_id: UUID,
        company: str,
        profile: CompanyProfile,
        citations: Sequence[Citation],
    ) -> PipelineOutcome:
        start = time.perf_counter()
        chunked = self._stage("chunk", lambda: self._chunk(profile, citations))
        stored = chunked.then(
            lambda chunks: self._stage("embed_persist", lambda: self._embed_and_persist(run_id, chunks))
        )
        retrieval = stored.then(lambda _: self._stage("retrieve", lambda: self._retrieve(run_id, company)))
        result = retrieval.then(
            lambda found: self._stage("generate", lambda: self._generate(company, profile, found))
        )
        retrieved = list(retrieval.value.matches) if retrieval.ok and retrieval.value else []
        ranked = retrieval.value.ranked if retrieval.ok and retrieval.value else True
        elapsed_ms = (time.perf_counter() - start) * 1000

        if result.ok and result.value is not None:
            metrics.increment("pipeline.success", tags={"ranked": ranked})
            metrics.timing("pipeline.latency_ms", elapsed_ms, tags={"outcome": "success"})
            logger.info(
                "abm.pipeline.completed",
                extra={"run_id": str(run_id), "retrieved": len(retrieved), "ranked": ranked},
            )
            return PipelineOutcome(insights=result.value, retrieved=retrieved, ranked=ranked)

        error_code = getattr(result.error, "code", type(result.error).__name__)
        metrics.increment("pipeline.fallback", tags={"stage": result.stage, "code": error_code})
        metrics.timing("pipeline.latency_ms", elapsed_ms, tags={"outcome": "fallback"})
        logger.warning(
            "abm.pipeline.fallback",
            extra={
                "run_id": str(run_id),
                "stage": result.stage,
                "code": error_code,
                "error": str(result.error),
            },
        )
        return PipelineOutcome(
            insights=build_fallback_insights(profile, citations),
            failed_stage=result.stage,
            error_code=error_code,
            retrieved=retrieved,
            ranked=ranked,
        )

    @staticmethod
    def _stage(name: str, func: Callable[[], _T]) -> StageResult[_T]:
        try:
            return StageResult.success(func())
        except Exception as exc:  # noqa: BLE001
            return StageResult.failure(name, exc)

    def _chunk(self, profile: CompanyProfile, citations: Sequence[Citation]) -> list[TextChunk]:
        chunks = build_chunks(profile, citations)
        if not chunks:
            raise PipelineStageError("No text chunks to process", code="422_NO_CONTENT")
        return chunks

    def _embed_and_persist(self, run_id: UUID, chunks: list[TextChunk]) -> int:
        vectors = self._embedder.embed_many([chunk.text for chunk in chunks])
        if len(vectors) != len(chunks):
            raise PipelineStageError(
                f"Expected {len(chunks)} embeddings, received {len(vectors)}.",
                code="502_OPENAI_UPSTREAM",
            )
        rows = [
            InsightRow(
                text=chunk.text,
                chunk_index=idx,
                embedding=list(vector),
                citations=[chunk.citation] if chunk.citation.url else [],
            )
            for idx, (chunk, vector) in enumerate(zip(chunks, vectors))
        ]
        return self._store.insert(run_id, rows)

    def _retrieve(self, run_id: UUID, company: str) -> Retrieval:
        query_embedding = self._embedder.embed(render_retrieval_query(company))
        ranked = True
        try:
            matches = self._store.query(
                run_id,
                query_embedding,
                threshold=self._match_threshold,
                limit=self._match_count,
            )
        except SimilarityUnavailableError:
            ranked = False
            metrics.increment("pipeline.retrieval_unranked")
            logger.warning("abm.pipeline.similarity_fallback", extra={"run_id": str(run_id)})
            matches = self._list_unranked(run_id)
        except InsightStoreError as exc:
            logger.error(
                "abm.pipeline.retrieval_failed",
                extra={"run_id": str(run_id), "code": exc.code},
            )
            matches = []

        all_citations = [citation for match in matches for citation in match.citations]
        return Retrieval(
            matches=matches,
            context=render_context_block([match.text for match in matches]),
            citations=dedupe_citations(all_citations),
            ranked=ranked,
        )

    def _list_unranked(self, run_id: UUID) -> list[InsightMatch]:
        try:
            return self._store.list_for_run(run_id, limit=self._match_count)
        except InsightStoreError as exc:
            logger.error(
                "abm.pipeline.retrieval_failed",
                extra={"run_id": str(run_id), "code": exc.code},
            )
            return []

    def _generate(self, company: str, profile: CompanyProfile, retrieval: Retrieval) -> ABMInsights:
        if self._generator is None:
            raise PipelineStageError("Insight generation is disabled.", code="503_GENERATION_DISABLED")
        company_information = f"Company: {profile.name}\n{profile.description}\n\n{retrieval.context}"
        prompt = render_insights_prompt(company, company_information, retrieval.citations)
        response_text = self._generator.generate(system_prompt=SYSTEM_PROMPT, user_prompt=prompt)
        return parse_insights_payload(response_text, retrieval.citations)


def _parse_json_payload(raw_text: str) -> Any:
    """Best-effort JSON decoding that tolerates code fences or prose."""
    candidate = raw_text.strip()
    if candidate.startswith("```"):
        candidate = "\n".join(line for line in candidate.splitlines() if not line.strip().startswith("```")).strip()
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end != -1 and end > start:
        return json.loads(candidate[start : end + 1])
    raise ValueError("Response did not contain JSON object.")


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if value in (None, ""):
        return []
    return [value]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _citation_url(item: Any) -> str:
    if isinstance(item, dict):
        return _as_text(item.get("url"))
    return _as_text(item)
