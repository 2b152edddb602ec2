"""Run lifecycle: create the run, drive the collaborators, record the outcome."""

from __future__ import annotations

import logging
import time
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from abm_insights.clients.openai_client import (
    Embedder,
    HashingEmbedder,
    JsonGenerator,
    OpenAIChatGenerator,
    OpenAIEmbeddingClient,
)
from abm_insights.clients.scraper import CompanyProfileExtractor
from abm_insights.clients.webhook import Notifier, build_notifier
from abm_insights.config import settings
from abm_insights.core.database import init_database
from abm_insights.models.insights import (
    AbmRunDetail,
    AbmRunRequest,
    AbmRunResponse,
    Citation,
    RunResult,
)
from abm_insights.observability.metrics import metrics
from abm_insights.services.abm.errors import (
    AbmError,
    RunFailedError,
    RunNotFoundError,
    ValidationError,
)
from abm_insights.services.abm.rag_pipeline import RagPipeline
from abm_insights.services.abm.repositories import RunRepository, build_run_repository
from abm_insights.services.abm.research import CitedResearchClient
from abm_insights.services.abm.vector_store import InsightStore, build_insight_store

logger = logging.getLogger(__name__)


class AbmRunner:
    """Owns one run per request; the pipeline's own failures never reach this layer."""

    def __init__(
        self,
        *,
        repository: RunRepository,
        store: InsightStore,
        extractor: CompanyProfileExtractor,
        research: CitedResearchClient,
        pipeline: RagPipeline,
        notifier: Notifier | None = None,
    ) -> None:
        self._repository = repository
        self._store = store
        self._extractor = extractor
        self._research = research
        self._pipeline = pipeline
        self._notifier = notifier

    def create_run(self, company: str, domain: str, *, notify: bool = False) -> AbmRunResponse:
        """Run the full pipeline for one company and persist the result."""
        try:
            request = AbmRunRequest(company=company, domain=domain, send_via_n8n=notify)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid run request: {exc.errors()[0]['msg']}") from exc

        run = self._repository.create(request.company, request.domain)
        metrics_tags = {"notify": request.send_via_n8n}
        logger.info(
            "abm.run.created",
            extra={"run_id": str(run.id), "company": request.company, "domain": request.domain},
        )
        start = time.perf_counter()
        try:
            profile = self._extractor.scrape(request.domain)
            citations = self._fetch_citations(request.company)
            outcome = self._pipeline.run(
                run_id=run.id,
                company=request.company,
                profile=profile,
                citations=citations,
            )
            result = RunResult(
                insights=outcome.insights,
                scraped_data=profile,
                external_citation_count=len(citations),
            )
            self._repository.complete(run.id, result.model_dump(mode="json"))
        except Exception as exc:
            self._mark_failed(run.id)
            metrics.increment("run.failed", tags={**metrics_tags, "code": getattr(exc, "code", "500_INTERNAL")})
            logger.exception("abm.run.failed", extra={"run_id": str(run.id)})
            raise RunFailedError(f"Failed to process ABM request: {exc}", run_id=run.id) from exc

        metrics.increment("run.completed", tags={**metrics_tags, "fallback": outcome.used_fallback})
        metrics.timing("run.latency_ms", (time.perf_counter() - start) * 1000, tags=metrics_tags)
        logger.info(
            "abm.run.completed",
            extra={
                "run_id": str(run.id),
                "fallback_stage": outcome.failed_stage,
                "ranked": outcome.ranked,
                "citations": len(citations),
            },
        )

        if request.send_via_n8n:
            self._notify(run.id, request, result)

        return AbmRunResponse(
            run_id=run.id,
            company=request.company,
            domain=request.domain,
            insights=result.insights,
            scraped_data=result.scraped_data,
            external_citation_count=result.external_citation_count,
        )

    def get_run(self, run_id: UUID) -> AbmRunDetail:
        run = self._repository.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        stored: dict[str, Any] = run.result or {}
        return AbmRunDetail(
            run_id=run.id,
            company=run.company,
            domain=run.domain,
            status=run.status,
            insights=stored.get("insights") or {},
            scraped_data=stored.get("scraped_data") or {},
            external_citation_count=stored.get("external_citation_count") or 0,
            vector_insights=self._store.records_for_run(run.id),
        )

    def close(self) -> None:
        self._research.close()

    def _fetch_citations(self, company: str) -> list[Citation]:
        try:
            return list(self._research.fetch(company).citations)
        except Exception:  # noqa: BLE001
            logger.exception("abm.research.unexpected_error", extra={"company": company})
            return []

    def _mark_failed(self, run_id: UUID) -> None:
        try:
            self._repository.fail(run_id)
        except AbmError as exc:
            logger.error(
                "abm.run.fail_write_error",
                extra={"run_id": str(run_id), "code": exc.code},
            )

    def _notify(self, run_id: UUID, request: AbmRunRequest, result: RunResult) -> None:
        if self._notifier is None:
            logger.info("abm.notifier.skipped", extra={"run_id": str(run_id), "reason": "no_webhook"})
            return
        payload = {
            "company": request.company,
            "domain": request.domain,
            "email_subject": result.insights.email_subject,
            "email_body": result.insights.email_body,
            "insights": result.insights.insights,
            "citations": result.insights.citations,
            "run_id": str(run_id),
        }
        try:
            self._notifier.notify(payload)
        except Exception:  # noqa: BLE001
            logger.exception("abm.notifier.unexpected_error", extra={"run_id": str(run_id)})


def _build_model_clients() -> tuple[Embedder, JsonGenerator | None]:
    if settings.is_online and settings.openai_api_key:
        embedder = OpenAIEmbeddingClient(
            settings.openai_api_key,
            model=settings.embedding_model,
            timeout=settings.openai_timeout_seconds,
        )
        generator = OpenAIChatGenerator(
            settings.openai_api_key,
            model=settings.generation_model,
            temperature=settings.generation_temperature,
            timeout=settings.openai_timeout_seconds,
        )
        return embedder, generator
    if settings.is_online:
        logger.warning("abm.runner.openai_unconfigured", extra={"mode": settings.abm_mode})
    return HashingEmbedder(settings.embedding_dimensions), None


def build_runner() -> AbmRunner:
    """Wire the runner from settings: database when configured, in-memory otherwise."""
    engine = init_database()
    store = build_insight_store(engine)
    embedder, generator = _build_model_clients()
    return AbmRunner(
        repository=build_run_repository(engine),
        store=store,
        extractor=CompanyProfileExtractor(),
        research=CitedResearchClient(),
        pipeline=RagPipeline(
            embedder=embedder,
            store=store,
            generator=generator,
            match_threshold=settings.rag_match_threshold,
            match_count=settings.rag_match_count,
        ),
        notifier=build_notifier(),
    )


_RUNNER_INSTANCE: AbmRunner | None = None


def get_abm_runner() -> AbmRunner:
    """Singleton accessor used by API routes; override in tests via dependency_overrides."""
    global _RUNNER_INSTANCE  # noqa: PLW0603
    if _RUNNER_INSTANCE is None:
        _RUNNER_INSTANCE = build_runner()
    return _RUNNER_INSTANCE


def close_abm_runner() -> None:
    """Release the singleton's outbound clients; a later request rebuilds it."""
    global _RUNNER_INSTANCE  # noqa: PLW0603
    if _RUNNER_INSTANCE is not None:
        _RUNNER_INSTANCE.close()
        _RUNNER_INSTANCE = None
