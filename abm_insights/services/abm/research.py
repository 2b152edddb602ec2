"""Cited research collaborator: You.com Express first, Search as the fallback mode."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

from abm_insights.clients.youcom import YoucomClient, YoucomError
from abm_insights.config import settings
from abm_insights.models.insights import Citation
from abm_insights.observability.metrics import metrics

logger = logging.getLogger(__name__)

_PLAIN_TEXT_LIMIT = 500

ShapeParser = Callable[[Mapping[str, Any]], "list[Citation] | None"]


class YoucomClientProtocol(Protocol):
    """Subset of You.com client behavior used by the research client."""

    def search(self, *, query: str, count: int = 8, mode: str = "research") -> dict[str, Any]:
        ...

    def express(self, *, query: str) -> dict[str, Any]:
        ...


@dataclass
class ResearchResult:
    citations: list[Citation] = field(default_factory=list)
    summary: str | None = None
    mode: str = "none"


def build_search_query(company: str) -> str:
    return f"recent news and updates about {company} company products services"


def build_express_query(company: str) -> str:
    return f"What are the latest news, products, and business updates about {company}?"


class CitedResearchClient:
    """Normalizes You.com responses into a uniform citation list; never raises."""

    def __init__(
        self,
        client: YoucomClientProtocol | None = None,
        *,
        max_citations: int | None = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._max_citations = max_citations or settings.research_max_citations

    def fetch(self, company: str) -> ResearchResult:
        """Return cited research for ``company``; empty on any failure."""
        start = time.perf_counter()
        try:
            client = self._ensure_client()
        except ValueError:
            logger.warning("abm.research.unconfigured", extra={"company": company})
            metrics.increment("research.skipped", tags={"reason": "no_api_key"})
            return ResearchResult()

        result = self._fetch_express(client, company)
        if not result.citations:
            result = self._fetch_search(client, company)

        metrics.increment(
            "research.citations",
            value=len(result.citations),
            tags={"mode": result.mode},
        )
        metrics.timing(
            "research.latency_ms",
            (time.perf_counter() - start) * 1000,
            tags={"mode": result.mode},
        )
        logger.info(
            "abm.research.fetched",
            extra={"company": company, "mode": result.mode, "citations": len(result.citations)},
        )
        return result

    def _fetch_express(self, client: YoucomClientProtocol, company: str) -> ResearchResult:
        try:
            data = client.express(query=build_express_query(company))
        except YoucomError as exc:
            logger.warning(
                "abm.research.express_failed",
                extra={"company": company, "code": exc.code},
            )
            return ResearchResult(mode="express")
        return normalize_express_payload(data, limit=self._max_citations)

    def _fetch_search(self, client: YoucomClientProtocol, company: str) -> ResearchResult:
        query = build_search_query(company)
        try:
            data = client.search(query=query, count=self._max_citations, mode="research")
        except YoucomError as exc:
            logger.error(
                "abm.research.search_failed",
                extra={"company": company, "code": exc.code},
            )
            metrics.increment("research.errors", tags={"code": exc.code})
            return ResearchResult(mode="search")
        return normalize_search_payload(
            data,
            company=company,
            query=query,
            limit=self._max_citations,
        )

    def close(self) -> None:
        """Release the You.com client this instance created, if any."""
        if self._owns_client and isinstance(self._client, YoucomClient):
            self._client.close()
            self._client = None

    def _ensure_client(self) -> YoucomClientProtocol:
        if self._client is None:
            self._client = YoucomClient.from_settings()
        return self._client


def normalize_express_payload(data: Mapping[str, Any], *, limit: int) -> ResearchResult:
    citations: list[Citation] = []
    for entry in _object_list(data.get("citations"))[:limit]:
        citations.append(
            Citation(
                text=_first_str(entry, "text", "content"),
                url=_first_str(entry, "url", "source"),
                title=_first_str(entry, "title", "source_name"),
            )
        )
    return ResearchResult(
        citations=citations[:limit],
        summary=_summary(data, "answer", "summary"),
        mode="express",
    )


def normalize_search_payload(
    data: Mapping[str, Any],
    *,
    company: str,
    query: str,
    limit: int,
) -> ResearchResult:
    """Try each known response layout in order, degrading to a plain-text citation."""
    citations: list[Citation] = []
    parsers: tuple[ShapeParser, ...] = (
        lambda payload: _parse_results_shape(payload, limit),
        lambda payload: _parse_citations_shape(payload, limit),
        lambda payload: _parse_snippets_shape(payload, limit),
    )
    for parser in parsers:
        parsed = parser(data)
        if parsed is not None:
            citations = parsed
            break

    text = data.get("text")
    if not citations and isinstance(text, str) and text:
        citations.append(
            Citation(
                text=text[:_PLAIN_TEXT_LIMIT],
                url=_first_str(data, "url") or f"https://you.com/search?q={quote(query, safe='')}",
                title=f"Research about {company}",
            )
        )

    return ResearchResult(
        citations=citations[:limit],
        summary=_summary(data, "summary", "answer"),
        mode="search",
    )


def _parse_results_shape(data: Mapping[str, Any], limit: int) -> list[Citation] | None:
    if not isinstance(data.get("results"), list):
        return None
    citations: list[Citation] = []
    for entry in _object_list(data["results"])[:limit]:
        url = _first_str(entry, "url")
        snippet = _first_str(entry, "snippet")
        if url and snippet:
            citations.append(Citation(text=snippet, url=url, title=_first_str(entry, "title") or url))
    return citations


def _parse_citations_shape(data: Mapping[str, Any], limit: int) -> list[Citation] | None:
    if not isinstance(data.get("citations"), list):
        return None
    return [
        Citation(
            text=_first_str(entry, "text", "snippet"),
            url=_first_str(entry, "url", "link"),
            title=_first_str(entry, "title", "source"),
        )
        for entry in _object_list(data["citations"])[:limit]
    ]


def _parse_snippets_shape(data: Mapping[str, Any], limit: int) -> list[Citation] | None:
    if not isinstance(data.get("snippets"), list):
        return None
    return [
        Citation(
            text=_first_str(entry, "text", "content"),
            url=_first_str(entry, "url", "link"),
            title=_first_str(entry, "title"),
        )
        for entry in _object_list(data["snippets"])[:limit]
    ]


def _object_list(value: Any) -> list[Mapping[str, Any]]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, Mapping)]


def _first_str(entry: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _summary(data: Mapping[str, Any], *keys: str) -> str | None:
    return _first_str(data, *keys) or None
