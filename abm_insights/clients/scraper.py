"""Best-effort company profile extraction from a website's landing page."""

from __future__ import annotations

import logging
import re

import httpx
from bs4 import BeautifulSoup

from abm_insights.config import settings
from abm_insights.models.insights import CompanyProfile, ProfileMetadata

logger = logging.getLogger(__name__)

ABOUT_SELECTORS = (
    "section.about",
    ".about",
    "#about",
    '[class*="about"]',
    '[id*="about"]',
    'section[class*="company"]',
    ".company-info",
)
_MIN_ABOUT_LENGTH = 50
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def clean_domain(domain: str) -> str:
    """Strip the scheme and a leading ``www.`` from a domain or URL."""
    stripped = _SCHEME_RE.sub("", domain.strip())
    if stripped.lower().startswith("www."):
        stripped = stripped[4:]
    return stripped


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text.replace("\xa0", " ")).strip()


class CompanyProfileExtractor:
    """Fetches a landing page and derives a profile; never raises."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        user_agent: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._timeout = timeout or settings.scrape_timeout_seconds
        self._user_agent = user_agent or settings.scrape_user_agent
        self._http = http_client

    def scrape(self, domain: str) -> CompanyProfile:
        url = domain.strip() if domain.strip().lower().startswith("http") else f"https://{domain.strip()}"
        try:
            html = self._fetch(url)
            profile = parse_company_html(html, domain)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "abm.scrape.failed",
                extra={"domain": domain, "error": type(exc).__name__},
            )
            return minimal_profile(domain)
        logger.info(
            "abm.scrape.completed",
            extra={"domain": profile.domain, "has_description": bool(profile.description)},
        )
        return profile

    def _fetch(self, url: str) -> str:
        headers = {"User-Agent": self._user_agent}
        if self._http is not None:
            response = self._http.get(url, headers=headers, timeout=self._timeout)
        else:
            with httpx.Client(timeout=self._timeout, follow_redirects=True) as client:
                response = client.get(url, headers=headers)
        response.raise_for_status()
        return response.text


def minimal_profile(domain: str) -> CompanyProfile:
    cleaned = clean_domain(domain)
    return CompanyProfile(
        name=cleaned.split(".")[0],
        description=f"Company information for {cleaned}",
        domain=cleaned,
        metadata=ProfileMetadata(),
    )


def parse_company_html(html: str, domain: str) -> CompanyProfile:
    """Derive name, description and about text from landing-page HTML."""
    soup = BeautifulSoup(html, "html.parser")
    title = _normalize_text(soup.title.get_text()) if soup.title else ""

    description = _meta_content(soup, name="description") or _meta_content(
        soup, prop="og:description"
    )
    keywords = _meta_content(soup, name="keywords")

    # Short selector matches are discarded in favor of the first content paragraph.
    about = ""
    for selector in ABOUT_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        candidate = _normalize_text(element.get_text(" "))
        if len(candidate) > _MIN_ABOUT_LENGTH:
            about = candidate
            break

    if not about:
        for selector in ("main p", "article p", "body p"):
            element = soup.select_one(selector)
            if element is not None:
                about = _normalize_text(element.get_text(" "))
                if about:
                    break

    name = title.split("|")[0].split("-")[0].strip()
    if not name:
        heading = soup.find("h1")
        name = _normalize_text(heading.get_text(" ")) if heading else ""
    cleaned = clean_domain(domain)
    if not name:
        name = cleaned.split(".")[0]

    return CompanyProfile(
        name=name,
        description=description or about or title,
        domain=cleaned,
        metadata=ProfileMetadata(title=title, keywords=keywords, about=about),
    )


def _meta_content(soup: BeautifulSoup, *, name: str | None = None, prop: str | None = None) -> str:
    attrs = {"name": name} if name else {"property": prop}
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return ""
    content = tag.get("content")
    return _normalize_text(content) if isinstance(content, str) else ""
