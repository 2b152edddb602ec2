import httpx
import pytest

from abm_insights.clients.scraper import (
    CompanyProfileExtractor,
    clean_domain,
    minimal_profile,
    parse_company_html,
)

LANDING_PAGE = """
<html>
  <head>
    <title>Acme Rockets | Home</title>
    <meta name="description" content="Acme builds   rockets.">
    <meta name="keywords" content="rockets, anvils">
  </head>
  <body>
    <h1>Welcome to Acme</h1>
    <section class="about">
      Acme has been building reliable rockets and anvils for desert logistics since 1949.
    </section>
  </body>
</html>
"""


def test_parse_landing_page():
    profile = parse_company_html(LANDING_PAGE, "https://www.acme.com")

    assert profile.name == "Acme Rockets"
    assert profile.description == "Acme builds rockets."
    assert profile.domain == "acme.com"
    assert profile.metadata.keywords == "rockets, anvils"
    assert profile.metadata.about.startswith("Acme has been building reliable rockets")


def test_name_falls_back_to_heading_then_domain():
    with_heading = parse_company_html("<html><body><h1>Globex</h1><p>We sell things.</p></body></html>", "globex.com")
    bare = parse_company_html("<html><body></body></html>", "initech.io")

    assert with_heading.name == "Globex"
    assert with_heading.description == "We sell things."
    assert bare.name == "initech"
    assert bare.description == ""


def test_title_split_on_dash():
    profile = parse_company_html("<html><head><title>Hooli - Search</title></head></html>", "hooli.com")

    assert profile.name == "Hooli"
    assert profile.description == "Hooli - Search"


def test_og_description_used_when_meta_description_missing():
    html = '<html><head><meta property="og:description" content="Open graph copy"></head></html>'

    assert parse_company_html(html, "og.example.com").description == "Open graph copy"


def test_short_about_section_falls_back_to_first_paragraph():
    html = '<html><body><div class="about">Short.</div><main><p>Main paragraph copy.</p></main></body></html>'

    assert parse_company_html(html, "acme.com").metadata.about == "Main paragraph copy."


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("https://www.acme.com", "acme.com"), ("http://acme.com", "acme.com"), (" acme.com ", "acme.com")],
)
def test_clean_domain(raw, expected):
    assert clean_domain(raw) == expected


def test_scrape_fetches_with_user_agent():
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["host"] = request.url.host
        seen["agent"] = request.headers["User-Agent"]
        return httpx.Response(200, text=LANDING_PAGE)

    extractor = CompanyProfileExtractor(
        user_agent="TestAgent/1.0",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )

    profile = extractor.scrape("acme.com")

    assert seen == {"host": "acme.com", "agent": "TestAgent/1.0"}
    assert profile.name == "Acme Rockets"


def test_scrape_failure_returns_minimal_profile():
    extractor = CompanyProfileExtractor(
        http_client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503))),
    )

    profile = extractor.scrape("acme.com")

    assert profile == minimal_profile("acme.com")
    assert profile.name == "acme"
    assert profile.description == "Company information for acme.com"
    assert profile.metadata.about is None
