import json
from uuid import uuid4

import pytest

from abm_insights.models.insights import Citation, CompanyProfile, ProfileMetadata
from abm_insights.services.abm import rag_pipeline as rag_module
from abm_insights.services.abm.errors import (
    InsightStoreError,
    PipelineStageError,
    SimilarityUnavailableError,
)
from abm_insights.services.abm.rag_pipeline import (
    RagPipeline,
    StageResult,
    build_chunks,
    build_fallback_insights,
    dedupe_citations,
    parse_insights_payload,
)
from abm_insights.services.abm.vector_store import InMemoryInsightStore
from tests.helpers.abm_stubs import FailingEmbedder, StubGenerator, acme_profile, sample_citations
from tests.helpers.metrics_stub import StubMetrics


class ConstantEmbedder:
    """Every text maps to the same unit vector, so every stored chunk is a perfect match."""

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]

    def embed(self, text: str) -> list[float]:
        return [1.0, 0.0, 0.0]


class ShortEmbedder(ConstantEmbedder):
    def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts[:-1]]


class UnrankedStore(InMemoryInsightStore):
    def query(self, run_id, query_embedding, *, threshold, limit):  # noqa: ANN001
        raise SimilarityUnavailableError()


class BrokenQueryStore(InMemoryInsightStore):
    def query(self, run_id, query_embedding, *, threshold, limit):  # noqa: ANN001
        raise InsightStoreError("connection reset")


class BrokenListingStore(UnrankedStore):
    def list_for_run(self, run_id, *, limit=None):  # noqa: ANN001
        raise InsightStoreError("connection reset")


def _pipeline(**overrides) -> RagPipeline:
    options = {
        "embedder": ConstantEmbedder(),
        "store": InMemoryInsightStore(),
        "generator": None,
        "match_threshold": 0.7,
        "match_count": 5,
    }
    options.update(overrides)
    return RagPipeline(**options)


def _model_output(**overrides) -> str:
    payload = {
        "insights": ["Acme just raised a Series B", "Rocket X is shipping"],
        "email_subject": "Congrats on Rocket X",
        "email_body": "Hi Acme team, ...",
    }
    payload.update(overrides)
    return json.dumps(payload)


def test_dedupe_keeps_last_citation_at_first_position():
    citations = [
        Citation(text="first", url="https://a.example.com", title="A1"),
        Citation(text="other", url="https://b.example.com", title="B"),
        Citation(text="second", url="https://a.example.com", title="A2"),
    ]

    deduped = dedupe_citations(citations)

    assert [c.url for c in deduped] == ["https://a.example.com", "https://b.example.com"]
    assert deduped[0].title == "A2"
    assert deduped[0].text == "second"


def test_dedupe_is_idempotent():
    citations = sample_citations() + sample_citations()

    once = dedupe_citations(citations)

    assert dedupe_citations(once) == once
    assert len(once) == 2


def test_build_chunks_orders_profile_before_research():
    chunks = build_chunks(acme_profile(), sample_citations())

    assert [chunk.text for chunk in chunks] == [
        "Company: Acme\nDescription: Acme builds rockets for roadrunner enthusiasts.",
        "About: Founded in 1949, Acme ships rockets.",
        "Acme raised a Series B.",
        "Acme launched Rocket X.",
    ]
    assert chunks[0].citation.url == "https://acme.com"
    assert chunks[0].citation.title == "Acme"
    assert chunks[3].citation.url == "https://news.example.com/rocket-x"


def test_fallback_artifact_matches_expected_copy():
    profile = CompanyProfile(name="Acme", domain="acme.com", description="Rockets")
    citations = [Citation(text="x", url="https://x.example.com")]

    fallback = build_fallback_insights(profile, citations)

    assert fallback.insights == [
        "Company: Acme",
        "Domain: acme.com",
        "Research completed with available data",
    ]
    assert fallback.email_subject == "Opportunity for Acme"
    assert fallback.email_body.startswith("Hello Acme team,")
    assert fallback.email_body.endswith("Best regards")
    assert fallback.citations == ["https://x.example.com"]


def test_parse_insights_backfills_missing_citations():
    retrieved = [Citation(text="t", url="https://retrieved.example.com")]

    insights = parse_insights_payload(_model_output(), retrieved)

    assert insights.citations == ["https://retrieved.example.com"]
    assert insights.email_subject == "Congrats on Rocket X"


def test_parse_insights_keeps_model_citations_and_defaults_fields():
    raw = "```json\n" + json.dumps({"citations": [{"url": "https://model.example.com"}, "https://b.example.com"]}) + "\n```"

    insights = parse_insights_payload(raw, [Citation(url="https://ignored.example.com")])

    assert insights.citations == ["https://model.example.com", "https://b.example.com"]
    assert insights.insights == []
    assert insights.email_subject == ""
    assert insights.email_body == ""


@pytest.mark.parametrize("raw", ["not json at all", "[1, 2, 3]"])
def test_parse_insights_rejects_non_object_output(raw):
    with pytest.raises(PipelineStageError) as exc:
        parse_insights_payload(raw, [])

    assert exc.value.code == "502_INVALID_MODEL_OUTPUT"


def test_stage_result_short_circuits_after_failure():
    calls: list[str] = []
    error = RuntimeError("boom")

    def _next(value):
        calls.append(value)
        return StageResult.success(value)

    result = StageResult.failure("embed_persist", error).then(_next)

    assert not result.ok
    assert result.stage == "embed_persist"
    assert result.error is error
    assert calls == []


def test_run_generates_insights_from_retrieved_context():
    store = InMemoryInsightStore()
    generator = StubGenerator([_model_output()])
    pipeline = _pipeline(store=store, generator=generator)
    run_id = uuid4()

    outcome = pipeline.run(
        run_id=run_id,
        company="Acme",
        profile=acme_profile(),
        citations=sample_citations(),
    )

    assert not outcome.used_fallback
    assert outcome.insights.email_subject == "Congrats on Rocket X"
    assert outcome.insights.citations == [
        "https://acme.com",
        "https://news.example.com/acme-b",
        "https://news.example.com/rocket-x",
    ]
    assert [match.chunk_index for match in outcome.retrieved] == [0, 1, 2, 3]
    assert outcome.ranked is True
    prompt = generator.prompts[0]["user"]
    assert "Company: Acme\nAcme builds rockets for roadrunner enthusiasts." in prompt
    assert "[1] Company: Acme" in prompt
    assert "Source: Funding" in prompt
    assert generator.prompts[0]["system"] == "You are an expert ABM strategist. Always return valid JSON."
    assert len(store.records_for_run(run_id)) == 4


def test_run_without_generator_returns_fallback(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(rag_module, "metrics", stub)
    citations = sample_citations()

    outcome = _pipeline().run(
        run_id=uuid4(),
        company="Acme",
        profile=acme_profile(),
        citations=citations,
    )

    assert outcome.used_fallback
    assert outcome.failed_stage == "generate"
    assert outcome.error_code == "503_GENERATION_DISABLED"
    assert outcome.insights.email_subject == "Opportunity for Acme"
    assert outcome.insights.citations == [c.url for c in citations]
    assert any(call["metric"] == "pipeline.fallback" for call in stub.increment_calls)


def test_run_with_no_content_falls_back_without_storing():
    store = InMemoryInsightStore()
    run_id = uuid4()
    profile = CompanyProfile(name="Ghost", domain="ghost.io", metadata=ProfileMetadata())

    outcome = _pipeline(store=store).run(run_id=run_id, company="Ghost", profile=profile, citations=[])

    assert outcome.failed_stage == "chunk"
    assert outcome.error_code == "422_NO_CONTENT"
    assert outcome.insights.insights[0] == "Company: Ghost"
    assert outcome.insights.citations == []
    assert store.records_for_run(run_id) == []


def test_embedding_failure_falls_back():
    store = InMemoryInsightStore()
    run_id = uuid4()
    embedder = FailingEmbedder(PipelineStageError("upstream down", code="502_OPENAI_UPSTREAM"))
    generator = StubGenerator([_model_output()])

    outcome = _pipeline(store=store, embedder=embedder, generator=generator).run(
        run_id=run_id,
        company="Acme",
        profile=acme_profile(),
        citations=sample_citations(),
    )

    assert outcome.failed_stage == "embed_persist"
    assert outcome.error_code == "502_OPENAI_UPSTREAM"
    assert generator.prompts == []
    assert store.records_for_run(run_id) == []


def test_embedding_count_mismatch_falls_back():
    outcome = _pipeline(embedder=ShortEmbedder(), generator=StubGenerator([_model_output()])).run(
        run_id=uuid4(),
        company="Acme",
        profile=acme_profile(),
        citations=sample_citations(),
    )

    assert outcome.failed_stage == "embed_persist"


def test_invalid_model_output_falls_back():
    outcome = _pipeline(generator=StubGenerator(["Sorry, I cannot help with that."])).run(
        run_id=uuid4(),
        company="Acme",
        profile=acme_profile(),
        citations=sample_citations(),
    )

    assert outcome.failed_stage == "generate"
    assert outcome.error_code == "502_INVALID_MODEL_OUTPUT"
    assert outcome.insights.email_subject == "Opportunity for Acme"
    assert len(outcome.retrieved) == 4


def test_unranked_listing_used_when_similarity_is_unavailable():
    generator = StubGenerator([_model_output()])
    pipeline = _pipeline(store=UnrankedStore(), generator=generator, match_count=2)

    outcome = pipeline.run(
        run_id=uuid4(),
        company="Acme",
        profile=acme_profile(),
        citations=sample_citations(),
    )

    assert not outcome.used_fallback
    assert [match.chunk_index for match in outcome.retrieved] == [0, 1]
    assert outcome.ranked is False
    assert all(match.similarity is None for match in outcome.retrieved)
    assert outcome.insights.citations == ["https://acme.com"]
    assert "[2] About: Founded in 1949" in generator.prompts[0]["user"]


def test_retrieval_is_scoped_to_the_current_run():
    store = InMemoryInsightStore()
    pipeline = _pipeline(store=store, generator=StubGenerator([_model_output()]))
    other_run = uuid4()
    pipeline.run(
        run_id=other_run,
        company="Globex",
        profile=CompanyProfile(name="Globex", domain="globex.com", description="Globex sells everything."),
        citations=[Citation(text="Globex news", url="https://globex.example.com")],
    )

    outcome = pipeline.run(
        run_id=uuid4(),
        company="Acme",
        profile=acme_profile(),
        citations=sample_citations(),
    )

    assert "https://globex.example.com" not in outcome.insights.citations
    assert all("Globex" not in match.text for match in outcome.retrieved)


def test_stored_chunks_keep_their_index_and_citation():
    store = InMemoryInsightStore()
    run_id = uuid4()
    citations = sample_citations() + [Citation(text="Undated note about Acme.", url="")]

    _pipeline(store=store).run(run_id=run_id, company="Acme", profile=acme_profile(), citations=citations)

    assert [
        (record.content["chunk_index"], [c.url for c in record.citations])
        for record in store.records_for_run(run_id)
    ] == [
        (0, ["https://acme.com"]),
        (1, ["https://acme.com"]),
        (2, ["https://news.example.com/acme-b"]),
        (3, ["https://news.example.com/rocket-x"]),
        (4, []),
    ]
    assert store.records_for_run(run_id)[4].content["text"] == "Undated note about Acme."


def test_query_failure_generates_with_empty_context():
    generator = StubGenerator([_model_output()])

    outcome = _pipeline(store=BrokenQueryStore(), generator=generator).run(
        run_id=uuid4(),
        company="Acme",
        profile=acme_profile(),
        citations=sample_citations(),
    )

    assert not outcome.used_fallback
    assert outcome.retrieved == []
    assert outcome.insights.citations == []
    assert len(generator.prompts) == 1
    assert "[1]" not in generator.prompts[0]["user"]


def test_unranked_listing_failure_generates_with_empty_context():
    generator = StubGenerator([_model_output()])

    outcome = _pipeline(store=BrokenListingStore(), generator=generator).run(
        run_id=uuid4(),
        company="Acme",
        profile=acme_profile(),
        citations=sample_citations(),
    )

    assert not outcome.used_fallback
    assert outcome.ranked is False
    assert outcome.retrieved == []
    assert len(generator.prompts) == 1
