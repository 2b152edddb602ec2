import math
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, RateLimitError

from abm_insights.clients.openai_client import (
    HashingEmbedder,
    OpenAIChatGenerator,
    OpenAIEmbeddingClient,
)
from abm_insights.services.abm.errors import PipelineStageError

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


class StubEmbeddings:
    def __init__(self, data=None, error: Exception | None = None) -> None:  # noqa: ANN001
        self._data = data or []
        self._error = error
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return SimpleNamespace(data=self._data)


class StubCompletions:
    def __init__(self, content=None, error: Exception | None = None) -> None:  # noqa: ANN001
        self._content = content
        self._error = error
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        message = SimpleNamespace(content=self._content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _sdk(*, embeddings=None, completions=None):  # noqa: ANN001
    return SimpleNamespace(
        embeddings=embeddings,
        chat=SimpleNamespace(completions=completions),
    )


def _rate_limit() -> RateLimitError:
    return RateLimitError("slow down", response=httpx.Response(429, request=_REQUEST), body=None)


def test_embeddings_are_returned_in_input_order():
    embeddings = StubEmbeddings(
        data=[
            SimpleNamespace(index=1, embedding=[0.0, 1.0]),
            SimpleNamespace(index=0, embedding=[1.0, 0.0]),
        ]
    )
    client = OpenAIEmbeddingClient("key", model="text-embedding-3-small", client=_sdk(embeddings=embeddings))

    vectors = client.embed_many(["first", "second"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert embeddings.calls[0] == {"model": "text-embedding-3-small", "input": ["first", "second"]}


def test_empty_batch_skips_the_api():
    embeddings = StubEmbeddings()
    client = OpenAIEmbeddingClient("key", client=_sdk(embeddings=embeddings))

    assert client.embed_many([]) == []
    assert embeddings.calls == []


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (_rate_limit(), "429_RATE_LIMIT"),
        (APIConnectionError(request=_REQUEST), "502_OPENAI_UPSTREAM"),
    ],
)
def test_embedding_errors_become_stage_errors(error, code):
    client = OpenAIEmbeddingClient("key", client=_sdk(embeddings=StubEmbeddings(error=error)))

    with pytest.raises(PipelineStageError) as exc:
        client.embed("acme")

    assert exc.value.code == code


def test_generator_requests_json_object():
    completions = StubCompletions(content='{"insights": []}')
    generator = OpenAIChatGenerator(
        "key",
        model="gpt-4o-mini",
        temperature=0.7,
        client=_sdk(completions=completions),
    )

    text = generator.generate(system_prompt="system", user_prompt="user")

    assert text == '{"insights": []}'
    call = completions.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    assert call["model"] == "gpt-4o-mini"
    assert call["temperature"] == 0.7
    assert [m["role"] for m in call["messages"]] == ["system", "user"]


@pytest.mark.parametrize("content", [None, "   "])
def test_empty_completion_becomes_empty_object(content):
    generator = OpenAIChatGenerator("key", client=_sdk(completions=StubCompletions(content=content)))

    assert generator.generate(system_prompt="s", user_prompt="u") == "{}"


def test_generator_rate_limit_maps_code():
    generator = OpenAIChatGenerator("key", client=_sdk(completions=StubCompletions(error=_rate_limit())))

    with pytest.raises(PipelineStageError) as exc:
        generator.generate(system_prompt="s", user_prompt="u")

    assert exc.value.code == "429_RATE_LIMIT"


def test_api_key_required_without_injected_client():
    with pytest.raises(ValueError):
        OpenAIEmbeddingClient("")
    with pytest.raises(ValueError):
        OpenAIChatGenerator("")


def test_hashing_embedder_is_deterministic_and_normalized():
    embedder = HashingEmbedder(32)

    first = embedder.embed("Acme builds rockets")
    second = embedder.embed("acme BUILDS rockets!")

    assert first == second
    assert len(first) == 32
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0)
    assert embedder.embed("") == [0.0] * 32
    assert embedder.embed_many(["a", "b"]) == [embedder.embed("a"), embedder.embed("b")]
