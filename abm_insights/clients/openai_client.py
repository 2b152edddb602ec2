"""OpenAI embedding and JSON-generation clients, plus an offline embedder."""

from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Any, Protocol

from openai import APIError as OpenAIAPIError
from openai import OpenAI
from openai import OpenAIError as OpenAIBaseError

from abm_insights.services.abm.errors import PipelineStageError

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class Embedder(Protocol):
    """Maps text to fixed-dimension vectors, preserving input order."""

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        ...

    def embed(self, text: str) -> list[float]:
        ...


class JsonGenerator(Protocol):
    """Prompt text in, JSON-shaped text out."""

    def generate(self, *, system_prompt: str, user_prompt: str) -> str:
        ...


class OpenAIEmbeddingClient:
    """Batched embeddings via the OpenAI embeddings endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "text-embedding-3-small",
        timeout: float = 60.0,
        client: Any | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("OPENAI_API_KEY is required to create embeddings.")
        self._client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._model = model

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            response = self._client.embeddings.create(model=self._model, input=texts)
        except OpenAIAPIError as exc:
            code = "429_RATE_LIMIT" if getattr(exc, "status_code", 500) == 429 else "502_OPENAI_UPSTREAM"
            raise PipelineStageError(f"OpenAI embeddings failed: {exc}", code=code) from exc
        except OpenAIBaseError as exc:
            raise PipelineStageError(f"OpenAI embeddings failed: {exc}", code="502_OPENAI_UPSTREAM") from exc
        ordered = sorted(response.data, key=lambda item: getattr(item, "index", 0))
        return [list(item.embedding) for item in ordered]

    def embed(self, text: str) -> list[float]:
        vectors = self.embed_many([text])
        if not vectors:
            raise PipelineStageError("OpenAI returned no embedding.", code="502_OPENAI_UPSTREAM")
        return vectors[0]


class HashingEmbedder:
    """Deterministic bag-of-words feature hashing used in fixture mode."""

    def __init__(self, dimensions: int = 1536) -> None:
        self._dimensions = dimensions

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]

    def embed(self, text: str) -> list[float]:
        values = [0.0] * self._dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimensions
            values[bucket] += 1.0 if digest[4] % 2 == 0 else -1.0
        norm = math.sqrt(sum(v * v for v in values))
        if norm <= 0:
            return values
        return [v / norm for v in values]


class OpenAIChatGenerator:
    """Chat completion constrained to a JSON object response."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        timeout: float = 60.0,
        client: Any | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("OPENAI_API_KEY is required to generate insights.")
        self._client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._model = model
        self._temperature = temperature

    def generate(self, *, system_prompt: str, user_prompt: str) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self._model,
                temperature=self._temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except OpenAIAPIError as exc:
            code = "429_RATE_LIMIT" if getattr(exc, "status_code", 500) == 429 else "502_OPENAI_UPSTREAM"
            message = getattr(exc, "message", str(exc))
            raise PipelineStageError(f"OpenAI request failed: {message}", code=code) from exc
        except OpenAIBaseError as exc:
            message = getattr(exc, "message", str(exc))
            raise PipelineStageError(f"OpenAI request failed: {message}", code="502_OPENAI_UPSTREAM") from exc
        return _extract_response_text(response)


def _extract_response_text(response: Any) -> str:
    """Normalize chat completion payloads across SDK versions."""
    choices = getattr(response, "choices", None) or []
    if choices:
        message = choices[0].message
        content = getattr(message, "content", "")
        if isinstance(content, list):
            return "".join(part.get("text", "") for part in content if isinstance(part, dict)).strip()
        if isinstance(content, str):
            return content.strip() or "{}"
        if content is None:
            return "{}"

    try:
        dumped = json.dumps(getattr(response, "model_dump", lambda: response)())
    except TypeError:
        dumped = str(response)
    raise PipelineStageError(
        f"OpenAI response did not include text output: {dumped[:200]}",
        code="502_OPENAI_UPSTREAM",
    )
