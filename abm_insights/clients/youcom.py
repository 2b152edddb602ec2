"""Client for interacting with the You.com Search and Express APIs."""

from __future__ import annotations

from typing import Any

import httpx

from abm_insights.config import settings


class YoucomError(RuntimeError):
    """Base error for You.com client failures."""

    def __init__(self, message: str, code: str = "YOUCOM_ERROR") -> None:
        super().__init__(message)
        self.code = code


class YoucomRateLimitError(YoucomError):
    """Raised when You.com responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by You.com") -> None:
        super().__init__(message, code="YOUCOM_429")


class YoucomTimeoutError(YoucomError):
    """Raised when You.com requests time out."""

    def __init__(self, message: str = "You.com request timed out") -> None:
        super().__init__(message, code="YOUCOM_TIMEOUT")


class YoucomNotFoundError(YoucomError):
    """Raised when You.com cannot find matching results."""

    def __init__(self, message: str = "No results found on You.com") -> None:
        super().__init__(message, code="YOUCOM_NOT_FOUND")


class YoucomSchemaError(YoucomError):
    """Raised when You.com response schema is not as expected."""

    def __init__(self, message: str = "Unexpected You.com response schema") -> None:
        super().__init__(message, code="YOUCOM_SCHEMA_ERR")


class YoucomClient:
    """Lightweight You.com API client returning raw JSON payloads."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.you.com",
        timeout: float = 20.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("YOUCOM_API_KEY is required to create a YoucomClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_settings(cls) -> "YoucomClient":
        """Instantiate the client from application settings."""
        return cls(
            api_key=settings.youcom_api_key or "",
            base_url=settings.youcom_base_url,
            timeout=settings.youcom_timeout_seconds,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            self._http.close()

    def search(self, *, query: str, count: int = 8, mode: str = "research") -> dict[str, Any]:
        """Call the Search API; the response layout varies between deployments."""
        if count <= 0:
            raise ValueError("count must be a positive integer.")
        return self._post("/search", {"query": query, "mode": mode, "count": count})

    def express(self, *, query: str) -> dict[str, Any]:
        """Call the Express API asking for a cited answer."""
        return self._post("/express", {"query": query, "format": "citations"})

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self._api_key,
        }

        try:
            response = self._http.post(path, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise YoucomTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise YoucomError(f"HTTP error calling You.com: {exc}") from exc

        if response.status_code == 429:
            raise YoucomRateLimitError()
        if response.status_code in (408, 504):
            raise YoucomTimeoutError()
        if response.status_code == 404:
            raise YoucomNotFoundError()
        if response.status_code >= 400:
            detail = response.text[:200]
            try:
                detail_json = response.json()
                detail = detail_json.get("message") or detail_json.get("detail") or detail
            except (ValueError, AttributeError):  # pragma: no cover - best effort decoding
                pass
            raise YoucomError(f"You.com request failed: {response.status_code} - {detail}")

        try:
            data = response.json()
        except ValueError as exc:
            raise YoucomSchemaError("Failed to decode You.com response JSON.") from exc

        if not isinstance(data, dict):
            raise YoucomSchemaError("You.com response must be a JSON object.")
        return data
