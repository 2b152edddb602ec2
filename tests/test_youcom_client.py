import json

import httpx
import pytest

from abm_insights.clients.youcom import (
    YoucomClient,
    YoucomError,
    YoucomNotFoundError,
    YoucomRateLimitError,
    YoucomSchemaError,
    YoucomTimeoutError,
)


def _client(handler) -> YoucomClient:
    transport = httpx.MockTransport(handler)
    http_client = httpx.Client(transport=transport, base_url="https://api.you.com")
    return YoucomClient("test-key", http_client=http_client)


def test_search_posts_query_with_api_key():
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["key"] = request.headers["X-API-Key"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"results": []})

    with _client(handler) as client:
        data = client.search(query="acme news", count=5)

    assert data == {"results": []}
    assert captured["path"] == "/search"
    assert captured["key"] == "test-key"
    assert captured["body"] == {"query": "acme news", "mode": "research", "count": 5}


def test_express_requests_citation_format():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/express"
        assert json.loads(request.content)["format"] == "citations"
        return httpx.Response(200, json={"citations": []})

    assert _client(handler).express(query="acme") == {"citations": []}


@pytest.mark.parametrize(
    ("status_code", "error_type", "code"),
    [
        (429, YoucomRateLimitError, "YOUCOM_429"),
        (504, YoucomTimeoutError, "YOUCOM_TIMEOUT"),
        (404, YoucomNotFoundError, "YOUCOM_NOT_FOUND"),
        (500, YoucomError, "YOUCOM_ERROR"),
    ],
)
def test_http_errors_map_to_typed_errors(status_code, error_type, code):
    client = _client(lambda request: httpx.Response(status_code, json={"message": "nope"}))

    with pytest.raises(error_type) as exc:
        client.search(query="acme")

    assert exc.value.code == code


def test_transport_timeout_maps_to_timeout_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(YoucomTimeoutError):
        _client(handler).express(query="acme")


@pytest.mark.parametrize("body", [b"not-json", b"[1, 2]"])
def test_non_object_body_is_a_schema_error(body):
    client = _client(lambda request: httpx.Response(200, content=body))

    with pytest.raises(YoucomSchemaError):
        client.search(query="acme")


def test_api_key_required():
    with pytest.raises(ValueError):
        YoucomClient("")


def test_search_count_must_be_positive():
    with pytest.raises(ValueError):
        _client(lambda request: httpx.Response(200, json={})).search(query="acme", count=0)
