from __future__ import annotations

import sys
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

import services.provider as provider_module  # noqa: E402
from jobs.errors import ProviderError  # noqa: E402
from services.provider import (  # noqa: E402
    HttpGenerationProvider,
    MockGenerationProvider,
    RetryPolicy,
)


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummyClient:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _provider(responses, **kwargs):
    client = DummyClient(responses)
    sleeps = []
    provider = HttpGenerationProvider(
        "https://provider.example/generate",
        api_key=kwargs.pop("api_key", "secret"),
        retry_policy=kwargs.pop("retry_policy", RetryPolicy(max_retries=2, base_delay=0.1, jitter=0.0)),
        http_client=client,
        sleep=sleeps.append,
    )
    return provider, client, sleeps


def test_http_provider_returns_artifact_reference():
    provider, client, sleeps = _provider([DummyResponse(200, {"url": "https://cdn.example/a.mp3"})])

    assert provider.run({"tags": "lullaby"}) == "https://cdn.example/a.mp3"
    call = client.calls[0]
    assert call["json"] == {"tags": "lullaby"}
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert sleeps == []


def test_http_provider_prefers_result_ref_key():
    provider, _, _ = _provider([DummyResponse(200, {"resultRef": "r1", "url": "ignored"})])
    assert provider.run({}) == "r1"


def test_http_provider_retries_transient_status():
    provider, client, sleeps = _provider(
        [DummyResponse(503), DummyResponse(429), DummyResponse(200, {"result_url": "r2"})]
    )

    assert provider.run({}) == "r2"
    assert len(client.calls) == 3
    assert sleeps == [0.1, 0.2]


def test_http_provider_does_not_retry_client_errors():
    provider, client, _ = _provider([DummyResponse(400, {"error": "bad tags"})])

    with pytest.raises(ProviderError) as excinfo:
        provider.run({})
    assert "HTTP 400" in excinfo.value.message
    assert len(client.calls) == 1


def test_http_provider_gives_up_after_transport_errors():
    request = httpx.Request("POST", "https://provider.example/generate")
    errors = [httpx.ConnectError("connection refused", request=request) for _ in range(3)]
    provider, client, sleeps = _provider(errors)

    with pytest.raises(ProviderError) as excinfo:
        provider.run({})
    assert "after 3 attempts" in excinfo.value.message
    assert len(client.calls) == 3
    assert len(sleeps) == 2


def test_http_provider_requires_reference_in_reply():
    provider, _, _ = _provider([DummyResponse(200, {"status": "ok"})])
    with pytest.raises(ProviderError):
        provider.run({})


def test_http_provider_rejects_non_json_reply():
    provider, _, _ = _provider([DummyResponse(200, None, text="<html>")])
    with pytest.raises(ProviderError):
        provider.run({})


def test_http_provider_requires_url():
    with pytest.raises(ValueError):
        HttpGenerationProvider("", http_client=DummyClient([]))


def test_http_provider_omits_auth_without_key():
    provider, client, _ = _provider([DummyResponse(200, {"url": "r"})], api_key="")
    provider.run({})
    assert "Authorization" not in client.calls[0]["headers"]


def test_mock_provider_is_deterministic():
    sleeps = []
    provider = MockGenerationProvider(delay_s=1.5, sleep=sleeps.append)

    first = provider.run({"tags": "lullaby", "n": 1})
    second = provider.run({"n": 1, "tags": "lullaby"})

    assert first == second
    assert first.startswith("mock://artifacts/")
    assert first != provider.run({"tags": "rock"})
    assert sleeps == [1.5, 1.5, 1.5]


def test_default_provider_selection(monkeypatch):
    monkeypatch.setattr(provider_module, "USE_MOCK_PROVIDER", True)
    assert isinstance(provider_module.get_default_provider(), MockGenerationProvider)

    monkeypatch.setattr(provider_module, "USE_MOCK_PROVIDER", False)
    monkeypatch.setattr(provider_module, "PROVIDER_URL", "")
    assert isinstance(provider_module.get_default_provider(), MockGenerationProvider)
