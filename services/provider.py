"""Generation providers invoked by job workers."""
from __future__ import annotations

import hashlib
import json
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from config import (
    MOCK_PROVIDER_DELAY_S,
    PROVIDER_API_KEY,
    PROVIDER_MAX_RETRIES,
    PROVIDER_TIMEOUT_S,
    PROVIDER_URL,
    USE_MOCK_PROVIDER,
)
from jobs.errors import ProviderError
from observability.logger import get_logger

LOGGER = get_logger("genjobs.services.provider")

RESULT_REF_KEYS = ("resultRef", "result_ref", "url", "result_url")
RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class GenerationProvider(Protocol):
    """Anything that turns a request payload into an artifact reference."""

    def run(self, request: Dict[str, Any]) -> str:
        ...


@dataclass
class RetryPolicy:
    max_retries: int = PROVIDER_MAX_RETRIES
    base_delay: float = 0.5
    jitter: float = 0.3


class HttpGenerationProvider:
    """POST the request to a remote generation endpoint and read back the artifact ref."""

    def __init__(
        self,
        url: str = PROVIDER_URL,
        *,
        api_key: str = PROVIDER_API_KEY,
        timeout_s: float = PROVIDER_TIMEOUT_S,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not url:
            raise ValueError("PROVIDER_URL is not configured")
        self._url = url
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_s, connect=10.0)
        self._policy = retry_policy or RetryPolicy()
        self._client = http_client or httpx.Client(timeout=self._timeout)
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def run(self, request: Dict[str, Any]) -> str:
        attempts = 0
        last_error: Optional[str] = None
        while attempts <= self._policy.max_retries:
            attempts += 1
            started_at = time.perf_counter()
            try:
                response = self._client.post(self._url, json=request, headers=self._headers(), timeout=self._timeout)
            except httpx.HTTPError as exc:
                last_error = f"transport error: {exc}"
                LOGGER.warning("provider_request_failed", extra={"attempt": attempts, "error": str(exc)})
            else:
                status = int(response.status_code)
                if status < 400:
                    duration_ms = int((time.perf_counter() - started_at) * 1000)
                    LOGGER.info("provider_request_succeeded", extra={"attempt": attempts, "duration_ms": duration_ms})
                    return _extract_result_ref(response)
                last_error = f"HTTP {status}"
                LOGGER.warning("provider_request_failed", extra={"attempt": attempts, "status": status})
                if status not in RETRYABLE_STATUS:
                    raise ProviderError(f"Provider rejected the request: {last_error}")
            if attempts > self._policy.max_retries:
                break
            delay = self._policy.base_delay * (2 ** (attempts - 1))
            self._sleep(delay + random.random() * self._policy.jitter)
        raise ProviderError(f"Provider failed after {attempts} attempts: {last_error}")


class MockGenerationProvider:
    """Offline provider: waits a little and returns a deterministic fake reference."""

    def __init__(self, *, delay_s: float = MOCK_PROVIDER_DELAY_S, sleep: Callable[[float], None] = time.sleep) -> None:
        self._delay_s = max(0.0, float(delay_s))
        self._sleep = sleep

    def run(self, request: Dict[str, Any]) -> str:
        if self._delay_s:
            self._sleep(self._delay_s)
        serialized = json.dumps(request, ensure_ascii=False, sort_keys=True, default=str)
        digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:16]
        return f"mock://artifacts/{digest}"


def _extract_result_ref(response: Any) -> str:
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderError("Provider returned a non-JSON response") from exc
    if isinstance(payload, dict):
        for key in RESULT_REF_KEYS:
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    raise ProviderError("Provider response carries no artifact reference")


def get_default_provider() -> GenerationProvider:
    if USE_MOCK_PROVIDER or not PROVIDER_URL:
        LOGGER.info("provider_selected", extra={"provider": "mock"})
        return MockGenerationProvider()
    LOGGER.info("provider_selected", extra={"provider": "http", "url": PROVIDER_URL})
    return HttpGenerationProvider()


__all__ = [
    "GenerationProvider",
    "HttpGenerationProvider",
    "MockGenerationProvider",
    "RetryPolicy",
    "get_default_provider",
]
