"""
backend/metegol/providers/http_client.py

Purpose:
    httpx.AsyncClient wrapper for upstream calls: retry with exponential
    backoff on transient statuses/network errors, a circuit breaker, and a
    per-attempt hook so every request that reaches the wire is counted
    against the daily quota.

Dependencies:
    - httpx
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger("metegol.http_client")

_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
_NETWORK_ERRORS = (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError)
_MAX_BACKOFF_SECONDS = 60.0


class CircuitOpenError(RuntimeError):
    """The breaker is open; no request was attempted."""


class CircuitBreaker:
    """Opens after N consecutive failures, half-opens after recovery_timeout."""

    def __init__(self, failure_threshold: int = 3, recovery_timeout: int = 300):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.is_open = False

    def record_success(self) -> None:
        self.failure_count = 0
        self.is_open = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and not self.is_open:
            self.is_open = True
            logger.warning("Circuit breaker OPEN after %d failures", self.failure_count)

    def can_attempt(self) -> bool:
        if not self.is_open:
            return True
        if self.last_failure_time and (time.time() - self.last_failure_time > self.recovery_timeout):
            logger.info("Circuit breaker half-open, allowing retry")
            return True
        return False


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Wait time from Retry-After or X-RateLimit-Retry-After headers."""
    for header in ("retry-after", "x-ratelimit-retry-after"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            return float(value)
        except (ValueError, TypeError):
            continue
    return None


def _safe_url(url: str) -> str:
    """Strip query params for logging."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class ResilientClient:
    """Retrying upstream client.

    ``on_attempt`` runs before every wire attempt (retries included); the
    provider uses it to acquire a rate-limit token and bump the quota counter.
    After exhausted retries the last response is returned, or the last
    network exception re-raised.
    """

    def __init__(
        self,
        name: str,
        timeout: float = 15.0,
        max_retries: int = 3,
        base_delay: float = 10.0,
        on_attempt: Optional[Callable[[], Awaitable[None]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._name = name
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._on_attempt = on_attempt
        self.circuit = CircuitBreaker()

    async def _before_attempt(self) -> None:
        if self._on_attempt is None:
            return
        await self._on_attempt()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if not self.circuit.can_attempt():
            raise CircuitOpenError(f"{self._name} circuit open")

        last_exc: Optional[Exception] = None
        last_resp: Optional[httpx.Response] = None
        attempts = self._max_retries + 1

        for attempt in range(attempts):
            await self._before_attempt()
            try:
                resp = await self._client.request(method, url, **kwargs)
            except _NETWORK_ERRORS as exc:
                last_exc = exc
                logger.warning(
                    "[%s] Network error on %s %s (attempt %d/%d): %s",
                    self._name, method, _safe_url(url), attempt + 1, attempts, exc,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(min(self._base_delay * (2 ** attempt), _MAX_BACKOFF_SECONDS))
                continue

            if resp.status_code not in _RETRYABLE_STATUSES:
                self.circuit.record_success()
                return resp

            last_resp = resp
            if resp.status_code == 429:
                logger.warning(
                    "[%s] Rate limited (429) on %s %s (attempt %d/%d)",
                    self._name, method, _safe_url(url), attempt + 1, attempts,
                )
            else:
                logger.warning(
                    "[%s] Server error %d on %s %s (attempt %d/%d)",
                    self._name, resp.status_code, method, _safe_url(url), attempt + 1, attempts,
                )
            if attempt < self._max_retries:
                delay = _parse_retry_after(resp)
                if delay is None:
                    delay = self._base_delay * (2 ** attempt)
                await asyncio.sleep(min(delay, _MAX_BACKOFF_SECONDS))

        self.circuit.record_failure()
        if last_resp is not None:
            logger.error(
                "[%s] All %d attempts failed for %s %s (last status: %d)",
                self._name, attempts, method, _safe_url(url), last_resp.status_code,
            )
            return last_resp

        logger.error(
            "[%s] All %d attempts failed for %s %s: %s",
            self._name, attempts, method, _safe_url(url), last_exc,
        )
        raise last_exc  # type: ignore[misc]

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()
