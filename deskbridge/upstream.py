"""
Upstream HTTP client with retry/backoff and error normalization.

Every call is bounded by a fixed per-call timeout. Transport errors, timeouts
and 5xx responses are normalized to ``UpstreamTransient`` and retried with
jittered exponential backoff; 4xx responses become ``UpstreamRejected`` and
are raised on the first attempt.
"""
import asyncio
import random
import time
from typing import Any, Awaitable, Callable

import httpx

from deskbridge.config import settings
from deskbridge.errors import UpstreamError, UpstreamRejected, UpstreamTransient
from deskbridge.logger import get_logger
from deskbridge.metrics import (
    upstream_requests_total,
    upstream_request_duration_seconds,
    upstream_retries_total,
)

logger = get_logger(__name__)


def backoff_delay(attempt: int, base_delay_ms: int, max_delay_ms: int,
                  rand: Callable[[], float] = random.random) -> float:
    """Seconds to wait after the ``attempt``-th failure (0-based), with +/-20% jitter."""
    capped = min(base_delay_ms * (2 ** attempt), max_delay_ms)
    return capped * (0.8 + 0.4 * rand()) / 1000


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def decode_json(response: httpx.Response, service: str, expect: type | None = None) -> Any:
    """
    Parsed JSON body of a successful response.

    Raises ``UpstreamError`` when the body is not JSON or not of type ``expect``.
    """
    try:
        body = response.json()
    except ValueError as e:
        raise UpstreamError(
            f"{service} returned a body that is not JSON",
            service=service,
            status_code=response.status_code,
            body=response.text,
        ) from e
    if expect is not None and not isinstance(body, expect):
        raise UpstreamError(
            f"{service} returned {type(body).__name__}, expected {expect.__name__}",
            service=service,
            status_code=response.status_code,
            body=body,
        )
    return body


class UpstreamClient:
    """
    Thin async wrapper over ``httpx.AsyncClient`` for one upstream service.

    Args:
        service: Label used in logs and metrics
        base_url: Prefix for relative paths (absolute URLs are used as-is)
        auth: httpx auth applied to every call
        headers: Headers applied to every call
        transport: Optional httpx transport (tests inject ``httpx.MockTransport``)
        sleep: Coroutine used between retries
    """

    def __init__(
        self,
        service: str,
        base_url: str = "",
        auth: httpx.Auth | tuple[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.service = service
        self.base_url = base_url
        self.auth = auth
        self.headers = headers or {}
        self.timeout = timeout if timeout is not None else settings.upstream_timeout_s
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.base_delay_ms = settings.retry_base_delay_ms if base_delay_ms is None else base_delay_ms
        self.max_delay_ms = settings.retry_max_delay_ms if max_delay_ms is None else max_delay_ms
        self._transport = transport
        self._sleep = sleep
        self._rand = rand
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy initialization of the pooled HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Single attempt. Raises ``UpstreamTransient`` or ``UpstreamRejected`` on failure."""
        headers = {**self.headers, **kwargs.pop("headers", {})}
        auth = kwargs.pop("auth", self.auth)
        label = f"{self.service} {method} {path}"

        start_time = time.time()
        try:
            response = await self.client.request(method, path, headers=headers, auth=auth, **kwargs)
        except httpx.TimeoutException as e:
            upstream_requests_total.labels(service=self.service, outcome="transient").inc()
            raise UpstreamTransient(f"{label} timed out", service=self.service) from e
        except httpx.TransportError as e:
            upstream_requests_total.labels(service=self.service, outcome="transient").inc()
            raise UpstreamTransient(f"{label} failed: {e}", service=self.service) from e
        finally:
            upstream_request_duration_seconds.labels(service=self.service).observe(time.time() - start_time)

        if response.status_code >= 500:
            upstream_requests_total.labels(service=self.service, outcome="transient").inc()
            raise UpstreamTransient(
                f"{label} returned {response.status_code}",
                service=self.service,
                status_code=response.status_code,
                body=_response_body(response),
            )
        if response.status_code >= 400:
            upstream_requests_total.labels(service=self.service, outcome="rejected").inc()
            raise UpstreamRejected(
                f"{label} returned {response.status_code}",
                service=self.service,
                status_code=response.status_code,
                body=_response_body(response),
            )

        upstream_requests_total.labels(service=self.service, outcome="ok").inc()
        return response

    async def call_with_retry(
        self,
        method: str,
        path: str,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Call with retries on transient failures.

        Rejections (4xx) are raised immediately. When every attempt fails the
        last ``UpstreamTransient`` is raised.
        """
        max_attempts = max_attempts or self.max_attempts
        base_delay_ms = self.base_delay_ms if base_delay_ms is None else base_delay_ms

        last_error: UpstreamTransient | None = None
        for attempt in range(max_attempts):
            try:
                return await self.call(method, path, **kwargs)
            except UpstreamTransient as e:
                last_error = e
                if attempt + 1 >= max_attempts:
                    break
                delay = backoff_delay(attempt, base_delay_ms, self.max_delay_ms, self._rand)
                logger.warning(
                    "Upstream call failed, retrying",
                    extra={"service": self.service, "attempt": attempt + 1,
                           "delay_s": round(delay, 3), "error": str(e)}
                )
                upstream_retries_total.labels(service=self.service).inc()
                await self._sleep(delay)

        logger.error(
            "Upstream call failed after all attempts",
            extra={"service": self.service, "attempts": max_attempts, "error": str(last_error)}
        )
        raise last_error
