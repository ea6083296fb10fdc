"""
WMS HTTP transport - authenticated JSON requests with rate limiting,
retry/backoff and a circuit breaker.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

import httpx

from wms_sync.core.circuit_breaker import CircuitBreaker, get_wms_circuit_breaker
from wms_sync.core.config import settings
from wms_sync.core.exceptions import (
    AuthError,
    ClientError,
    NetworkError,
    RateLimitedError,
    ServerError,
)
from wms_sync.core.logging import get_correlation_id, get_logger
from wms_sync.domain.services.wms.rate_limiter import RateLimiter, parse_retry_after

logger = get_logger(__name__)

_MESSAGE_FIELDS = ("message", "error", "detail", "error_description", "description")


def extract_error_message(body: Any, default: str) -> str:
    """Pull a human readable message out of a WMS error body"""
    if isinstance(body, str):
        return body.strip() or default
    if not isinstance(body, dict):
        return default

    for field_name in _MESSAGE_FIELDS:
        value = body.get(field_name)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return value["message"]

    errors = body.get("errors")
    if isinstance(errors, list):
        messages = []
        for item in errors:
            if isinstance(item, str):
                messages.append(item)
            elif isinstance(item, dict) and item.get("message"):
                messages.append(str(item["message"]))
        if messages:
            return "; ".join(messages)
    elif isinstance(errors, dict):
        # {"field": ["msg", ...]} validation style
        messages = []
        for field_name, value in errors.items():
            values = value if isinstance(value, list) else [value]
            messages.extend(f"{field_name}: {v}" for v in values)
        if messages:
            return "; ".join(messages)

    return default


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return response.text


class WmsTransport:
    """
    Low level client for the WMS REST API.

    request() returns the parsed JSON body or raises one of NetworkError,
    AuthError, RateLimitedError, ClientError, ServerError. Transient failures
    (network, 429, 5xx) are retried internally up to max_retries times.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        access_token: str | None = None,
        customer_code: str | None = None,
        wms_code: str | None = None,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = (base_url or settings.WMS_BASE_URL).rstrip("/")
        self.access_token = access_token if access_token is not None else settings.WMS_ACCESS_TOKEN
        self._customer_code = customer_code if customer_code is not None else settings.WMS_CUSTOMER_CODE
        self._wms_code = wms_code if wms_code is not None else settings.WMS_CODE
        self.rate_limiter = rate_limiter or RateLimiter()
        self._circuit_breaker = circuit_breaker or get_wms_circuit_breaker()
        self._timeout = timeout or settings.WMS_REQUEST_TIMEOUT_SECONDS
        self._max_retries = settings.WMS_MAX_RETRIES if max_retries is None else max_retries
        self._http_transport = http_transport
        self._sleep = sleep

    def _build_headers(self, extra: dict[str, str] | None, authenticated: bool) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Correlation-ID": get_correlation_id(),
        }
        if self._customer_code:
            headers["X-Customer-Code"] = self._customer_code
        if self._wms_code:
            headers["X-Wms-Code"] = self._wms_code
        if authenticated and self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        if extra:
            headers.update(extra)
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            transport=self._http_transport,
        )

    async def request(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
        *,
        params: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> Any:
        """Send one logical request (retries included) through the circuit breaker"""

        async def _send() -> Any:
            return await self._request_with_retry(
                method.upper(), endpoint, body, headers, params, authenticated
            )

        return await self._circuit_breaker.execute(_send)

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        body: Any,
        headers: dict[str, str] | None,
        params: dict[str, Any] | None,
        authenticated: bool,
    ) -> Any:
        limiter = self.rate_limiter
        await limiter.load()
        operation = f"{method} {endpoint}"

        async with self._client() as client:
            for attempt in range(self._max_retries + 1):
                await limiter.acquire()
                started = time.monotonic()
                can_retry = attempt < self._max_retries

                try:
                    response = await client.request(
                        method,
                        endpoint,
                        json=body if body is not None and method not in ("GET", "DELETE") else None,
                        params=params,
                        headers=self._build_headers(headers, authenticated),
                    )
                except httpx.RequestError as exc:
                    timed_out = isinstance(exc, httpx.TimeoutException)
                    self._log_outcome(
                        "network_error", method, endpoint, attempt,
                        round(time.monotonic() - started, 4),
                        error=str(exc) or type(exc).__name__, timeout=timed_out,
                    )
                    if can_retry:
                        await self._sleep(2 ** attempt)
                        continue
                    await limiter.save()
                    raise NetworkError(
                        f"{operation} {'timed out' if timed_out else 'failed'} after {attempt + 1} attempts",
                        details={"timeout": timed_out, "attempts": attempt + 1},
                    ) from exc

                duration = round(time.monotonic() - started, 4)
                limiter.record_request()
                limiter.update_from_headers(response.headers)
                status = response.status_code

                if 200 <= status < 300:
                    self._log_outcome("success", method, endpoint, attempt, duration, status=status)
                    await limiter.save()
                    if status == 204:
                        return {"success": True, "status_code": 204}
                    return _parse_body(response)

                if status == 429:
                    retry_after = parse_retry_after(response.headers.get("Retry-After"), time.time())
                    backoff = limiter.register_rate_limited(retry_after, attempt)
                    await limiter.save()
                    self._log_outcome(
                        "rate_limited", method, endpoint, attempt, duration,
                        status=status, backoff_seconds=backoff,
                    )
                    if can_retry:
                        # the next acquire() honours the backoff window or fails fast
                        continue
                    raise RateLimitedError.from_response(
                        operation, response,
                        message=f"{operation} rate limited after {attempt + 1} attempts",
                        retry_after_seconds=backoff,
                    )

                if status >= 500:
                    self._log_outcome("server_error", method, endpoint, attempt, duration, status=status)
                    if can_retry:
                        await self._sleep(2 ** attempt)
                        continue
                    await limiter.save()
                    raise ServerError.from_response(
                        operation, response,
                        message=extract_error_message(
                            _parse_body(response), f"{operation} returned status {status}"
                        ),
                    )

                await limiter.save()
                message = extract_error_message(_parse_body(response), f"{operation} returned status {status}")
                self._log_outcome("client_error", method, endpoint, attempt, duration, status=status, error=message)
                if status in (401, 403):
                    raise AuthError.from_response(operation, response, message=message)
                raise ClientError.from_response(operation, response, message=message)

        # unreachable: the loop either returns or raises on its last attempt
        raise NetworkError(f"{operation} exhausted retries")

    def _log_outcome(
        self,
        outcome: str,
        method: str,
        endpoint: str,
        attempt: int,
        duration: float,
        **fields: Any,
    ) -> None:
        extra = {
            "outcome": outcome,
            "method": method,
            "endpoint": endpoint,
            "attempt": attempt + 1,
            "max_attempts": self._max_retries + 1,
            "duration_seconds": duration,
            **fields,
        }
        if outcome == "success":
            logger.info(f"WMS request {method} {endpoint}", extra_data=extra)
        elif outcome == "client_error":
            logger.error(f"WMS request {method} {endpoint} rejected", extra_data=extra)
        else:
            logger.warning(f"WMS request {method} {endpoint} failed", extra_data=extra)
