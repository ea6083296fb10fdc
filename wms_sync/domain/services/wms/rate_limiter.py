"""
WMS rate limiter.

Tracks the remote quota from X-RateLimit-* response headers when the WMS
sends them, and falls back to local hourly and per-minute burst windows when
it does not. The status record is persisted in Redis so overlapping
invocations (webhook call, Celery batch) share one view of the quota.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, fields
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping

from redis.exceptions import RedisError

from wms_sync.core.config import settings
from wms_sync.core.exceptions import RateLimitedError
from wms_sync.core.logging import get_logger
from wms_sync.core.redis_client import load_json, redis_key, store_json

logger = get_logger(__name__)

_REMAINING_HEADERS = ("x-ratelimit-remaining", "ratelimit-remaining", "x-rate-limit-remaining")
_RESET_HEADERS = ("x-ratelimit-reset", "ratelimit-reset", "x-rate-limit-reset")
_LIMIT_HEADERS = ("x-ratelimit-limit", "ratelimit-limit", "x-rate-limit-limit")

DEFAULT_RETRY_AFTER_SECONDS = 60.0


@dataclass
class RateLimitConfig:
    default_limit: int = 3600
    window_seconds: int = 3600
    burst_limit: int = 100
    burst_window_seconds: int = 60
    threshold: int = 10
    adaptive_threshold: float = 0.8
    backoff_multiplier: float = 1.5
    max_wait_seconds: float = 300.0
    # wait used when the quota is low but the WMS never told us when it resets
    fallback_wait_seconds: float = 60.0

    @classmethod
    def from_settings(cls) -> "RateLimitConfig":
        return cls(
            default_limit=settings.WMS_RATE_LIMIT_DEFAULT,
            window_seconds=settings.WMS_RATE_LIMIT_WINDOW_SECONDS,
            burst_limit=settings.WMS_BURST_LIMIT,
            burst_window_seconds=settings.WMS_BURST_WINDOW_SECONDS,
            threshold=settings.WMS_RATE_LIMIT_THRESHOLD,
            adaptive_threshold=settings.WMS_ADAPTIVE_THRESHOLD,
            backoff_multiplier=settings.WMS_BACKOFF_MULTIPLIER,
            max_wait_seconds=float(settings.WMS_RATE_LIMIT_MAX_WAIT_SECONDS),
        )


@dataclass
class RateLimitStatus:
    """Persisted quota view. Times are unix timestamps."""

    limit: int
    remaining: int
    reset_time: float | None = None
    backoff_until: float | None = None
    adaptive_mode: bool = False
    headers_seen: bool = False
    window_started_at: float = 0.0
    window_count: int = 0
    burst_started_at: float = 0.0
    burst_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], default_limit: int) -> "RateLimitStatus":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values.setdefault("limit", default_limit)
        values.setdefault("remaining", values["limit"])
        return cls(**values)


class RateLimitStatusStore:
    """Redis persistence for the shared RateLimitStatus record"""

    def __init__(self, key: str | None = None):
        self.key = key or redis_key("rate_limit", "status")

    async def load(self) -> dict[str, Any] | None:
        return await load_json(self.key)

    async def save(self, status: RateLimitStatus) -> None:
        await store_json(self.key, status.to_dict())


def parse_retry_after(value: str | None, now: float) -> float | None:
    """Retry-After is either delta-seconds or an HTTP date"""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        return max(0.0, parsedate_to_datetime(value).timestamp() - now)
    except (TypeError, ValueError):
        logger.warning("Unparseable Retry-After header", extra_data={"value": value})
        return None


def _first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        if name in lowered and str(lowered[name]).strip() != "":
            return str(lowered[name]).strip()
    return None


class RateLimiter:
    """
    Gate in front of the WMS transport.

    acquire() blocks while the quota is exhausted or a backoff window is open,
    and raises RateLimitedError instead of blocking longer than
    config.max_wait_seconds.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        store: RateLimitStatusStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RateLimitConfig()
        self._store = store
        self._clock = clock
        self._sleep = sleep
        now = clock()
        self.status = RateLimitStatus(
            limit=self.config.default_limit,
            remaining=self.config.default_limit,
            window_started_at=now,
            burst_started_at=now,
        )

    # ------------------------------------------------------------------ persistence

    async def load(self) -> RateLimitStatus:
        """Refresh from the shared store; expired windows are reset on load"""
        if self._store is not None:
            try:
                data = await self._store.load()
            except (RedisError, OSError) as exc:
                # keep the in-memory status
                logger.warning("Rate limit status unavailable, using local status", extra_data={"error": str(exc)})
                data = None
            if data:
                self.status = RateLimitStatus.from_dict(data, self.config.default_limit)
        self._expire_windows(self._clock())
        return self.status

    async def save(self) -> None:
        if self._store is not None:
            try:
                await self._store.save(self.status)
            except (RedisError, OSError) as exc:
                logger.warning("Could not persist rate limit status", extra_data={"error": str(exc)})

    # ------------------------------------------------------------------ bookkeeping

    def _expire_windows(self, now: float) -> None:
        s = self.status
        if s.reset_time is not None and now >= s.reset_time:
            s.remaining = s.limit
            s.reset_time = None
            s.adaptive_mode = False
        if s.backoff_until is not None and now >= s.backoff_until:
            s.backoff_until = None
        if now - s.window_started_at >= self.config.window_seconds:
            s.window_started_at = now
            s.window_count = 0
            if not s.headers_seen:
                s.remaining = s.limit
                s.adaptive_mode = False
        if now - s.burst_started_at >= self.config.burst_window_seconds:
            s.burst_started_at = now
            s.burst_count = 0

    def _check_adaptive_mode(self) -> None:
        s = self.status
        if s.limit <= 0:
            return
        usage = 1 - (s.remaining / s.limit)
        was_adaptive = s.adaptive_mode
        s.adaptive_mode = usage >= self.config.adaptive_threshold
        if s.adaptive_mode and not was_adaptive:
            logger.warning(
                "WMS rate limit usage high, adaptive backoff enabled",
                extra_data={"remaining": s.remaining, "limit": s.limit, "usage": round(usage, 3)},
            )

    def record_request(self) -> None:
        """Count a request against the local windows"""
        now = self._clock()
        self._expire_windows(now)
        s = self.status
        s.window_count += 1
        s.burst_count += 1
        if not s.headers_seen:
            s.remaining = max(0, s.limit - s.window_count)
            if s.reset_time is None:
                s.reset_time = s.window_started_at + self.config.window_seconds
            self._check_adaptive_mode()

    def update_from_headers(self, headers: Mapping[str, str]) -> bool:
        """Apply X-RateLimit-* headers. Returns True when any were present."""
        now = self._clock()
        remaining = _first_header(headers, _REMAINING_HEADERS)
        reset = _first_header(headers, _RESET_HEADERS)
        limit = _first_header(headers, _LIMIT_HEADERS)
        if remaining is None and reset is None and limit is None:
            return False

        s = self.status
        try:
            if limit is not None:
                s.limit = int(float(limit))
            if remaining is not None:
                s.remaining = max(0, int(float(remaining)))
            if reset is not None:
                reset_value = float(reset)
                # values in the future are absolute timestamps, anything else is seconds from now
                s.reset_time = reset_value if reset_value > now else now + reset_value
        except ValueError:
            logger.warning(
                "Ignoring malformed rate limit headers",
                extra_data={"remaining": remaining, "reset": reset, "limit": limit},
            )
            return False

        s.headers_seen = True
        self._check_adaptive_mode()
        return True

    def calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff (2**attempt), stretched in adaptive mode"""
        backoff = float(2 ** max(0, attempt))
        if self.status.adaptive_mode:
            backoff *= self.config.backoff_multiplier
        return backoff

    def register_rate_limited(self, retry_after: float | None, attempt: int) -> float:
        """
        Record a 429. Opens a backoff window of max(Retry-After, exponential(attempt))
        and returns its length in seconds.
        """
        now = self._clock()
        retry_after = DEFAULT_RETRY_AFTER_SECONDS if retry_after is None else retry_after
        backoff = max(retry_after, self.calculate_backoff(attempt))
        s = self.status
        s.backoff_until = now + backoff
        s.remaining = 0
        s.reset_time = now + retry_after
        self._check_adaptive_mode()
        logger.warning(
            "WMS rate limit exceeded",
            extra_data={"retry_after": retry_after, "backoff_seconds": backoff, "attempt": attempt},
        )
        return backoff

    def get_wait_time(self) -> float:
        """Seconds to wait before the next request may be sent (0 when allowed)"""
        now = self._clock()
        self._expire_windows(now)
        s = self.status
        waits: list[float] = []

        if s.backoff_until is not None and s.backoff_until > now:
            waits.append(s.backoff_until - now)

        if s.remaining <= self.config.threshold:
            if s.reset_time is not None and s.reset_time > now:
                waits.append(s.reset_time - now)
            else:
                waits.append(self.config.fallback_wait_seconds)

        if s.burst_count >= self.config.burst_limit:
            waits.append(s.burst_started_at + self.config.burst_window_seconds - now)

        if not waits:
            return 0.0

        wait = max(waits)
        if s.adaptive_mode and s.backoff_until is None:
            # headers said we are close to the limit: stretch the wait before the WMS has to 429 us
            wait *= self.config.backoff_multiplier
        return max(0.0, wait)

    def is_allowed(self) -> bool:
        return self.get_wait_time() <= 0

    async def acquire(self) -> None:
        """
        Block until a request is allowed.

        Raises:
            RateLimitedError: the wait exceeds config.max_wait_seconds
        """
        wait = self.get_wait_time()
        if wait <= 0:
            return

        if wait > self.config.max_wait_seconds:
            logger.error(
                "WMS rate limit wait exceeds maximum, failing fast",
                extra_data={"wait_seconds": round(wait, 1), "max_wait_seconds": self.config.max_wait_seconds},
            )
            raise RateLimitedError(
                f"rate limit wait of {wait:.0f}s exceeds maximum of {self.config.max_wait_seconds:.0f}s",
                retry_after_seconds=wait,
            )

        logger.info(
            "Waiting for WMS rate limit",
            extra_data={"wait_seconds": round(wait, 1), "remaining": self.status.remaining},
        )
        resume_at = self._clock() + wait
        await self._sleep(wait)
        self._expire_windows(max(self._clock(), resume_at))
        s = self.status
        if s.remaining <= self.config.threshold and (s.reset_time is None or s.reset_time <= resume_at):
            # we waited out the reset without fresh headers
            s.remaining = s.limit
            s.reset_time = None

    def reset(self) -> None:
        now = self._clock()
        self.status = RateLimitStatus(
            limit=self.config.default_limit,
            remaining=self.config.default_limit,
            window_started_at=now,
            burst_started_at=now,
        )

    def get_status(self) -> dict[str, Any]:
        now = self._clock()
        s = self.status
        return {
            "limit": s.limit,
            "remaining": s.remaining,
            "reset_time": s.reset_time,
            "is_limited": not self.is_allowed(),
            "adaptive_mode": s.adaptive_mode,
            "backoff_until": s.backoff_until,
            "wait_seconds": round(self.get_wait_time(), 1),
            "checked_at": now,
        }
