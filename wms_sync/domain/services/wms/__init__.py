"""
WMS integration - rate limiter, HTTP transport and API client.
"""
from wms_sync.domain.services.wms.client import WmsClient
from wms_sync.domain.services.wms.rate_limiter import (
    RateLimitConfig,
    RateLimiter,
    RateLimitStatusStore,
)
from wms_sync.domain.services.wms.transport import WmsTransport


def get_wms_client() -> WmsClient:
    """Production client: Redis-backed rate limit status, settings-driven transport"""
    limiter = RateLimiter(RateLimitConfig.from_settings(), RateLimitStatusStore())
    return WmsClient(WmsTransport(rate_limiter=limiter))


__all__ = [
    "RateLimitConfig",
    "RateLimitStatusStore",
    "RateLimiter",
    "WmsClient",
    "WmsTransport",
    "get_wms_client",
]
