"""
WMS API client - typed entry points over WmsTransport.

Authentication: a bearer token from /wms/auth/login/ (or WMS_ACCESS_TOKEN).
An AuthError on a call triggers one re-login and a single retry.
"""
from __future__ import annotations

from typing import Any

from wms_sync.core.config import settings
from wms_sync.core.exceptions import AuthError, ConfigurationError
from wms_sync.core.logging import get_logger
from wms_sync.domain.services.wms.transport import WmsTransport

logger = get_logger(__name__)


def _as_list(response: Any) -> list[dict]:
    """List endpoints answer either a bare list or a {"results": [...]} page"""
    if isinstance(response, list):
        return response
    if isinstance(response, dict):
        for key in ("results", "data", "items"):
            if isinstance(response.get(key), list):
                return response[key]
    return []


class WmsClient:
    """High level WMS API used by the coordinator and the orchestrator"""

    def __init__(self, transport: WmsTransport | None = None):
        self.transport = transport or WmsTransport()
        self._refresh_token: str | None = None

    # ---------------------------------------------------------------- auth

    async def authenticate(self) -> str:
        if not settings.WMS_USERNAME or not settings.WMS_PASSWORD:
            raise ConfigurationError("WMS_USERNAME", "WMS credentials are not configured")

        response = await self.transport.request(
            "POST",
            "/wms/auth/login/",
            {"username": settings.WMS_USERNAME, "password": settings.WMS_PASSWORD},
            authenticated=False,
        )
        token = response.get("token") if isinstance(response, dict) else None
        if not token:
            raise AuthError("login response did not contain a token")

        self.transport.access_token = token
        self._refresh_token = response.get("refresh_token") or None
        logger.info(
            "Authenticated against WMS",
            extra_data={"expires_at": response.get("exp"), "has_refresh_token": bool(self._refresh_token)},
        )
        return token

    async def _call(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        if not self.transport.access_token:
            await self.authenticate()
        try:
            return await self.transport.request(method, endpoint, body, params=params)
        except AuthError:
            logger.warning(
                "WMS rejected token, re-authenticating",
                extra_data={"method": method, "endpoint": endpoint},
            )
            await self.authenticate()
            return await self.transport.request(method, endpoint, body, params=params)

    async def test_connection(self) -> dict:
        await self._call("GET", "/wms/orders/", params={"limit": 1})
        return {"connected": True, "base_url": self.transport.base_url}

    # ---------------------------------------------------------------- orders

    async def get_orders(self, params: dict[str, Any] | None = None) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/orders/", params=params))

    async def get_order(self, order_id: str) -> dict:
        return await self._call("GET", f"/wms/orders/{order_id}/")

    async def create_order(self, payload: dict) -> dict:
        return await self._call("POST", "/wms/orders/", payload)

    async def update_order(self, order_id: str, payload: dict) -> dict:
        return await self._call("PATCH", f"/wms/orders/{order_id}/", payload)

    async def cancel_order(self, order_id: str) -> dict:
        return await self._call("PATCH", f"/wms/orders/{order_id}/cancel/")

    # ---------------------------------------------------------------- catalogue / stock

    async def get_articles(self, params: dict[str, Any] | None = None) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/articles/", params=params))

    async def get_variant(self, variant_id: str) -> dict:
        return await self._call("GET", f"/wms/variants/{variant_id}/")

    async def get_stock(self, params: dict[str, Any] | None = None) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/stock/", params=params))

    async def get_customers(self, params: dict[str, Any] | None = None) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/customers/", params=params))

    # ---------------------------------------------------------------- logistics

    async def get_shipments(self, params: dict[str, Any] | None = None) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/shipments/", params=params))

    async def get_shipment(self, shipment_id: str) -> dict:
        return await self._call("GET", f"/wms/shipments/{shipment_id}/")

    async def get_inbounds(self, params: dict[str, Any] | None = None) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/inbounds/", params=params))

    async def get_shipping_methods(self) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/shippingmethods/"))

    async def get_location_types(self) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/locationtypes/"))

    # ---------------------------------------------------------------- webhooks

    async def get_webhooks(self) -> list[dict]:
        return _as_list(await self._call("GET", "/wms/webhooks/"))

    async def register_webhook(self, group: str, action: str, url: str) -> dict:
        return await self._call(
            "POST", "/wms/webhooks/", {"group": group, "action": action, "url": url}
        )
