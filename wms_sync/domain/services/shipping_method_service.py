"""
Shipping Method Service - local checkout method <-> WMS shipping method id.

The WMS method list is cached in Redis for SHIPPING_METHODS_CACHE_SECONDS.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.config import settings
from wms_sync.core.logging import get_logger
from wms_sync.core.redis_client import load_json, redis_key, store_json
from wms_sync.db.models.shipping_method_mapping import ShippingMethodMapping
from wms_sync.domain.services.wms import WmsClient

logger = get_logger(__name__)

SHIPPING_METHODS_CACHE_KEY = redis_key("cache", "shipping_methods")


class ShippingMethodService:
    def __init__(self, db: AsyncSession, wms_client: WmsClient | None = None):
        self.db = db
        self.wms_client = wms_client

    async def resolve(self, local_method_key: str | None) -> str | None:
        """Mapped WMS method id for a local method, else the configured default"""
        if local_method_key:
            result = await self.db.execute(
                select(ShippingMethodMapping).where(
                    ShippingMethodMapping.local_method_key == local_method_key
                )
            )
            mapping = result.scalar_one_or_none()
            if mapping is not None:
                return mapping.wms_shipping_method_id
            # "flat_rate:3" falls back to a mapping for the bare method id
            method_id = local_method_key.split(":", 1)[0]
            if method_id != local_method_key:
                return await self.resolve(method_id)
        return settings.WMS_DEFAULT_SHIPPING_METHOD_ID or None

    async def local_key_for(self, wms_shipping_method_id: str | None) -> str | None:
        if not wms_shipping_method_id:
            return None
        result = await self.db.execute(
            select(ShippingMethodMapping).where(
                ShippingMethodMapping.wms_shipping_method_id == str(wms_shipping_method_id)
            )
        )
        mapping = result.scalars().first()
        return mapping.local_method_key if mapping else None

    async def set_mapping(
        self, local_method_key: str, wms_shipping_method_id: str, description: str | None = None
    ) -> ShippingMethodMapping:
        result = await self.db.execute(
            select(ShippingMethodMapping).where(
                ShippingMethodMapping.local_method_key == local_method_key
            )
        )
        mapping = result.scalar_one_or_none()
        if mapping is None:
            mapping = ShippingMethodMapping(local_method_key=local_method_key)
            self.db.add(mapping)
        mapping.wms_shipping_method_id = wms_shipping_method_id
        mapping.description = description
        await self.db.commit()
        return mapping

    async def get_remote_methods(self, force_refresh: bool = False) -> list[dict]:
        if not force_refresh:
            cached = await load_json(SHIPPING_METHODS_CACHE_KEY)
            if cached is not None:
                return cached

        if self.wms_client is None:
            return []
        methods = await self.wms_client.get_shipping_methods()
        await store_json(SHIPPING_METHODS_CACHE_KEY, methods, settings.SHIPPING_METHODS_CACHE_SECONDS)
        logger.info("Shipping methods cached", extra_data={"count": len(methods)})
        return methods
