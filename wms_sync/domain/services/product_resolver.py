"""
Product Resolver - maps WMS article codes / variants to local products.

Resolution order for an order line:
1. direct SKU match (exact, then normalized variants of the code)
2. stored WMS article code / variant id on the product
3. fetch the variant from the WMS and create the product from it
4. synthesize a placeholder product so the line is never dropped
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.exceptions import WmsApiError
from wms_sync.core.logging import get_logger
from wms_sync.db.models.product import Product
from wms_sync.domain.events import OrderEvent, OrderEventBus, OrderEventType, SyncContext, get_event_bus
from wms_sync.domain.services.wms import WmsClient

logger = get_logger(__name__)

PLACEHOLDER_PREFIX = "WMS_"


def normalized_sku_candidates(sku: str) -> list[str]:
    """Alternative spellings of a code: '-' <-> '_' and with/without the WMS_ prefix"""
    sku = (sku or "").strip()
    if not sku:
        return []
    candidates = [sku, sku.replace("-", "_"), sku.replace("_", "-")]
    if sku.upper().startswith(PLACEHOLDER_PREFIX):
        candidates.append(sku[len(PLACEHOLDER_PREFIX):])
    else:
        candidates.append(f"{PLACEHOLDER_PREFIX}{sku}")
    seen: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.append(candidate)
    return seen


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value in (None, ""):
        return Decimal(default)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal(default)


class ProductResolver:
    """Finds or creates the local product for a WMS article"""

    def __init__(
        self,
        db: AsyncSession,
        wms_client: WmsClient | None = None,
        bus: OrderEventBus | None = None,
    ):
        self.db = db
        self.wms_client = wms_client
        self.bus = bus or get_event_bus()
        self._cache: dict[str, Product] = {}

    def clear_cache(self) -> None:
        """Forget cached rows (they expire when the session rolls back)"""
        self._cache.clear()

    async def find_by_sku(self, sku: str | None) -> Product | None:
        if not sku:
            return None
        if sku in self._cache:
            return self._cache[sku]

        for candidate in normalized_sku_candidates(sku):
            result = await self.db.execute(select(Product).where(Product.sku == candidate))
            product = result.scalar_one_or_none()
            if product is not None:
                self._cache[sku] = product
                return product
        return None

    async def find_by_wms_reference(
        self, article_code: str | None, variant_id: str | None = None
    ) -> Product | None:
        conditions = []
        if article_code:
            conditions.append(Product.wms_article_code == article_code)
        if variant_id:
            conditions.append(Product.wms_variant_id == str(variant_id))
        if not conditions:
            return None
        result = await self.db.execute(select(Product).where(or_(*conditions)).limit(1))
        return result.scalars().first()

    async def resolve(
        self,
        variant: dict | None,
        fallback_sku: str | None = None,
        context: SyncContext | None = None,
    ) -> Product:
        """Resolve an order-line variant; always returns a product"""
        variant = variant or {}
        article_code = variant.get("article_code") or variant.get("sku") or fallback_sku
        variant_id = variant.get("id")

        product = await self.find_by_sku(article_code)
        if product is None and fallback_sku and fallback_sku != article_code:
            product = await self.find_by_sku(fallback_sku)
        if product is None:
            product = await self.find_by_wms_reference(article_code, variant_id)
        if product is None and variant_id and self.wms_client is not None:
            product = await self._create_from_remote_variant(str(variant_id), article_code, context)
        if product is None:
            product = await self._create_placeholder(variant, article_code, context)

        if article_code:
            self._cache[article_code] = product
        return product

    async def _create_from_remote_variant(
        self, variant_id: str, article_code: str | None, context: SyncContext | None
    ) -> Product | None:
        try:
            remote = await self.wms_client.get_variant(variant_id)
        except WmsApiError as exc:
            logger.warning(
                "Could not fetch WMS variant, falling back to placeholder",
                extra_data={"variant_id": variant_id, "error": exc.message},
            )
            return None
        if not isinstance(remote, dict) or not remote:
            return None

        sku = remote.get("article_code") or article_code
        existing = await self.find_by_sku(sku)
        if existing is not None:
            return existing

        product = Product(
            sku=sku,
            name=remote.get("name") or remote.get("description") or sku or f"WMS variant {variant_id}",
            price=_decimal(remote.get("price")),
            wms_article_code=sku,
            wms_variant_id=variant_id,
            meta={"ean": remote.get("ean")} if remote.get("ean") else {},
        )
        return await self._add(product, context, "Product created from WMS variant")

    async def _create_placeholder(
        self, variant: dict, article_code: str | None, context: SyncContext | None
    ) -> Product:
        variant_id = variant.get("id")
        sku = article_code or f"{PLACEHOLDER_PREFIX}{variant_id or 'UNKNOWN'}"
        existing = await self.find_by_sku(sku)
        if existing is not None:
            return existing
        product = Product(
            sku=sku,
            name=variant.get("name") or variant.get("description") or f"WMS article {sku}",
            price=_decimal(variant.get("price")),
            wms_article_code=article_code,
            wms_variant_id=str(variant_id) if variant_id else None,
            is_placeholder=True,
            meta={},
        )
        return await self._add(product, context, "Placeholder product created")

    async def _add(self, product: Product, context: SyncContext | None, message: str) -> Product:
        self.db.add(product)
        await self.db.flush()
        logger.info(message, extra_data={"product_id": product.id, "sku": product.sku})
        await self.bus.publish(
            OrderEvent(OrderEventType.PRODUCT_UPDATED, product_id=product.id, context=context)
        )
        return product

    # ------------------------------------------------------------------ catalogue / stock updates

    async def update_stock(
        self,
        sku: str,
        quantity: int | None,
        stock_status: str,
        context: SyncContext | None = None,
    ) -> Product | None:
        """Apply a stock level; unknown SKUs are reported as None"""
        product = await self.find_by_sku(sku)
        if product is None:
            product = await self.find_by_wms_reference(sku)
        if product is None:
            return None

        product.manage_stock = quantity is not None
        product.stock_quantity = quantity
        product.stock_status = stock_status
        await self.db.flush()
        await self.bus.publish(
            OrderEvent(OrderEventType.PRODUCT_UPDATED, product_id=product.id, context=context)
        )
        return product

    async def upsert_from_article(self, article: dict, context: SyncContext | None = None) -> Product | None:
        """Create or refresh a product from an article/variant payload"""
        sku = article.get("article_code") or article.get("sku")
        if not sku:
            return None
        variant_id = article.get("id")

        product = await self.find_by_sku(sku) or await self.find_by_wms_reference(sku, variant_id)
        if product is None:
            product = Product(sku=sku, name=article.get("name") or sku, meta={})
            self.db.add(product)
        else:
            if article.get("name"):
                product.name = article["name"]
            product.is_placeholder = False

        if article.get("price") is not None:
            product.price = _decimal(article.get("price"))
        product.wms_article_code = sku
        if variant_id:
            product.wms_variant_id = str(variant_id)
        await self.db.flush()
        self._cache[sku] = product
        await self.bus.publish(
            OrderEvent(OrderEventType.PRODUCT_UPDATED, product_id=product.id, context=context)
        )
        return product
