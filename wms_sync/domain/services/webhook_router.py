"""
Webhook Router - dispatches a decoded webhook to its domain handler.

order    -> OrderSyncCoordinator
stock    -> product stock levels
shipment -> tracking metadata on the order, order completed
inbound  -> completed inbounds refresh stock for their SKUs
article / variant -> product upsert
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.exceptions import ReconciliationError, ValidationException
from wms_sync.core.logging import get_logger
from wms_sync.db.models.order import Order, OrderStatus
from wms_sync.db.models.order_state import OrderStateRecord
from wms_sync.domain.event_tables import SUPPORTED_ACTIONS, WebhookGroup
from wms_sync.domain.events import OrderEventBus, SyncContext
from wms_sync.domain.services.order_sync_service import OrderSyncCoordinator
from wms_sync.domain.services.wms import WmsClient

logger = get_logger(__name__)

# WMS stock_status -> local stock status
STOCK_STATUS_MAPPING = {
    "in_stock": "instock",
    "instock": "instock",
    "out_of_stock": "outofstock",
    "outofstock": "outofstock",
    "backorder": "onbackorder",
    "on_backorder": "onbackorder",
}

# shipment events never reopen these
FINAL_ORDER_STATUSES = frozenset({
    OrderStatus.COMPLETED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.REFUNDED.value,
})

Handler = Callable[[str, dict, "str | None", SyncContext], Awaitable[dict]]


def stock_quantity(item: dict) -> int | None:
    for key in ("stock", "quantity", "available", "stock_quantity"):
        if item.get(key) is not None:
            try:
                return int(item[key])
            except (TypeError, ValueError):
                return None
    return None


def article_code_of(item: dict) -> str | None:
    return item.get("article_code") or item.get("sku") or (item.get("variant") or {}).get("article_code")


def inbound_skus(inbound: dict) -> list[str]:
    """Distinct article codes on an inbound's lines, in line order"""
    skus: list[str] = []
    for line in inbound.get("inbound_lines") or []:
        sku = article_code_of(line)
        if sku and sku not in skus:
            skus.append(sku)
    return skus


def stock_status_for(item: dict, quantity: int | None) -> str:
    explicit = item.get("stock_status")
    if explicit:
        return STOCK_STATUS_MAPPING.get(str(explicit).lower(), "instock")
    if quantity is None:
        return "instock"
    return "instock" if quantity > 0 else "outofstock"


class WebhookRouter:
    """Routes (group, action, payload) to the handler for its group"""

    def __init__(
        self,
        db: AsyncSession,
        wms_client: WmsClient | None = None,
        bus: OrderEventBus | None = None,
        coordinator: OrderSyncCoordinator | None = None,
    ):
        self.db = db
        self.wms_client = wms_client
        self.coordinator = coordinator or OrderSyncCoordinator(db, wms_client, bus)
        self._handlers: dict[WebhookGroup, Handler] = {
            WebhookGroup.ORDER: self._handle_order,
            WebhookGroup.STOCK: self._handle_stock,
            WebhookGroup.SHIPMENT: self._handle_shipment,
            WebhookGroup.INBOUND: self._handle_inbound,
            WebhookGroup.ARTICLE: self._handle_article,
            WebhookGroup.VARIANT: self._handle_article,
        }

    async def route(
        self,
        group: str,
        action: str,
        payload: dict,
        entity_id: str | None = None,
        context: SyncContext | None = None,
    ) -> dict:
        if not group or not action:
            raise ValidationException("Webhook group and action are required", field="group")
        if not isinstance(payload, dict):
            raise ValidationException("Webhook payload must be a JSON object", field="payload")

        try:
            webhook_group = WebhookGroup(group)
        except ValueError:
            webhook_group = None
        if webhook_group is None or action not in SUPPORTED_ACTIONS[webhook_group]:
            logger.info("Ignoring unsupported webhook", extra_data={"group": group, "action": action})
            return {"status": "ignored", "group": group, "action": action}

        context = context or SyncContext.for_webhook()
        self.coordinator.products.clear_cache()
        return await self._handlers[webhook_group](action, payload, entity_id, context)

    # ------------------------------------------------------------------ order

    async def _handle_order(
        self, action: str, payload: dict, entity_id: str | None, context: SyncContext
    ) -> dict:
        data = payload
        remote_id = payload.get("id") or entity_id
        # thin notifications carry only the id; fetch the full order
        if "order_lines" not in payload and remote_id and self.wms_client is not None:
            data = await self.wms_client.get_order(str(remote_id))

        result = await self.coordinator.process_webhook_order_event(action, data, context)
        if not result.success:
            raise ReconciliationError(result.error or "Order reconciliation failed", order_id=result.order_id)
        return {"status": "success", **result.to_dict()}

    # ------------------------------------------------------------------ stock

    async def _handle_stock(
        self, action: str, payload: dict, entity_id: str | None, context: SyncContext
    ) -> dict:
        items = payload.get("items") if isinstance(payload.get("items"), list) else [payload]
        updated, unknown = await self._apply_stock_levels(items, context)
        await self.db.commit()
        return {"status": "success", "updated": updated, "unknown": unknown}

    async def _apply_stock_levels(self, items: list[dict], context: SyncContext) -> tuple[int, list[str]]:
        updated = 0
        unknown: list[str] = []

        for item in items:
            sku = article_code_of(item)
            if not sku:
                continue
            quantity = stock_quantity(item)
            product = await self.coordinator.products.update_stock(
                sku, quantity, stock_status_for(item, quantity), context
            )
            if product is None:
                unknown.append(sku)
            else:
                updated += 1

        if unknown:
            logger.warning(
                "Stock update for unknown products",
                extra_data={"skus": unknown[:20], "count": len(unknown)},
            )
        return updated, unknown

    # ------------------------------------------------------------------ shipment

    async def _find_order_for_shipment(self, payload: dict) -> Order | None:
        order_ref = payload.get("order")
        external_reference = payload.get("external_reference")
        remote_order_id = None
        if isinstance(order_ref, dict):
            external_reference = external_reference or order_ref.get("external_reference")
            remote_order_id = order_ref.get("id")
        elif order_ref:
            remote_order_id = order_ref

        if external_reference:
            order = await self.coordinator.find_by_external_reference(str(external_reference))
            if order is not None:
                return order
        if remote_order_id:
            result = await self.db.execute(
                select(Order)
                .join(OrderStateRecord, OrderStateRecord.order_id == Order.id)
                .where(OrderStateRecord.remote_order_id == str(remote_order_id))
            )
            return result.scalars().first()
        return None

    async def _handle_shipment(
        self, action: str, payload: dict, entity_id: str | None, context: SyncContext
    ) -> dict:
        order = await self._find_order_for_shipment(payload)
        if order is None:
            logger.warning(
                "Shipment webhook for unknown order",
                extra_data={"shipment_id": payload.get("id") or entity_id, "action": action},
            )
            return {"status": "ignored", "reason": "order_not_found"}

        tracking_code = payload.get("tracking_code") or payload.get("tracking_number")
        carrier = payload.get("shipper") or payload.get("carrier")
        orders = self.coordinator.orders

        with self.coordinator.bus.suppressed(
            self.coordinator.feedback_listener, order_id=order.id, context=context
        ):
            order.meta["_wms_shipment_id"] = str(payload.get("id") or entity_id or "")
            order.meta["_wms_shipment_status"] = payload.get("status") or action
            if tracking_code:
                order.meta["_wms_tracking_code"] = tracking_code
            if payload.get("tracking_url"):
                order.meta["_wms_tracking_url"] = payload["tracking_url"]
            if carrier:
                order.meta["_wms_carrier"] = carrier

            note = f"Shipment {action} in WMS"
            if tracking_code:
                note += f" (tracking: {tracking_code})"
            orders.add_note(order, note)

            status_updated = False
            if order.status not in FINAL_ORDER_STATUSES:
                status_updated = await orders.set_status(
                    order, OrderStatus.COMPLETED.value, "Order shipped by WMS", context
                )
            if not context.is_import:
                await self.coordinator.state.mark_as_webhook_processed(order)
            await orders.save(order, context)
            await self.db.commit()

        return {"status": "success", "order_id": order.id, "status_updated": status_updated}

    # ------------------------------------------------------------------ inbound

    async def _handle_inbound(
        self, action: str, payload: dict, entity_id: str | None, context: SyncContext
    ) -> dict:
        inbound_id = payload.get("id") or entity_id
        logger.info(
            "Inbound webhook received",
            extra_data={
                "inbound_id": inbound_id,
                "action": action,
                "status": payload.get("status"),
                "reference": payload.get("reference"),
            },
        )
        if action != "completed":
            return {"status": "acknowledged", "inbound_id": inbound_id}

        affected_skus = inbound_skus(payload)
        if not affected_skus:
            return {"status": "acknowledged", "inbound_id": inbound_id, "affected_skus": []}
        if self.wms_client is None:
            logger.warning(
                "Inbound completed but no WMS client to refresh stock",
                extra_data={"inbound_id": inbound_id, "skus": affected_skus[:20]},
            )
            return {"status": "acknowledged", "inbound_id": inbound_id, "affected_skus": affected_skus}

        return {
            "status": "success",
            "inbound_id": inbound_id,
            "affected_skus": affected_skus,
            **await self.refresh_stock(affected_skus, context),
        }

    async def refresh_stock(self, skus: list[str], context: SyncContext) -> dict:
        """Pull current WMS stock levels for the given SKUs and apply them"""
        levels: list[dict] = []
        for sku in skus:
            fetched = await self.wms_client.get_stock({"article_code": sku})
            # keep only the requested article
            levels.extend(level for level in fetched if article_code_of(level) == sku)

        updated, unknown = await self._apply_stock_levels(levels, context)
        await self.db.commit()
        missing = sorted(set(skus) - {article_code_of(level) for level in levels})
        logger.info(
            "Stock refreshed after inbound",
            extra_data={"skus": len(skus), "updated": updated, "unknown": len(unknown), "missing": len(missing)},
        )
        return {"updated": updated, "unknown": unknown, "missing": missing}

    # ------------------------------------------------------------------ article / variant

    async def _handle_article(
        self, action: str, payload: dict, entity_id: str | None, context: SyncContext
    ) -> dict:
        products = self.coordinator.products
        if action == "deleted":
            sku = payload.get("article_code") or payload.get("sku")
            product = await products.find_by_sku(sku) if sku else None
            if product is None:
                return {"status": "ignored", "reason": "product_not_found"}
            product.meta["_wms_deleted"] = True
            product.stock_status = "outofstock"
            await self.db.commit()
            return {"status": "success", "product_id": product.id, "deleted": True}

        product = await products.upsert_from_article(payload, context)
        await self.db.commit()
        if product is None:
            return {"status": "ignored", "reason": "missing_article_code"}
        return {"status": "success", "product_id": product.id}
