"""
Order Sync Coordinator - applies WMS order payloads to local orders and
builds the outbound payload for local orders.

Every remote application runs inside ``bus.suppressed(feedback_listener, ...)``
so the local changes it makes never queue an export back to the WMS.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.clock import utcnow
from wms_sync.core.config import settings
from wms_sync.core.exceptions import (
    AppException,
    ConfigurationError,
    NotFoundException,
    ErrorCode,
    ReconciliationError,
    ValidationException,
)
from wms_sync.core.logging import get_logger
from wms_sync.db.models.order import Order, OrderLine, OrderStatus
from wms_sync.domain.event_tables import map_remote_status
from wms_sync.domain.events import Listener, OrderEventBus, SyncContext, get_event_bus
from wms_sync.domain.services.export_listener import export_order_listener
from wms_sync.domain.services.order_service import OrderService
from wms_sync.domain.services.order_state_service import OrderStateStore
from wms_sync.domain.services.product_resolver import ProductResolver
from wms_sync.domain.services.shipping_method_service import ShippingMethodService
from wms_sync.domain.services.wms import WmsClient

logger = get_logger(__name__)

# "12a Main Street" / "Main Street 12a"
_NUMBER_FIRST = re.compile(r"^(\d+)\s*([a-zA-Z]?)\s+(.+)$")
_NUMBER_LAST = re.compile(r"^(.+?)\s+(\d+)\s*([a-zA-Z]?)$")


@dataclass
class ReconciliationResult:
    success: bool
    order_id: int | None = None
    remote_order_id: str | None = None
    created: bool = False
    skipped: bool = False
    status_updated: bool = False
    order_lines_processed: int = 0
    items_added: int = 0
    items_updated: int = 0
    errors: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "order_id": self.order_id, "error": self.error}
        return {
            "success": True,
            "created": self.created,
            "skipped": self.skipped,
            "result": {
                "order_id": self.order_id,
                "wms_order_id": self.remote_order_id,
                "status_updated": self.status_updated,
                "order_lines_processed": self.order_lines_processed,
                "items_added": self.items_added,
                "items_updated": self.items_updated,
                "errors": self.errors,
            },
        }


def split_street(street: str | None) -> tuple[str, str, str]:
    """Best effort (street, number, addition) split of a one-line street"""
    street = (street or "").strip()
    match = _NUMBER_FIRST.match(street)
    if match:
        return match.group(3), match.group(1), match.group(2)
    match = _NUMBER_LAST.match(street)
    if match:
        return match.group(1), match.group(2), match.group(3)
    return street, "", ""


def split_addressed_to(addressed_to: str | None) -> tuple[str, str]:
    parts = (addressed_to or "").strip().split(" ", 1)
    return parts[0], parts[1] if len(parts) > 1 else ""


def next_business_day(today: date) -> date:
    day = today + timedelta(days=1)
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _strip_empty(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_empty(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_strip_empty(v) for v in value]
    return value


def _remote_shipping_method_id(remote: dict) -> str | None:
    method = remote.get("shipping_method")
    if isinstance(method, dict):
        method = method.get("id")
    return str(method) if method else None


class OrderSyncCoordinator:
    """Reconciles local orders with their WMS counterparts"""

    def __init__(
        self,
        db: AsyncSession,
        wms_client: WmsClient | None = None,
        bus: OrderEventBus | None = None,
        feedback_listener: Listener | None = None,
        state_store: OrderStateStore | None = None,
    ):
        self.db = db
        self.wms_client = wms_client
        self.bus = bus or get_event_bus()
        self.feedback_listener = feedback_listener or export_order_listener
        self.orders = OrderService(db, self.bus)
        self.state = state_store or OrderStateStore(db)
        self.products = ProductResolver(db, wms_client, self.bus)
        self.shipping = ShippingMethodService(db, wms_client)

    async def find_by_external_reference(self, external_reference: str | None) -> Order | None:
        return await self.orders.find_by_external_reference(external_reference)

    # ------------------------------------------------------------------ inbound

    async def process_webhook_order_event(
        self, action: str, data: dict, context: SyncContext
    ) -> ReconciliationResult:
        """Create the order when it is unknown locally, otherwise update it"""
        order = await self.find_by_external_reference(data.get("external_reference"))
        if order is None:
            if action != "created":
                logger.info(
                    "Order not found locally, creating from WMS data",
                    extra_data={"action": action, "external_reference": data.get("external_reference")},
                )
            return await self.create_from_remote(data, context)
        return await self.update_from_remote(order, data, context)

    async def update_from_remote(
        self, order: Order, remote: dict, context: SyncContext
    ) -> ReconciliationResult:
        order_id = order.id
        result = ReconciliationResult(success=True, order_id=order_id)

        with self.bus.suppressed(self.feedback_listener, order_id=order_id, context=context):
            try:
                remote_id = await self._guard_remote_id(order, remote)
                result.remote_order_id = remote_id

                await self._reconcile_lines(order, remote.get("order_lines") or [], context, result)
                self.orders.recalculate_totals(order)

                remote_status = remote.get("status")
                if remote_status:
                    new_status = map_remote_status(remote_status).value
                    result.status_updated = await self.orders.set_status(
                        order, new_status, f"Status updated from WMS: {remote_status}", context
                    )

                previous_remote_status = order.meta.get("_wms_status")
                self._store_remote_metadata(order, remote)
                if remote_status and previous_remote_status and previous_remote_status != remote_status:
                    self.orders.add_note(
                        order, f"WMS status changed from {previous_remote_status} to {remote_status}"
                    )

                if context.is_import:
                    await self.state.mark_as_synced_from_remote(order, remote_id)
                else:
                    await self.state.mark_as_webhook_processed(order, remote_id)

                await self.orders.save(order, context)
                await self.db.commit()
            except Exception as exc:
                return await self._fail(order_id, exc, context)

        context.touched_order_ids.add(order_id)
        logger.info(
            "Order updated from WMS",
            extra_data={
                "order_id": order_id,
                "wms_order_id": result.remote_order_id,
                "status_updated": result.status_updated,
                "items_added": result.items_added,
                "items_updated": result.items_updated,
            },
        )
        return result

    async def create_from_remote(self, remote: dict, context: SyncContext) -> ReconciliationResult:
        result = ReconciliationResult(success=True, created=True)
        remote_id = str(remote["id"]) if remote.get("id") else None
        result.remote_order_id = remote_id

        with self.bus.suppressed(self.feedback_listener, context=context):
            try:
                shipping = self._address_from_remote(remote.get("shipping_address") or {})
                billing = self._address_from_remote(
                    remote.get("billing_address") or remote.get("shipping_address") or {}
                )
                remote_status = remote.get("status")
                order = Order(
                    external_reference=str(remote["external_reference"]) if remote.get("external_reference") else None,
                    status=map_remote_status(remote_status).value,
                    currency=remote.get("currency") or "EUR",
                    total=Decimal("0"),
                    customer_note=remote.get("note") or remote.get("customer_note"),
                    billing_address=billing,
                    shipping_address=shipping,
                    requested_delivery_date=_parse_date(remote.get("requested_delivery_date")),
                    shipping_method_key=await self.shipping.local_key_for(_remote_shipping_method_id(remote)),
                    meta={},
                    lines=[],
                    notes=[],
                )
                order = await self.orders.create_order(order, context)
                result.order_id = order.id

                await self._reconcile_lines(order, remote.get("order_lines") or [], context, result)
                total = self.orders.recalculate_totals(order)
                amount = _decimal(remote.get("order_amount"))
                if total == 0 and amount:
                    order.total = amount / 100

                self._store_remote_metadata(order, remote)
                self.orders.add_note(
                    order, f"Order created from WMS (status: {remote_status or 'unknown'})"
                )
                await self.state.mark_as_synced_from_remote(order, remote_id)
                await self.orders.save(order, context)
                await self.db.commit()
            except Exception as exc:
                return await self._fail(result.order_id, exc, context)

        context.touched_order_ids.add(order.id)
        logger.info(
            "Order created from WMS",
            extra_data={
                "order_id": order.id,
                "wms_order_id": remote_id,
                "external_reference": order.external_reference,
                "lines": result.order_lines_processed,
            },
        )
        return result

    async def _guard_remote_id(self, order: Order, remote: dict) -> str | None:
        remote_id = str(remote["id"]) if remote.get("id") else None
        stored = await self.state.get_remote_order_id(order)
        if stored and remote_id and stored != remote_id:
            raise ReconciliationError(
                f"WMS order id mismatch: stored {stored}, received {remote_id}",
                order_id=order.id,
                details={"stored": stored, "received": remote_id},
            )
        return remote_id or stored

    async def _reconcile_lines(
        self,
        order: Order,
        remote_lines: list[dict],
        context: SyncContext,
        result: ReconciliationResult,
    ) -> None:
        for remote_line in remote_lines:
            variant = remote_line.get("variant") or {}
            article_code = (
                variant.get("article_code") or remote_line.get("article_code") or remote_line.get("sku")
            )
            if not article_code and not variant.get("id"):
                result.errors.append("Order line without article code skipped")
                continue

            quantity = 1 if remote_line.get("quantity") is None else int(remote_line["quantity"])
            product = await self.products.resolve(
                variant or {"article_code": article_code}, fallback_sku=article_code, context=context
            )

            existing = self._matching_line(order, product.id, product.sku, article_code)
            if existing is not None:
                if self.orders.set_line_quantity(existing, quantity):
                    result.items_updated += 1
            else:
                self.orders.add_line(
                    order,
                    product,
                    quantity,
                    name=remote_line.get("description") or variant.get("name"),
                    unit_price=_decimal(remote_line.get("price")),
                )
                result.items_added += 1
            result.order_lines_processed += 1

    @staticmethod
    def _matching_line(order: Order, product_id: int, sku: str | None, article_code: str | None) -> OrderLine | None:
        for line in order.lines:
            if line.product_id == product_id:
                return line
            if line.sku and line.sku in (sku, article_code):
                return line
        return None

    @staticmethod
    def _address_from_remote(address: dict) -> dict:
        first_name, last_name = split_addressed_to(address.get("addressed_to"))
        number = " ".join(
            str(part) for part in (address.get("street_number"), address.get("street_number_addition")) if part
        )
        return {
            "first_name": first_name,
            "last_name": last_name,
            "company": address.get("company") or "",
            "street": address.get("street") or "",
            "house_number": number,
            "street2": address.get("street2") or "",
            "city": address.get("city") or "",
            "state": address.get("state") or "",
            "postcode": address.get("zipcode") or "",
            "country": address.get("country") or "",
            "phone": address.get("phone_number") or "",
            "email": address.get("email_address") or "",
        }

    @staticmethod
    def _store_remote_metadata(order: Order, remote: dict) -> None:
        if remote.get("id"):
            order.meta["_wms_order_id"] = str(remote["id"])
        if remote.get("reference"):
            order.meta["_wms_reference"] = remote["reference"]
        if remote.get("external_reference"):
            order.meta["_wms_external_reference"] = str(remote["external_reference"])
        if remote.get("status"):
            order.meta["_wms_status"] = remote["status"]
        shipping_method_id = _remote_shipping_method_id(remote)
        if shipping_method_id:
            order.meta["_wms_shipping_method_id"] = shipping_method_id
        order.meta["_wms_raw_data"] = remote
        order.meta["_wms_last_sync"] = utcnow().isoformat()

    async def _fail(self, order_id: int | None, exc: Exception, context: SyncContext) -> ReconciliationResult:
        message = exc.message if isinstance(exc, AppException) else str(exc)
        logger.error(
            "Order reconciliation failed",
            extra_data={"order_id": order_id, "trigger": context.trigger.value, "error": message},
            exc_info=not isinstance(exc, AppException),
        )
        await self.db.rollback()
        self.products.clear_cache()

        if order_id is not None:
            try:
                order = await self.db.get(Order, order_id)
                if order is not None:
                    await self.state.mark_as_failed(order, message, context.source)
                    await self.db.commit()
            except Exception as state_exc:
                await self.db.rollback()
                logger.error(
                    "Could not record failed order state",
                    extra_data={"order_id": order_id, "error": str(state_exc)},
                )
        return ReconciliationResult(success=False, order_id=order_id, error=message)

    # ------------------------------------------------------------------ outbound

    async def transform_to_remote(self, order: Order) -> dict:
        """
        Build the WMS order payload.

        Raises:
            ConfigurationError: no WMS customer id configured
            ValidationException: the order has no lines
        """
        customer_id = settings.WMS_CUSTOMER_ID
        if not customer_id:
            raise ConfigurationError("WMS_CUSTOMER_ID")
        if not order.lines:
            raise ValidationException("Order has no line items", field="lines")

        address = order.shipping_address or order.billing_address or {}
        if address.get("house_number"):
            street = address.get("street") or ""
            number, _, addition = str(address["house_number"]).partition(" ")
        else:
            street, number, addition = split_street(address.get("street"))

        addressed_to = " ".join(
            part for part in (address.get("first_name"), address.get("last_name")) if part
        ) or address.get("company") or ""

        delivery_date = (
            order.requested_delivery_date
            or _parse_date(order.meta.get("_requested_delivery_date"))
            or _parse_date(order.meta.get("_delivery_date"))
            or next_business_day(utcnow().date())
        )

        payload = {
            "external_reference": order.external_reference or str(order.id),
            "customer": customer_id,
            "requested_delivery_date": delivery_date.isoformat(),
            "shipping_method": await self.shipping.resolve(order.shipping_method_key),
            "note": order.customer_note or None,
            "shipping_address": {
                "addressed_to": addressed_to,
                "company": address.get("company") or None,
                "street": street,
                "street_number": number or None,
                "street_number_addition": addition or None,
                "zipcode": address.get("postcode") or None,
                "city": address.get("city") or None,
                "country": address.get("country") or None,
                "email_address": address.get("email") or (order.billing_address or {}).get("email") or None,
                "phone_number": address.get("phone") or None,
            },
            "order_lines": [
                {
                    "article_code": line.sku or f"WC_{line.product_id or line.id}",
                    "quantity": line.quantity,
                    "description": line.name or None,
                }
                for line in order.lines
            ],
        }
        return _strip_empty(payload)

    async def export_order(self, order: Order, context: SyncContext | None = None) -> ReconciliationResult:
        """Send a local order to the WMS (update when the remote id is known)"""
        context = context or SyncContext.for_export()
        order_id = order.id

        if await self.state.should_skip_processing(order, context):
            logger.info("Order export skipped", extra_data={"order_id": order_id})
            return ReconciliationResult(success=True, order_id=order_id, skipped=True)

        if self.wms_client is None:
            raise ConfigurationError("WMS_BASE_URL", "WMS client is not available")

        with self.bus.suppressed(self.feedback_listener, order_id=order_id, context=context):
            try:
                remote_id = await self.state.get_remote_order_id(order)
                payload = await self.transform_to_remote(order)
                if remote_id:
                    await self.wms_client.update_order(remote_id, payload)
                else:
                    response = await self.wms_client.create_order(payload)
                    remote_id = str(response.get("id")) if isinstance(response, dict) and response.get("id") else None
                    if not remote_id:
                        raise ReconciliationError("WMS did not return an order id", order_id=order_id)

                order.meta["_wms_order_id"] = remote_id
                order.meta["_wms_external_reference"] = payload["external_reference"]
                self.orders.add_note(order, f"Order exported to WMS (id: {remote_id})")
                await self.state.mark_as_exported(order, remote_id, context.source)
                await self.orders.save(order, context)
                await self.db.commit()
            except AppException as exc:
                return await self._fail(order_id, exc, context)

        logger.info("Order exported to WMS", extra_data={"order_id": order_id, "wms_order_id": remote_id})
        return ReconciliationResult(success=True, order_id=order_id, remote_order_id=remote_id)

    async def cancel_order_in_wms(self, order: Order) -> ReconciliationResult:
        remote_id = await self.state.get_remote_order_id(order)
        if not remote_id:
            raise NotFoundException("WMS order for local order", order.id, ErrorCode.ORDER_NOT_FOUND)
        if self.wms_client is None:
            raise ConfigurationError("WMS_BASE_URL", "WMS client is not available")

        await self.wms_client.cancel_order(remote_id)
        context = SyncContext.for_manual()
        with self.bus.suppressed(self.feedback_listener, order_id=order.id, context=context):
            await self.orders.set_status(
                order, OrderStatus.CANCELLED.value, "Order cancelled in WMS", context
            )
            await self.db.commit()
        logger.info("Order cancelled in WMS", extra_data={"order_id": order.id, "wms_order_id": remote_id})
        return ReconciliationResult(success=True, order_id=order.id, remote_order_id=remote_id)
