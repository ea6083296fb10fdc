"""
Order Service - local order mutations.

All writes to the local order aggregate go through here so that every change
publishes the matching OrderEvent on the bus.
"""
from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.logging import get_logger
from wms_sync.db.models.order import Order, OrderLine, OrderNote
from wms_sync.db.models.product import Product
from wms_sync.domain.events import OrderEvent, OrderEventBus, OrderEventType, SyncContext, get_event_bus

logger = get_logger(__name__)


class OrderService:
    """Create, update and annotate local orders"""

    def __init__(self, db: AsyncSession, bus: OrderEventBus | None = None):
        self.db = db
        self.bus = bus or get_event_bus()

    async def get_order(self, order_id: int) -> Order | None:
        return await self.db.get(Order, order_id)

    async def find_by_external_reference(self, external_reference: str) -> Order | None:
        if not external_reference:
            return None
        result = await self.db.execute(
            select(Order).where(Order.external_reference == str(external_reference))
        )
        return result.scalar_one_or_none()

    async def create_order(self, order: Order, context: SyncContext | None = None) -> Order:
        # assigned collections stay loaded after the flush, so later reads never lazy-load
        order.lines = list(order.lines)
        order.notes = list(order.notes)
        self.db.add(order)
        await self.db.flush()
        await self.bus.publish(
            OrderEvent(OrderEventType.ORDER_CREATED, order_id=order.id, new_status=order.status, context=context)
        )
        return order

    async def set_status(
        self,
        order: Order,
        new_status: str,
        note: str | None = None,
        context: SyncContext | None = None,
    ) -> bool:
        """Change the status; side effects fire only when the value differs"""
        old_status = order.status
        if old_status == new_status:
            return False

        order.status = new_status
        if note:
            self.add_note(order, note)
        await self.db.flush()
        await self.bus.publish(
            OrderEvent(
                OrderEventType.ORDER_STATUS_CHANGED,
                order_id=order.id,
                old_status=old_status,
                new_status=new_status,
                context=context,
            )
        )
        return True

    def add_note(self, order: Order, text: str) -> OrderNote:
        note = OrderNote(note=text)
        order.notes.append(note)
        return note

    def add_line(
        self,
        order: Order,
        product: Product,
        quantity: int,
        name: str | None = None,
        unit_price: Decimal | None = None,
    ) -> OrderLine:
        price = Decimal(unit_price if unit_price is not None else (product.price or 0))
        line = OrderLine(
            product_id=product.id,
            product=product,
            sku=product.sku,
            name=name or product.name,
            quantity=quantity,
            unit_price=price,
            total=price * quantity,
        )
        order.lines.append(line)
        return line

    def set_line_quantity(self, line: OrderLine, quantity: int) -> bool:
        if line.quantity == quantity:
            return False
        line.quantity = quantity
        line.total = Decimal(line.unit_price or 0) * quantity
        return True

    def recalculate_totals(self, order: Order) -> Decimal:
        total = sum((Decimal(line.total or 0) for line in order.lines), Decimal("0"))
        order.total = total
        return total

    async def save(self, order: Order, context: SyncContext | None = None) -> Order:
        await self.db.flush()
        await self.bus.publish(
            OrderEvent(OrderEventType.ORDER_UPDATED, order_id=order.id, new_status=order.status, context=context)
        )
        return order
