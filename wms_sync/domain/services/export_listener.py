"""
Outbound feedback listener - local order changes queue an export to the WMS.

This is the listener the coordinator mutes while it applies remote data.
"""
from wms_sync.core.logging import get_logger
from wms_sync.domain.events import OrderEvent, OrderEventBus, OrderEventType

logger = get_logger(__name__)

EXPORT_TRIGGERS = (OrderEventType.ORDER_CREATED, OrderEventType.ORDER_STATUS_CHANGED)


async def export_order_listener(event: OrderEvent) -> None:
    if event.order_id is None:
        return
    # imported lazily: the worker module imports the domain services
    from wms_sync.workers.tasks import export_order_to_wms

    export_order_to_wms.delay(event.order_id)
    logger.info(
        "Order export queued",
        extra_data={"order_id": event.order_id, "event": event.type.value},
    )


def register_export_listener(bus: OrderEventBus) -> None:
    for event_type in EXPORT_TRIGGERS:
        bus.subscribe(event_type, export_order_listener)
