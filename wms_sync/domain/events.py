"""
Local order change notifications (pub/sub) and the request-scoped SyncContext.

Local mutations publish OrderEvents on an OrderEventBus. The outbound export
listener subscribes to them; while the coordinator applies a remote payload it
mutes *only that listener* for the order (and for every event published under
its SyncContext) with ``bus.suppressed(...)``, so the update cannot bounce back
to the WMS. Muting is reference counted and undone in ``finally``.
"""
from __future__ import annotations

import enum
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Hashable, Iterator

from wms_sync.core.logging import get_correlation_id, get_logger
from wms_sync.db.models.order_state import ProcessingSource

logger = get_logger(__name__)


class SyncTrigger(str, enum.Enum):
    WEBHOOK = "webhook"
    BATCH = "batch"
    MANUAL = "manual"
    EXPORT = "export"


@dataclass
class SyncContext:
    """
    Per-invocation sync context, threaded through the coordinator call chain.

    One is created per webhook job, batch run or manual request and never
    shared between invocations.
    """

    trigger: SyncTrigger
    source: ProcessingSource
    correlation_id: str = field(default_factory=get_correlation_id)
    webhook_job_id: int | None = None
    batch_id: str | None = None
    # manual syncs ignore the skip rules of the order state store
    force: bool = False
    touched_order_ids: set[int] = field(default_factory=set)

    @classmethod
    def for_webhook(cls, job_id: int | None = None) -> "SyncContext":
        return cls(trigger=SyncTrigger.WEBHOOK, source=ProcessingSource.WEBHOOK, webhook_job_id=job_id)

    @classmethod
    def for_batch(cls, batch_id: str | None = None) -> "SyncContext":
        return cls(trigger=SyncTrigger.BATCH, source=ProcessingSource.REMOTE_SYNC, batch_id=batch_id)

    @classmethod
    def for_manual(cls) -> "SyncContext":
        return cls(trigger=SyncTrigger.MANUAL, source=ProcessingSource.MANUAL, force=True)

    @classmethod
    def for_export(cls) -> "SyncContext":
        return cls(trigger=SyncTrigger.EXPORT, source=ProcessingSource.EXPORT)

    @property
    def is_import(self) -> bool:
        """Batch or manual pulls (as opposed to webhook pushes)"""
        return self.trigger in (SyncTrigger.BATCH, SyncTrigger.MANUAL)


class OrderEventType(str, enum.Enum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_STATUS_CHANGED = "order.status_changed"
    PRODUCT_UPDATED = "product.updated"


@dataclass(frozen=True)
class OrderEvent:
    type: OrderEventType
    order_id: int | None = None
    product_id: int | None = None
    old_status: str | None = None
    new_status: str | None = None
    context: SyncContext | None = field(default=None, compare=False)


Listener = Callable[[OrderEvent], Awaitable[None]]


class OrderEventBus:
    """In-process pub/sub for local order and product changes"""

    def __init__(self) -> None:
        self._listeners: dict[OrderEventType, list[Listener]] = defaultdict(list)
        self._mutes: dict[tuple[Listener, Hashable], int] = defaultdict(int)

    def subscribe(self, event_type: OrderEventType, listener: Listener) -> None:
        """Register a listener; subscribing the same listener twice is a no-op"""
        if listener not in self._listeners[event_type]:
            self._listeners[event_type].append(listener)

    def unsubscribe(self, event_type: OrderEventType, listener: Listener) -> None:
        if listener in self._listeners[event_type]:
            self._listeners[event_type].remove(listener)

    def listeners(self, event_type: OrderEventType) -> list[Listener]:
        return list(self._listeners[event_type])

    @contextmanager
    def suppressed(
        self,
        listener: Listener,
        *,
        order_id: int | None = None,
        context: SyncContext | None = None,
    ) -> Iterator[None]:
        """
        Mute one listener for events about ``order_id`` and for every event
        published under ``context``. Nested scopes stack.
        """
        scopes: list[Hashable] = []
        if order_id is not None:
            scopes.append(("order", order_id))
        if context is not None:
            scopes.append(("context", id(context)))

        for scope in scopes:
            self._mutes[(listener, scope)] += 1
        try:
            yield
        finally:
            for scope in scopes:
                key = (listener, scope)
                self._mutes[key] -= 1
                if self._mutes[key] <= 0:
                    del self._mutes[key]

    def is_suppressed(self, listener: Listener, event: OrderEvent) -> bool:
        if event.order_id is not None and self._mutes.get((listener, ("order", event.order_id))):
            return True
        if event.context is not None and self._mutes.get((listener, ("context", id(event.context)))):
            return True
        return False

    def active_suppressions(self) -> int:
        return sum(self._mutes.values())

    async def publish(self, event: OrderEvent) -> int:
        """Deliver to every non-muted listener. Returns the number notified."""
        delivered = 0
        for listener in self.listeners(event.type):
            if self.is_suppressed(listener, event):
                logger.debug(
                    "Suppressed local notification",
                    extra_data={"event": event.type.value, "order_id": event.order_id},
                )
                continue
            try:
                await listener(event)
                delivered += 1
            except Exception as exc:
                # the local mutation already happened; listener errors are logged only
                logger.error(
                    "Order event listener failed",
                    extra_data={"event": event.type.value, "order_id": event.order_id, "error": str(exc)},
                    exc_info=True,
                )
        return delivered


_default_bus = OrderEventBus()


def get_event_bus() -> OrderEventBus:
    """Process-wide bus used by the API app and the Celery worker"""
    return _default_bus
