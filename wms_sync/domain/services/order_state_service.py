"""
Order State Store - one sync-status record per order.

Every transition is an unconditional overwrite (last writer wins) that also
stamps last_processed_at and processing_source. The store flushes but never
commits; the caller owns the transaction.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.clock import utcnow
from wms_sync.core.config import settings
from wms_sync.core.logging import get_logger
from wms_sync.db.models.order import Order
from wms_sync.db.models.order_state import (
    TERMINAL_STATES,
    OrderStateRecord,
    OrderSyncState,
    ProcessingSource,
)
from wms_sync.domain.events import SyncContext
from wms_sync.domain.services.legacy_state_migration import adopt_legacy_state

logger = get_logger(__name__)

_KEEP = object()


class OrderStateStore:
    """Reads and transitions OrderStateRecord rows"""

    def __init__(self, db: AsyncSession, cooldown_seconds: int | None = None):
        self.db = db
        self.cooldown_seconds = (
            settings.ORDER_STATE_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        )

    async def get_state(self, order: Order) -> OrderStateRecord:
        """Load the record, creating it from legacy flags (or pending) on first access"""
        result = await self.db.execute(
            select(OrderStateRecord).where(OrderStateRecord.order_id == order.id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = adopt_legacy_state(order)
            self.db.add(record)
            await self.db.flush()
        return record

    async def should_skip_processing(self, order: Order, context: SyncContext | None = None) -> bool:
        """
        True when automatic processing must not touch the order: the state is
        terminal, or it was webhook-processed within the cooldown window.
        A forced (manual) context never skips.
        """
        if context is not None and context.force:
            return False

        record = await self.get_state(order)
        state = OrderSyncState(record.state)
        if state in TERMINAL_STATES:
            return True
        if state == OrderSyncState.WEBHOOK_PROCESSED and record.last_processed_at is not None:
            return utcnow() - record.last_processed_at < timedelta(seconds=self.cooldown_seconds)
        return False

    async def _write(
        self,
        order: Order,
        state: OrderSyncState,
        source: ProcessingSource,
        *,
        remote_order_id: Any = _KEEP,
        error_message: str | None = None,
    ) -> OrderStateRecord:
        record = await self.get_state(order)
        previous = record.state
        now = utcnow()

        record.state = state.value
        record.processing_source = source.value
        record.last_processed_at = now
        record.updated_at = now
        record.error_message = error_message
        if remote_order_id is not _KEEP and remote_order_id is not None:
            record.remote_order_id = str(remote_order_id)
        await self.db.flush()

        logger.info(
            "Order sync state changed",
            extra_data={
                "order_id": order.id,
                "from_state": previous,
                "to_state": state.value,
                "source": source.value,
            },
        )
        return record

    async def mark_as_processing(self, order: Order, source: ProcessingSource) -> OrderStateRecord:
        return await self._write(order, OrderSyncState.PROCESSING, source)

    async def mark_as_exported(
        self,
        order: Order,
        remote_order_id: str,
        source: ProcessingSource = ProcessingSource.EXPORT,
    ) -> OrderStateRecord:
        return await self._write(order, OrderSyncState.EXPORTED, source, remote_order_id=remote_order_id)

    async def mark_as_synced_from_remote(
        self, order: Order, remote_order_id: str | None
    ) -> OrderStateRecord:
        return await self._write(
            order,
            OrderSyncState.SYNCED_FROM_REMOTE,
            ProcessingSource.REMOTE_SYNC,
            remote_order_id=remote_order_id,
        )

    async def mark_as_webhook_processed(
        self, order: Order, remote_order_id: str | None = None
    ) -> OrderStateRecord:
        """Keeps the stored remote id when none is given"""
        return await self._write(
            order,
            OrderSyncState.WEBHOOK_PROCESSED,
            ProcessingSource.WEBHOOK,
            remote_order_id=remote_order_id if remote_order_id else _KEEP,
        )

    async def mark_as_failed(
        self, order: Order, error_message: str, source: ProcessingSource
    ) -> OrderStateRecord:
        return await self._write(order, OrderSyncState.FAILED, source, error_message=error_message)

    async def mark_as_skipped(
        self, order: Order, reason: str | None = None, source: ProcessingSource = ProcessingSource.MANUAL
    ) -> OrderStateRecord:
        return await self._write(order, OrderSyncState.SKIPPED, source, error_message=reason)

    async def reset_to_pending(
        self, order: Order, source: ProcessingSource = ProcessingSource.MANUAL
    ) -> OrderStateRecord:
        """Clears the error, keeps the remote id"""
        return await self._write(order, OrderSyncState.PENDING, source)

    async def get_remote_order_id(self, order: Order) -> str | None:
        record = await self.get_state(order)
        return record.remote_order_id

    async def get_order_state_summary(self, order: Order) -> dict:
        record = await self.get_state(order)
        return {
            "order_id": order.id,
            "state": record.state,
            "remote_order_id": record.remote_order_id,
            "last_processed_at": record.last_processed_at.isoformat() if record.last_processed_at else None,
            "processing_source": record.processing_source,
            "error_message": record.error_message,
            "should_skip": await self.should_skip_processing(order),
        }
