"""
Tests for the local order event bus (pub/sub + targeted muting) and SyncContext
"""
from unittest.mock import AsyncMock, patch

import pytest

from wms_sync.db.models.order_state import ProcessingSource
from wms_sync.domain.events import (
    OrderEvent,
    OrderEventBus,
    OrderEventType,
    SyncContext,
    SyncTrigger,
)
from wms_sync.domain.services.export_listener import (
    EXPORT_TRIGGERS,
    export_order_listener,
    register_export_listener,
)

STATUS_CHANGED = OrderEventType.ORDER_STATUS_CHANGED


def _event(order_id: int, context: SyncContext | None = None) -> OrderEvent:
    return OrderEvent(STATUS_CHANGED, order_id=order_id, old_status="pending", new_status="processing", context=context)


class TestSyncContext:

    @pytest.mark.unit
    def test_factories(self):
        webhook = SyncContext.for_webhook(7)
        batch = SyncContext.for_batch("sync_1")
        manual = SyncContext.for_manual()

        assert webhook.trigger == SyncTrigger.WEBHOOK
        assert webhook.source == ProcessingSource.WEBHOOK
        assert webhook.webhook_job_id == 7
        assert batch.source == ProcessingSource.REMOTE_SYNC
        assert batch.batch_id == "sync_1"
        assert manual.force is True
        assert not webhook.force and not batch.force

    @pytest.mark.unit
    def test_is_import(self):
        assert SyncContext.for_batch().is_import
        assert SyncContext.for_manual().is_import
        assert not SyncContext.for_webhook().is_import
        assert not SyncContext.for_export().is_import

    @pytest.mark.unit
    def test_contexts_are_not_shared(self):
        first = SyncContext.for_webhook()
        second = SyncContext.for_webhook()
        first.touched_order_ids.add(1)

        assert second.touched_order_ids == set()


class TestOrderEventBus:

    @pytest.mark.unit
    async def test_publish_delivers_to_subscribers(self, event_bus: OrderEventBus):
        listener = AsyncMock()
        event_bus.subscribe(STATUS_CHANGED, listener)
        event_bus.subscribe(STATUS_CHANGED, listener)

        delivered = await event_bus.publish(_event(1))

        assert delivered == 1
        listener.assert_awaited_once()
        assert listener.await_args.args[0].order_id == 1

    @pytest.mark.unit
    async def test_unsubscribe(self, event_bus: OrderEventBus):
        listener = AsyncMock()
        event_bus.subscribe(STATUS_CHANGED, listener)
        event_bus.unsubscribe(STATUS_CHANGED, listener)

        assert await event_bus.publish(_event(1)) == 0
        listener.assert_not_awaited()

    @pytest.mark.unit
    async def test_suppression_targets_one_listener_and_one_order(self, event_bus: OrderEventBus):
        feedback = AsyncMock()
        audit = AsyncMock()
        event_bus.subscribe(STATUS_CHANGED, feedback)
        event_bus.subscribe(STATUS_CHANGED, audit)

        with event_bus.suppressed(feedback, order_id=1):
            await event_bus.publish(_event(1))
            await event_bus.publish(_event(2))

        # שאר המאזינים ממשיכים לקבל, וגם המאזין המושתק מקבל על הזמנות אחרות
        assert audit.await_count == 2
        feedback.assert_awaited_once()
        assert feedback.await_args.args[0].order_id == 2

    @pytest.mark.unit
    async def test_suppression_by_context(self, event_bus: OrderEventBus):
        feedback = AsyncMock()
        event_bus.subscribe(STATUS_CHANGED, feedback)
        applying = SyncContext.for_webhook()
        unrelated = SyncContext.for_webhook()

        with event_bus.suppressed(feedback, context=applying):
            await event_bus.publish(_event(5, applying))
            await event_bus.publish(_event(5, unrelated))

        feedback.assert_awaited_once()
        assert feedback.await_args.args[0].context is unrelated

    @pytest.mark.unit
    async def test_nested_suppression_is_counted(self, event_bus: OrderEventBus):
        feedback = AsyncMock()
        event_bus.subscribe(STATUS_CHANGED, feedback)

        with event_bus.suppressed(feedback, order_id=1):
            with event_bus.suppressed(feedback, order_id=1):
                assert event_bus.active_suppressions() == 2
            await event_bus.publish(_event(1))
            assert event_bus.active_suppressions() == 1

        assert event_bus.active_suppressions() == 0
        await event_bus.publish(_event(1))
        feedback.assert_awaited_once()

    @pytest.mark.unit
    async def test_suppression_restored_on_exception(self, event_bus: OrderEventBus):
        feedback = AsyncMock()
        event_bus.subscribe(STATUS_CHANGED, feedback)

        with pytest.raises(RuntimeError):
            with event_bus.suppressed(feedback, order_id=1, context=SyncContext.for_batch()):
                raise RuntimeError("apply failed")

        assert event_bus.active_suppressions() == 0
        await event_bus.publish(_event(1))
        feedback.assert_awaited_once()

    @pytest.mark.unit
    async def test_failing_listener_does_not_propagate(self, event_bus: OrderEventBus):
        broken = AsyncMock(side_effect=RuntimeError("listener bug"))
        healthy = AsyncMock()
        event_bus.subscribe(STATUS_CHANGED, broken)
        event_bus.subscribe(STATUS_CHANGED, healthy)

        delivered = await event_bus.publish(_event(3))

        assert delivered == 1
        healthy.assert_awaited_once()


class TestExportListener:

    @pytest.mark.unit
    def test_register_subscribes_export_triggers(self, event_bus: OrderEventBus):
        register_export_listener(event_bus)
        register_export_listener(event_bus)

        for event_type in EXPORT_TRIGGERS:
            assert event_bus.listeners(event_type) == [export_order_listener]
        assert event_bus.listeners(OrderEventType.ORDER_UPDATED) == []

    @pytest.mark.unit
    async def test_listener_queues_export_task(self):
        with patch("wms_sync.workers.tasks.export_order_to_wms.delay") as mock_delay:
            await export_order_listener(_event(42))
            await export_order_listener(OrderEvent(STATUS_CHANGED, order_id=None))

        mock_delay.assert_called_once_with(42)
