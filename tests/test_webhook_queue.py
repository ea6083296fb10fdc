"""
Tests for the persistent webhook queue - dedup, priority ordering,
prerequisite gating, retries with backoff and the maintenance sweeps.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.clock import utcnow
from wms_sync.core.exceptions import ErrorCode, NotFoundException
from wms_sync.db.models.webhook_job import WebhookJob, WebhookJobStatus
from wms_sync.domain.services.webhook_queue_service import (
    PENDING_SCAN_FACTOR,
    STUCK_RESET_NOTE,
    WebhookQueueService,
    _calculate_backoff_seconds,
)


@pytest.fixture
def router() -> AsyncMock:
    mock = AsyncMock()
    mock.route.return_value = {"status": "success"}
    return mock


@pytest.fixture
def queue(db_session: AsyncSession, router) -> WebhookQueueService:
    return WebhookQueueService(db_session, router=router)


def routed_events(router: AsyncMock) -> list[str]:
    return [f"{call.args[0]}.{call.args[1]}" for call in router.route.await_args_list]


class TestEnqueue:

    @pytest.mark.unit
    async def test_enqueue_sets_priority_and_prerequisite(self, queue: WebhookQueueService):
        job, created = await queue.enqueue("wh-1", "order", "updated", {"id": "o1"}, entity_id="o1")

        assert created is True
        assert job.status == WebhookJobStatus.PENDING
        assert job.priority == 2
        assert job.requires_prerequisite is True
        assert job.prerequisite_event == "order.created"
        assert job.attempts == 0

    @pytest.mark.unit
    async def test_duplicate_webhook_id_is_a_noop(self, queue: WebhookQueueService, db_session: AsyncSession):
        first, _ = await queue.enqueue("wh-1", "order", "created", {"id": "o1"}, entity_id="o1")
        second, created = await queue.enqueue("wh-1", "order", "created", {"id": "o1"}, entity_id="o1")

        assert created is False
        assert second.id == first.id
        count = await db_session.execute(select(func.count(WebhookJob.id)))
        assert count.scalar_one() == 1

    @pytest.mark.unit
    async def test_unknown_event_gets_lowest_priority(self, queue: WebhookQueueService):
        job, _ = await queue.enqueue("wh-x", "invoice", "created", {})

        assert job.priority == 999
        assert job.requires_prerequisite is False


class TestOrdering:

    @pytest.mark.unit
    async def test_lower_priority_runs_first(self, queue: WebhookQueueService, router):
        await queue.enqueue("wh-1", "article", "updated", {}, entity_id="a1")
        await queue.enqueue("wh-2", "stock", "updated", {}, entity_id="v1")
        await queue.enqueue("wh-3", "order", "created", {}, entity_id="o1")

        results = await queue.process_queued_webhooks()

        assert results["successful"] == 3
        assert routed_events(router) == ["order.created", "stock.updated", "article.updated"]

    @pytest.mark.unit
    async def test_dependent_event_waits_for_prerequisite(self, queue: WebhookQueueService, router):
        # updated מגיע לפני created - עדיין חייב לרוץ אחריו
        await queue.enqueue("wh-2", "order", "updated", {"id": "o1"}, entity_id="o1")
        await queue.enqueue("wh-1", "order", "created", {"id": "o1"}, entity_id="o1")

        first = await queue.process_queued_webhooks()
        second = await queue.process_queued_webhooks()

        assert first["successful"] == 1
        assert first["skipped"] == 1
        assert second["successful"] == 1
        assert routed_events(router) == ["order.created", "order.updated"]

    @pytest.mark.unit
    async def test_missing_prerequisite_keeps_job_pending(self, queue: WebhookQueueService, router):
        job, _ = await queue.enqueue("wh-1", "order", "shipped", {"id": "o9"}, entity_id="o9")

        results = await queue.process_queued_webhooks()

        assert results["processed"] == 0
        assert results["skipped"] == 1
        router.route.assert_not_awaited()
        await queue.db.refresh(job)
        assert job.status == WebhookJobStatus.PENDING

    @pytest.mark.unit
    async def test_order_updated_bypasses_when_order_exists_locally(
        self, queue: WebhookQueueService, router, order_factory
    ):
        await order_factory(external_reference="1001")
        await queue.enqueue(
            "wh-1", "order", "updated", {"id": "o2"}, entity_id="o2", external_reference="1001"
        )

        results = await queue.process_queued_webhooks()

        assert results["successful"] == 1
        assert routed_events(router) == ["order.updated"]

    @pytest.mark.unit
    async def test_bypass_reads_reference_from_payload(self, queue: WebhookQueueService, router, order_factory):
        await order_factory(external_reference="1002")
        await queue.enqueue("wh-1", "order", "updated", {"id": "o3", "external_reference": "1002"}, entity_id="o3")

        results = await queue.process_queued_webhooks()

        assert results["successful"] == 1

    @pytest.mark.unit
    async def test_shipment_events_never_bypass(self, queue: WebhookQueueService, router, order_factory):
        await order_factory(external_reference="1001")
        await queue.enqueue(
            "wh-1", "shipment", "updated", {"id": "s1"}, entity_id="s1", external_reference="1001"
        )

        results = await queue.process_queued_webhooks()

        assert results["skipped"] == 1
        router.route.assert_not_awaited()

    @pytest.mark.unit
    async def test_equal_priority_runs_oldest_first(
        self, queue: WebhookQueueService, router, db_session: AsyncSession
    ):
        newer, _ = await queue.enqueue("wh-1", "article", "updated", {}, entity_id="a-new")
        older, _ = await queue.enqueue("wh-2", "article", "updated", {}, entity_id="a-old")
        newer.created_at = utcnow()
        older.created_at = utcnow() - timedelta(minutes=5)
        await db_session.commit()

        results = await queue.process_queued_webhooks()

        assert results["successful"] == 2
        assert [call.args[3] for call in router.route.await_args_list] == ["a-old", "a-new"]

    @pytest.mark.unit
    async def test_one_job_per_entity_per_pass(self, queue: WebhookQueueService, router):
        """שני jobs לאותה ישות - רק אחד נלקח בכל מעבר"""
        await queue.enqueue("wh-1", "stock", "updated", {"stock": 1}, entity_id="v1")
        await queue.enqueue("wh-2", "stock", "updated", {"stock": 2}, entity_id="v1")

        first = await queue.process_queued_webhooks()

        assert (first["processed"], first["skipped"]) == (1, 1)
        assert router.route.await_args.args[2] == {"stock": 1}

        second = await queue.process_queued_webhooks()

        assert (second["processed"], second["skipped"]) == (1, 0)
        assert router.route.await_args.args[2] == {"stock": 2}

    @pytest.mark.unit
    async def test_blocked_jobs_do_not_fill_the_batch(self, queue: WebhookQueueService, router):
        for n in range(3):
            await queue.enqueue(f"wh-{n}", "order", "shipped", {}, entity_id=f"o{n}")
        await queue.enqueue("wh-art", "article", "updated", {}, entity_id="a1")

        results = await queue.process_queued_webhooks(batch_size=2)

        assert results["processed"] == 1
        assert results["skipped"] == 3
        assert routed_events(router) == ["article.updated"]

    @pytest.mark.unit
    async def test_scan_is_bounded(self, queue: WebhookQueueService, router):
        for n in range(PENDING_SCAN_FACTOR):
            await queue.enqueue(f"wh-{n}", "order", "shipped", {}, entity_id=f"o{n}")
        await queue.enqueue("wh-art", "article", "updated", {}, entity_id="a1")

        results = await queue.process_queued_webhooks(batch_size=1)

        assert results["processed"] == 0
        assert results["skipped"] == PENDING_SCAN_FACTOR
        router.route.assert_not_awaited()

    @pytest.mark.unit
    async def test_router_receives_webhook_context(self, queue: WebhookQueueService, router):
        job, _ = await queue.enqueue("wh-1", "order", "created", {"id": "o1"}, entity_id="o1")

        await queue.process_queued_webhooks()

        group, action, payload, entity_id, context = router.route.await_args.args
        assert (group, action, entity_id) == ("order", "created", "o1")
        assert payload == {"id": "o1"}
        assert context.webhook_job_id == job.id
        assert context.is_import is False


class TestFailures:

    @pytest.mark.unit
    async def test_failure_schedules_backoff(self, queue: WebhookQueueService, router):
        router.route.side_effect = RuntimeError("boom")
        job, _ = await queue.enqueue("wh-1", "order", "created", {}, entity_id="o1")

        results = await queue.process_queued_webhooks()

        assert results["failed"] == 1
        assert results["errors"] == [{"job_id": job.id, "error": "boom"}]
        await queue.db.refresh(job)
        assert job.status == WebhookJobStatus.PENDING
        assert job.attempts == 1
        assert job.error_message == "boom"
        assert (job.next_attempt_at - job.updated_at).total_seconds() == 30

        # לא זמין שוב לפני שה-backoff עבר
        again = await queue.process_queued_webhooks()
        assert again["processed"] == 0

    @pytest.mark.unit
    async def test_job_fails_at_attempt_cap(self, queue: WebhookQueueService):
        job, _ = await queue.enqueue("wh-1", "order", "created", {}, entity_id="o1")

        for _ in range(queue.max_attempts):
            job = await queue.handle_failure(job.id, "still broken")

        assert job.status == WebhookJobStatus.FAILED
        assert job.attempts == 3
        assert job.next_attempt_at is None

    @pytest.mark.unit
    async def test_invalid_json_fails_the_job(self, queue: WebhookQueueService, router):
        job, _ = await queue.enqueue("wh-1", "order", "created", "{not json", entity_id="o1")

        results = await queue.process_queued_webhooks()

        assert results["failed"] == 1
        assert results["errors"][0]["error"].startswith("Invalid JSON payload")
        router.route.assert_not_awaited()

    @pytest.mark.unit
    async def test_claim_is_exclusive(self, queue: WebhookQueueService):
        job, _ = await queue.enqueue("wh-1", "order", "created", {}, entity_id="o1")

        assert await queue.claim(job.id) is True
        assert await queue.claim(job.id) is False


class TestMaintenance:

    async def _age(self, db: AsyncSession, job: WebhookJob, **changes) -> None:
        for key, value in changes.items():
            setattr(job, key, value)
        await db.commit()

    @pytest.mark.unit
    async def test_stuck_jobs_are_reset(self, queue: WebhookQueueService, db_session: AsyncSession):
        job, _ = await queue.enqueue("wh-1", "order", "created", {}, entity_id="o1")
        await self._age(
            db_session, job,
            status=WebhookJobStatus.PROCESSING,
            processing_started_at=utcnow() - timedelta(minutes=10),
        )

        health = await queue.get_queue_health_status()
        assert health["health_status"] == "unhealthy"
        assert health["stuck_count"] == 1

        assert await queue.reset_stuck_webhooks() == 1

        await db_session.refresh(job)
        assert job.status == WebhookJobStatus.PENDING
        assert job.attempts == 1
        assert job.error_message == STUCK_RESET_NOTE
        assert (await queue.get_queue_health_status())["health_status"] == "healthy"

    @pytest.mark.unit
    async def test_timeout_pass_reports_reset_count(self, queue: WebhookQueueService):
        await queue.enqueue("wh-1", "order", "created", {}, entity_id="o1")

        results = await queue.process_queued_webhooks_with_timeout()

        assert results["reset_stuck"] == 0
        assert results["successful"] == 1

    @pytest.mark.unit
    async def test_cleanup_removes_old_processed_jobs(self, queue: WebhookQueueService, db_session: AsyncSession):
        old, _ = await queue.enqueue("wh-old", "order", "created", {}, entity_id="o1")
        recent, _ = await queue.enqueue("wh-new", "order", "created", {}, entity_id="o2")
        await self._age(db_session, old, status=WebhookJobStatus.PROCESSED, updated_at=utcnow() - timedelta(days=10))
        await self._age(db_session, recent, status=WebhookJobStatus.PROCESSED)

        assert await queue.cleanup(7) == 1
        assert await queue.get_by_webhook_id("wh-old") is None
        assert await queue.get_by_webhook_id("wh-new") is not None

    @pytest.mark.unit
    async def test_failed_jobs_are_archived_after_retention(
        self, queue: WebhookQueueService, db_session: AsyncSession
    ):
        exhausted, _ = await queue.enqueue("wh-1", "order", "created", {}, entity_id="o1")
        retrying, _ = await queue.enqueue("wh-2", "order", "created", {}, entity_id="o2")
        old = utcnow() - timedelta(days=8)
        await self._age(db_session, exhausted, status=WebhookJobStatus.FAILED, attempts=3, updated_at=old)
        await self._age(db_session, retrying, status=WebhookJobStatus.FAILED, attempts=1, updated_at=old)

        assert await queue.cleanup_failed_webhooks() == 1

        await db_session.refresh(exhausted)
        assert exhausted.status == WebhookJobStatus.ARCHIVED

    @pytest.mark.unit
    async def test_retry_failed(self, queue: WebhookQueueService, db_session: AsyncSession):
        job, _ = await queue.enqueue("wh-1", "order", "created", {}, entity_id="o1")
        await self._age(db_session, job, status=WebhookJobStatus.FAILED, attempts=3, error_message="x")

        assert await queue.retry_failed_webhooks() == 1

        await db_session.refresh(job)
        assert job.status == WebhookJobStatus.PENDING
        assert job.attempts == 0
        assert job.error_message is None

    @pytest.mark.unit
    async def test_force_process_ignores_status(self, queue: WebhookQueueService, router, db_session: AsyncSession):
        job, _ = await queue.enqueue("wh-1", "order", "shipped", {}, entity_id="o1")
        await self._age(db_session, job, status=WebhookJobStatus.FAILED, attempts=3)

        result = await queue.force_process_webhook(job.id)

        assert result == {"success": True, "job_id": job.id, "error": None}
        router.route.assert_awaited_once()
        await db_session.refresh(job)
        assert job.status == WebhookJobStatus.PROCESSED

    @pytest.mark.unit
    async def test_force_process_unknown_job(self, queue: WebhookQueueService):
        with pytest.raises(NotFoundException) as exc_info:
            await queue.force_process_webhook(9999)

        assert exc_info.value.error_code == ErrorCode.WEBHOOK_JOB_NOT_FOUND

    @pytest.mark.unit
    async def test_queue_stats(self, queue: WebhookQueueService):
        await queue.enqueue("wh-1", "order", "created", {}, entity_id="o1")
        await queue.enqueue("wh-2", "stock", "updated", {}, entity_id="v1")

        stats = await queue.get_queue_stats()

        assert stats["by_status"]["pending"] == 2
        assert stats["by_status"]["failed"] == 0
        assert stats["total"] == 2
        assert stats["oldest_pending"] is not None
        assert len(await queue.get_recent_activity()) == 2


class TestBackoff:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "retry_count, expected",
        [(0, 30), (1, 60), (4, 480), (5, 900), (50, 900), (-1, 30)],
    )
    def test_doubles_up_to_cap(self, retry_count, expected):
        assert _calculate_backoff_seconds(retry_count, base_seconds=30, max_backoff_seconds=900) == expected

    @pytest.mark.unit
    def test_zero_base(self):
        assert _calculate_backoff_seconds(3, base_seconds=0, max_backoff_seconds=900) == 0
