"""
Celery Tasks for the WMS sync

- webhook queue draining, stuck sweep and retention
- hourly cron order sync
- "sync everything" batches, one job per task run with a continuation
- outbound export of a single order
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from wms_sync.workers.celery_app import celery_app
from wms_sync.db.database import get_task_session
from wms_sync.db.models.order import Order
from wms_sync.domain.services.order_sync_service import OrderSyncCoordinator
from wms_sync.domain.services.sync_jobs_service import SyncJobsService
from wms_sync.domain.services.webhook_queue_service import WebhookQueueService
from wms_sync.domain.services.wms import get_wms_client
from wms_sync.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop - ה-client מחובר ל-loop הזה
            from wms_sync.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


# ─── Webhook queue ──────────────────────────────────────────────────────────

@celery_app.task(name="wms_sync.workers.tasks.process_webhook_queue")
def process_webhook_queue(batch_size: int | None = None):
    """Sweep stuck jobs, then process one batch of the queue"""

    async def _process():
        async with get_task_session() as db:
            results = await WebhookQueueService(db).process_queued_webhooks_with_timeout(batch_size)
            if results["processed"] or results["reset_stuck"]:
                logger.info(
                    "Webhook queue batch processed",
                    extra_data={key: value for key, value in results.items() if key != "errors"},
                )
            return results

    return run_async(_process())


@celery_app.task(name="wms_sync.workers.tasks.reset_stuck_webhooks")
def reset_stuck_webhooks():
    async def _reset():
        async with get_task_session() as db:
            return {"reset": await WebhookQueueService(db).reset_stuck_webhooks()}

    return run_async(_reset())


@celery_app.task(name="wms_sync.workers.tasks.cleanup_webhook_jobs")
def cleanup_webhook_jobs(days: int | None = None):
    """Archive exhausted failures, then delete processed / archived rows past retention"""

    async def _cleanup():
        async with get_task_session() as db:
            queue = WebhookQueueService(db)
            archived = await queue.cleanup_failed_webhooks()
            deleted = await queue.cleanup(days)
            return {"archived": archived, "deleted": deleted}

    return run_async(_cleanup())


# ─── Orchestration ──────────────────────────────────────────────────────────

@celery_app.task(name="wms_sync.workers.tasks.cron_order_sync")
def cron_order_sync(limit: int | None = None):
    """Pull recent WMS orders; automatic skip rules apply"""

    async def _sync():
        async with get_task_session() as db:
            service = SyncJobsService(db, get_wms_client())
            return await service.process_cron_order_sync({"limit": limit} if limit else None)

    return run_async(_sync())


@celery_app.task(name="wms_sync.workers.tasks.process_sync_jobs")
def process_sync_jobs():
    """
    Run one pending sync job and schedule the next run while jobs remain.
    Each run handles at most SYNC_JOB_BATCH_LIMIT items.
    """

    async def _process():
        async with get_task_session() as db:
            return await SyncJobsService(db, get_wms_client()).process_next_job()

    results = run_async(_process())
    if results.get("has_more"):
        process_sync_jobs.delay()
    return results


@celery_app.task(name="wms_sync.workers.tasks.cleanup_sync_jobs")
def cleanup_sync_jobs(days: int | None = None):
    async def _cleanup():
        async with get_task_session() as db:
            deleted = await SyncJobsService(db, get_wms_client()).cleanup_old_jobs(days)
            return {"deleted": deleted}

    return run_async(_cleanup())


# ─── Outbound export ────────────────────────────────────────────────────────

@celery_app.task(name="wms_sync.workers.tasks.export_order_to_wms")
def export_order_to_wms(order_id: int):
    """Send one local order to the WMS (queued by the order event listener)"""

    async def _export():
        async with get_task_session() as db:
            order = await db.get(Order, order_id)
            if order is None:
                logger.warning("Export requested for missing order", extra_data={"order_id": order_id})
                return {"success": False, "order_id": order_id, "error": "Order not found"}

            result = await OrderSyncCoordinator(db, get_wms_client()).export_order(order)
            return result.to_dict()

    return run_async(_export())
