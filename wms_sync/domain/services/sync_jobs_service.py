"""
Sync Jobs Service - batch orchestration against the WMS.

"Sync everything" queues one SyncJob per job type under a batch id; each
process_next_job() call runs a single job that handles at most
SYNC_JOB_BATCH_LIMIT items. The Celery task re-schedules itself while pending
jobs remain, so a single invocation never loops unbounded.

Every entry point returns {"processed", "successful", "failed", "errors", ...}.
"""
from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.clock import utcnow
from wms_sync.core.config import settings
from wms_sync.core.exceptions import (
    AppException,
    ConfigurationError,
    ErrorCode,
    NotFoundException,
    WmsApiError,
)
from wms_sync.core.logging import get_logger, log_async_operation, set_sync_batch_id
from wms_sync.db.models.order import Order
from wms_sync.db.models.sync_job import SyncJob, SyncJobStatus
from wms_sync.domain.event_tables import SUPPORTED_ACTIONS
from wms_sync.domain.events import SyncContext
from wms_sync.domain.services.order_sync_service import OrderSyncCoordinator, ReconciliationResult
from wms_sync.domain.services.webhook_router import (
    WebhookRouter,
    inbound_skus,
    stock_quantity,
    stock_status_for,
)
from wms_sync.domain.services.wms import WmsClient

logger = get_logger(__name__)

SYNC_JOB_TYPES: dict[str, dict[str, Any]] = {
    "connection_test": {"title": "Test WMS connection", "priority": 1},
    "webhook_registration": {"title": "Register webhooks", "priority": 2},
    "shipping_methods": {"title": "Sync shipping methods", "priority": 3},
    "location_types": {"title": "Sync location types", "priority": 4},
    "articles_import": {"title": "Import articles", "priority": 5},
    "stock_sync": {"title": "Sync stock levels", "priority": 6},
    "customers_import": {"title": "Import customers", "priority": 7},
    "orders_sync": {"title": "Sync orders", "priority": 8},
    "inbounds_sync": {"title": "Sync inbounds", "priority": 9},
    "shipments_sync": {"title": "Sync shipments", "priority": 10},
}


def generate_batch_id() -> str:
    """sync_YYYYmmdd_HHMMSS_xxxxxxxx"""
    return f"sync_{utcnow().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


def _empty_results() -> dict[str, Any]:
    return {"processed": 0, "successful": 0, "failed": 0, "errors": []}


def _error_text(exc: Exception) -> str:
    return exc.message if isinstance(exc, AppException) else str(exc)


class SyncJobsService:
    """Batch sync entry points for schedulers and admins"""

    def __init__(
        self,
        db: AsyncSession,
        wms_client: WmsClient,
        coordinator: OrderSyncCoordinator | None = None,
    ):
        self.db = db
        self.wms_client = wms_client
        self.coordinator = coordinator or OrderSyncCoordinator(db, wms_client)
        self.limit = settings.SYNC_JOB_BATCH_LIMIT
        self._executors: dict[str, Callable[[str], Awaitable[dict]]] = {
            "connection_test": self._connection_test,
            "webhook_registration": self._webhook_registration,
            "shipping_methods": self._shipping_methods,
            "location_types": self._location_types,
            "articles_import": self._articles_import,
            "stock_sync": self._stock_sync,
            "customers_import": self._customers_import,
            "orders_sync": self._orders_sync,
            "inbounds_sync": self._inbounds_sync,
            "shipments_sync": self._shipments_sync,
        }

    # ------------------------------------------------------------------ batches

    async def start_sync_everything(self) -> str:
        batch_id = generate_batch_id()
        for job_type, config in SYNC_JOB_TYPES.items():
            self.db.add(
                SyncJob(
                    batch_id=batch_id,
                    job_type=job_type,
                    priority=config["priority"],
                    status=SyncJobStatus.PENDING,
                )
            )
        await self.db.commit()
        logger.info("Sync everything queued", extra_data={"batch_id": batch_id, "jobs": len(SYNC_JOB_TYPES)})
        return batch_id

    async def get_sync_progress(self, batch_id: str) -> dict:
        result = await self.db.execute(
            select(SyncJob).where(SyncJob.batch_id == batch_id).order_by(SyncJob.priority.asc())
        )
        jobs = list(result.scalars().all())
        if not jobs:
            raise NotFoundException("Sync batch", batch_id, ErrorCode.SYNC_BATCH_NOT_FOUND)

        progress: dict[str, Any] = {
            "batch_id": batch_id,
            "total_jobs": len(jobs),
            "completed_jobs": 0,
            "failed_jobs": 0,
            "current_job": None,
            "jobs": [],
        }
        started = [job.started_at for job in jobs if job.started_at]
        completed = [job.completed_at for job in jobs if job.completed_at]

        for job in jobs:
            entry = {
                "type": job.job_type,
                "title": SYNC_JOB_TYPES.get(job.job_type, {}).get("title", job.job_type),
                "status": job.status.value,
                "result": job.result_data,
                "error": job.error_message,
                "started_at": job.started_at.isoformat() if job.started_at else None,
                "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            }
            progress["jobs"].append(entry)
            if job.status == SyncJobStatus.COMPLETED:
                progress["completed_jobs"] += 1
            elif job.status == SyncJobStatus.FAILED:
                progress["failed_jobs"] += 1
            elif job.status == SyncJobStatus.PROCESSING:
                progress["current_job"] = entry

        finished = progress["completed_jobs"] + progress["failed_jobs"]
        if finished >= len(jobs):
            progress["overall_status"] = "completed_with_errors" if progress["failed_jobs"] else "completed"
        elif progress["current_job"] is not None:
            progress["overall_status"] = "running"
        else:
            progress["overall_status"] = "pending"
        progress["percentage"] = round(finished / len(jobs) * 100)
        progress["started_at"] = min(started).isoformat() if started else None
        progress["completed_at"] = max(completed).isoformat() if completed else None
        return progress

    async def has_pending_jobs(self) -> bool:
        result = await self.db.execute(
            select(func.count(SyncJob.id)).where(SyncJob.status == SyncJobStatus.PENDING)
        )
        return result.scalar_one() > 0

    async def process_next_job(self) -> dict:
        """Run the next pending job (priority, then age)"""
        results = _empty_results()
        result = await self.db.execute(
            select(SyncJob)
            .where(SyncJob.status == SyncJobStatus.PENDING)
            .order_by(SyncJob.priority.asc(), SyncJob.created_at.asc(), SyncJob.id.asc())
            .limit(1)
        )
        job = result.scalar_one_or_none()
        if job is None:
            results["has_more"] = False
            return results

        job_id, job_type, batch_id = job.id, job.job_type, job.batch_id
        claimed = await self.db.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == SyncJobStatus.PENDING)
            .values(status=SyncJobStatus.PROCESSING, started_at=utcnow(), updated_at=utcnow())
        )
        await self.db.commit()
        if claimed.rowcount != 1:
            results["has_more"] = await self.has_pending_jobs()
            return results

        set_sync_batch_id(batch_id)
        try:
            outcome = await self._run_job(job_type, batch_id)
            values = {
                "status": SyncJobStatus.COMPLETED,
                "result_data": outcome,
                "completed_at": utcnow(),
                "updated_at": utcnow(),
            }
            results["successful"] = 1
        except Exception as exc:
            await self.db.rollback()
            error = _error_text(exc)
            values = {
                "status": SyncJobStatus.FAILED,
                "error_message": error,
                "completed_at": utcnow(),
                "updated_at": utcnow(),
            }
            results["failed"] = 1
            results["errors"].append({"job_type": job_type, "error": error})
            logger.error(
                "Sync job failed",
                extra_data={"job_id": job_id, "job_type": job_type, "error": error},
                exc_info=not isinstance(exc, AppException),
            )
        finally:
            set_sync_batch_id(None)

        await self.db.execute(update(SyncJob).where(SyncJob.id == job_id).values(**values))
        await self.db.commit()

        results["processed"] = 1
        results["job_type"] = job_type
        results["batch_id"] = batch_id
        results["has_more"] = await self.has_pending_jobs()
        return results

    @log_async_operation("sync_job")
    async def _run_job(self, job_type: str, batch_id: str) -> dict:
        executor = self._executors.get(job_type)
        if executor is None:
            raise ValueError(f"Unknown job type: {job_type}")
        logger.info("Processing sync job", extra_data={"job_type": job_type, "batch_id": batch_id})
        return await executor(batch_id)

    async def cleanup_old_jobs(self, days: int | None = None) -> int:
        days = settings.SYNC_JOB_RETENTION_DAYS if days is None else days
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            sa_delete(SyncJob)
            .where(
                SyncJob.status.in_([SyncJobStatus.COMPLETED, SyncJobStatus.FAILED]),
                SyncJob.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount
        await self.db.commit()
        logger.info("Cleaned up old sync jobs", extra_data={"deleted": deleted, "cutoff_days": days})
        return deleted

    # ------------------------------------------------------------------ orders

    async def sync_remote_order(self, remote: dict, context: SyncContext) -> tuple[str, ReconciliationResult | None]:
        """Create, update or skip one remote order. Returns (outcome, result)."""
        order = await self.coordinator.find_by_external_reference(remote.get("external_reference"))
        if order is None:
            return "created", await self.coordinator.create_from_remote(remote, context)
        if await self.coordinator.state.should_skip_processing(order, context):
            return "skipped", None
        return "updated", await self.coordinator.update_from_remote(order, remote, context)

    async def process_cron_order_sync(self, options: dict | None = None) -> dict:
        """
        Pull recent orders from the WMS and reconcile them.

        options: limit, from_date, to_date, status, batch_id, force
        """
        options = options or {}
        params: dict[str, Any] = {
            "limit": options.get("limit") or settings.ORDER_SYNC_DEFAULT_LIMIT,
            "direction": "desc",
            "sort": "createdAt",
        }
        for option, param in (("from_date", "from"), ("to_date", "to"), ("status", "status")):
            if options.get(option):
                params[param] = options[option]

        context = SyncContext.for_manual() if options.get("force") else SyncContext.for_batch(options.get("batch_id"))
        results = _empty_results()
        results.update({"total_fetched": 0, "created": 0, "updated": 0, "skipped": 0})

        try:
            remote_orders = await self.wms_client.get_orders(params)
        except WmsApiError as exc:
            logger.error("Order sync could not fetch orders", extra_data={"error": exc.message})
            results["errors"].append({"general_error": exc.message})
            return results
        results["total_fetched"] = len(remote_orders)

        for summary in remote_orders:
            remote_id = summary.get("id")
            try:
                remote = await self.wms_client.get_order(str(remote_id)) if remote_id else summary
                outcome, reconciliation = await self.sync_remote_order(remote, context)
            except WmsApiError as exc:
                results["processed"] += 1
                results["failed"] += 1
                results["errors"].append({"wms_order_id": remote_id, "error": exc.message})
                continue

            if outcome == "skipped":
                results["skipped"] += 1
                continue
            results["processed"] += 1
            if reconciliation is not None and reconciliation.success:
                results["successful"] += 1
                results[outcome] += 1
            else:
                results["failed"] += 1
                results["errors"].append({
                    "wms_order_id": remote_id,
                    "error": reconciliation.error if reconciliation else "unknown error",
                })

        logger.info(
            "Order synchronization completed",
            extra_data={key: value for key, value in results.items() if key != "errors"},
        )
        return results

    async def process_manual_order_sync(self, order_ids: list[int] | None = None) -> dict:
        """Re-pull specific local orders (or recent remote orders) ignoring skip rules"""
        if not order_ids:
            return await self.process_cron_order_sync(
                {"limit": settings.MANUAL_ORDER_SYNC_LIMIT, "force": True}
            )

        results = _empty_results()
        results["skipped"] = 0
        for order_id in order_ids:
            order = await self.db.get(Order, order_id)
            if order is None:
                results["skipped"] += 1
                continue
            remote_id = await self.coordinator.state.get_remote_order_id(order) or order.meta.get("_wms_order_id")
            if not remote_id:
                results["skipped"] += 1
                continue

            results["processed"] += 1
            try:
                remote = await self.wms_client.get_order(str(remote_id))
            except WmsApiError as exc:
                results["failed"] += 1
                results["errors"].append({"order_id": order_id, "error": exc.message})
                continue

            reconciliation = await self.coordinator.update_from_remote(order, remote, SyncContext.for_manual())
            if reconciliation.success:
                results["successful"] += 1
            else:
                results["failed"] += 1
                results["errors"].append({"order_id": order_id, "error": reconciliation.error})
        return results

    # ------------------------------------------------------------------ job executors

    async def _connection_test(self, batch_id: str) -> dict:
        return await self.wms_client.test_connection()

    async def _webhook_registration(self, batch_id: str) -> dict:
        if not settings.WEBHOOK_PUBLIC_URL:
            raise ConfigurationError("WEBHOOK_PUBLIC_URL")
        existing = {
            (hook.get("group"), hook.get("action"))
            for hook in await self.wms_client.get_webhooks()
            if hook.get("url") == settings.WEBHOOK_PUBLIC_URL
        }
        registered = 0
        for group, actions in SUPPORTED_ACTIONS.items():
            for action in actions:
                if (group.value, action) in existing:
                    continue
                await self.wms_client.register_webhook(group.value, action, settings.WEBHOOK_PUBLIC_URL)
                registered += 1
        return {"registered": registered, "already_registered": len(existing)}

    async def _shipping_methods(self, batch_id: str) -> dict:
        methods = await self.coordinator.shipping.get_remote_methods(force_refresh=True)
        return {"total_synced": len(methods)}

    async def _location_types(self, batch_id: str) -> dict:
        return {"total_synced": len(await self.wms_client.get_location_types())}

    async def _articles_import(self, batch_id: str) -> dict:
        context = SyncContext.for_batch(batch_id)
        articles = await self.wms_client.get_articles({"limit": self.limit})
        imported = 0
        for article in articles:
            if await self.coordinator.products.upsert_from_article(article, context) is not None:
                imported += 1
        await self.db.commit()
        return {"total_fetched": len(articles), "imported": imported}

    async def _stock_sync(self, batch_id: str) -> dict:
        context = SyncContext.for_batch(batch_id)
        levels = await self.wms_client.get_stock({"limit": self.limit})
        updated = 0
        unknown = 0
        for level in levels:
            sku = level.get("article_code") or (level.get("variant") or {}).get("article_code")
            if not sku:
                continue
            quantity = stock_quantity(level)
            product = await self.coordinator.products.update_stock(
                sku, quantity, stock_status_for(level, quantity), context
            )
            if product is None:
                unknown += 1
            else:
                updated += 1
        await self.db.commit()
        return {"total_fetched": len(levels), "updated": updated, "unknown": unknown}

    async def _customers_import(self, batch_id: str) -> dict:
        customers = await self.wms_client.get_customers({"limit": self.limit})
        return {"total_fetched": len(customers)}

    async def _orders_sync(self, batch_id: str) -> dict:
        return await self.process_cron_order_sync({"limit": self.limit, "batch_id": batch_id})

    async def _inbounds_sync(self, batch_id: str) -> dict:
        since = (utcnow() - timedelta(days=settings.INBOUND_SYNC_DAYS)).date().isoformat()
        inbounds = await self.wms_client.get_inbounds(
            {"limit": self.limit, "from": since, "sort": "inboundDate", "direction": "desc"}
        )
        completed = [inbound for inbound in inbounds if inbound.get("status") == "completed"]
        skus: list[str] = []
        for inbound in completed:
            for sku in inbound_skus(inbound):
                if sku not in skus:
                    skus.append(sku)
        if not skus:
            return {"total_synced": len(inbounds), "completed": len(completed), "stock_updated": 0}

        router = WebhookRouter(self.db, self.wms_client, coordinator=self.coordinator)
        refreshed = await router.refresh_stock(skus, SyncContext.for_batch(batch_id))
        return {"total_synced": len(inbounds), "completed": len(completed), "stock_updated": refreshed["updated"]}

    async def _shipments_sync(self, batch_id: str) -> dict:
        since = (utcnow() - timedelta(days=settings.SHIPMENT_SYNC_DAYS)).date().isoformat()
        shipments = await self.wms_client.get_shipments(
            {"limit": self.limit, "from": since, "sort": "shipmentDate", "direction": "desc"}
        )
        router = WebhookRouter(self.db, self.wms_client, coordinator=self.coordinator)
        context = SyncContext.for_batch(batch_id)

        orders_updated = 0
        for shipment in shipments:
            try:
                outcome = await router.route("shipment", "updated", shipment, shipment.get("id"), context)
            except AppException as exc:
                await self.db.rollback()
                logger.warning(
                    "Shipment processing error",
                    extra_data={"shipment_id": shipment.get("id"), "error": exc.message},
                )
                continue
            if outcome.get("status") == "success":
                orders_updated += 1
        return {"total_synced": len(shipments), "orders_updated": orders_updated}
