"""
Webhook Queue Service - persistent, priority and prerequisite ordered queue.

Jobs move pending -> processing -> processed | pending (retry) | failed.
The only mutual exclusion between workers is the atomic pending -> processing
UPDATE in claim(); a pass never claims two jobs for the same entity.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Collection

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.clock import utcnow
from wms_sync.core.config import settings
from wms_sync.core.exceptions import ErrorCode, NotFoundException
from wms_sync.core.logging import get_logger
from wms_sync.db.models.order import Order
from wms_sync.db.models.webhook_job import WebhookJob, WebhookJobStatus
from wms_sync.domain.event_tables import (
    bypass_allowed,
    format_event,
    get_prerequisite,
    get_priority,
    parse_event,
)
from wms_sync.domain.events import SyncContext

logger = get_logger(__name__)

STUCK_RESET_NOTE = "Reset from stuck processing state"
PROCESSING_TOO_LONG_SECONDS = 60
# pending jobs looked at per pass, in multiples of the batch size
PENDING_SCAN_FACTOR = 5


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    base_seconds * 2**retry_count, capped at max_backoff_seconds without
    computing huge powers for large retry counts.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # smallest power of two that reaches the cap
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    backoff = base_seconds * (1 << retry_count)
    return min(backoff, max_backoff_seconds)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def job_to_dict(job: WebhookJob) -> dict:
    return {
        "id": job.id,
        "webhook_id": job.webhook_id,
        "group": job.group,
        "action": job.action,
        "entity_id": job.entity_id,
        "external_reference": job.external_reference,
        "priority": job.priority,
        "status": job.status.value if isinstance(job.status, WebhookJobStatus) else job.status,
        "attempts": job.attempts,
        "requires_prerequisite": job.requires_prerequisite,
        "prerequisite_event": job.prerequisite_event,
        "error_message": job.error_message,
        "next_attempt_at": _iso(job.next_attempt_at),
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "processing_started_at": _iso(job.processing_started_at),
        "processed_at": _iso(job.processed_at),
    }


class WebhookQueueService:
    """Enqueue, dispatch and maintain webhook jobs"""

    def __init__(self, db: AsyncSession, router: Any = None):
        self.db = db
        self._router = router
        self.max_attempts = settings.WEBHOOK_MAX_ATTEMPTS
        self.stuck_timeout = timedelta(seconds=settings.WEBHOOK_STUCK_TIMEOUT_SECONDS)

    @property
    def router(self):
        if self._router is None:
            from wms_sync.domain.services.webhook_router import WebhookRouter
            from wms_sync.domain.services.wms import get_wms_client

            self._router = WebhookRouter(self.db, get_wms_client())
        return self._router

    # ------------------------------------------------------------------ enqueue

    async def get_by_webhook_id(self, webhook_id: str) -> WebhookJob | None:
        result = await self.db.execute(select(WebhookJob).where(WebhookJob.webhook_id == webhook_id))
        return result.scalar_one_or_none()

    async def enqueue(
        self,
        webhook_id: str,
        group: str,
        action: str,
        payload: dict | str,
        entity_id: str | None = None,
        external_reference: str | None = None,
    ) -> tuple[WebhookJob, bool]:
        """
        Queue a webhook. A known webhook_id is a silent no-op.

        Returns:
            (job, created) - created is False for duplicates
        """
        existing = await self.get_by_webhook_id(webhook_id)
        if existing is not None:
            logger.debug("Duplicate webhook ignored", extra_data={"webhook_id": webhook_id})
            return existing, False

        prerequisite = get_prerequisite(group, action)
        job = WebhookJob(
            webhook_id=webhook_id,
            group=group,
            action=action,
            entity_id=str(entity_id) if entity_id not in (None, "") else None,
            external_reference=str(external_reference) if external_reference not in (None, "") else None,
            payload=payload if isinstance(payload, str) else json.dumps(payload, default=str),
            priority=get_priority(group, action),
            requires_prerequisite=prerequisite is not None,
            prerequisite_event=format_event(prerequisite) if prerequisite else None,
            status=WebhookJobStatus.PENDING,
            attempts=0,
        )
        self.db.add(job)
        try:
            await self.db.commit()
        except IntegrityError:
            # concurrent enqueue of the same webhook_id
            await self.db.rollback()
            existing = await self.get_by_webhook_id(webhook_id)
            if existing is None:
                raise
            return existing, False

        logger.info(
            "Webhook queued",
            extra_data={
                "webhook_id": webhook_id,
                "event": job.event_key,
                "entity_id": job.entity_id,
                "priority": job.priority,
            },
        )
        return job, True

    # ------------------------------------------------------------------ dequeue

    async def get_pending(self, limit: int, exclude_ids: Collection[int] = ()) -> list[WebhookJob]:
        now = utcnow()
        query = select(WebhookJob).where(
            WebhookJob.status == WebhookJobStatus.PENDING,
            or_(WebhookJob.next_attempt_at.is_(None), WebhookJob.next_attempt_at <= now),
        )
        if exclude_ids:
            query = query.where(WebhookJob.id.not_in(list(exclude_ids)))
        result = await self.db.execute(
            query
            .order_by(WebhookJob.priority.asc(), WebhookJob.created_at.asc(), WebhookJob.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def is_prerequisite_met(self, job: WebhookJob) -> bool:
        if not job.requires_prerequisite or not job.prerequisite_event:
            return True

        group, action = parse_event(job.prerequisite_event)
        if job.entity_id:
            result = await self.db.execute(
                select(WebhookJob.id)
                .where(
                    WebhookJob.entity_id == job.entity_id,
                    WebhookJob.group == group,
                    WebhookJob.action == action,
                    WebhookJob.status == WebhookJobStatus.PROCESSED,
                )
                .limit(1)
            )
            if result.scalar_one_or_none() is not None:
                return True

        if bypass_allowed(job.group, job.action, job.prerequisite_event):
            reference = job.external_reference or self._payload_reference(job.payload)
            if reference:
                result = await self.db.execute(
                    select(Order.id).where(Order.external_reference == reference).limit(1)
                )
                if result.scalar_one_or_none() is not None:
                    logger.debug(
                        "Prerequisite bypassed, order exists locally",
                        extra_data={"webhook_id": job.webhook_id, "external_reference": reference},
                    )
                    return True
        return False

    @staticmethod
    def _payload_reference(raw: str) -> str | None:
        try:
            payload = json.loads(raw)
        except ValueError:
            return None
        if isinstance(payload, dict) and payload.get("external_reference"):
            return str(payload["external_reference"])
        return None

    async def claim(self, job_id: int) -> bool:
        """Atomic pending -> processing; False when another worker won"""
        now = utcnow()
        result = await self.db.execute(
            update(WebhookJob)
            .where(WebhookJob.id == job_id, WebhookJob.status == WebhookJobStatus.PENDING)
            .values(status=WebhookJobStatus.PROCESSING, processing_started_at=now, updated_at=now)
        )
        await self.db.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------ processing

    async def process_queued_webhooks(self, batch_size: int | None = None) -> dict:
        """
        Process up to batch_size eligible jobs.

        Blocked jobs (unmet prerequisite, entity already handled in this pass)
        do not take a slot: more pending jobs are fetched until the batch is
        full or batch_size * PENDING_SCAN_FACTOR jobs have been looked at.

        Returns:
            {"processed", "successful", "failed", "skipped", "errors"}
        """
        batch_size = batch_size or settings.WEBHOOK_BATCH_SIZE
        results: dict[str, Any] = {"processed": 0, "successful": 0, "failed": 0, "skipped": 0, "errors": []}

        claimed_entities: set[str] = set()
        seen: set[int] = set()
        max_scan = batch_size * PENDING_SCAN_FACTOR

        while results["processed"] < batch_size and len(seen) < max_scan:
            job_ids = [job.id for job in await self.get_pending(batch_size, exclude_ids=seen)]
            if not job_ids:
                break
            seen.update(job_ids)
            for job_id in job_ids:
                if results["processed"] >= batch_size:
                    break
                await self._process_next(job_id, claimed_entities, results)

        if results["processed"]:
            logger.info(
                "Webhook queue pass finished",
                extra_data={key: value for key, value in results.items() if key != "errors"},
            )
        return results

    async def _process_next(self, job_id: int, claimed_entities: set[str], results: dict[str, Any]) -> None:
        # a failed job rolls the session back and expires everything loaded
        job = await self.db.get(WebhookJob, job_id, populate_existing=True)
        if job is None or job.status != WebhookJobStatus.PENDING:
            return

        entity_key = f"{job.group}:{job.entity_id}" if job.entity_id else None
        if entity_key is None and job.external_reference:
            entity_key = f"ref:{job.external_reference}"
        if entity_key and entity_key in claimed_entities:
            results["skipped"] += 1
            return

        if not await self.is_prerequisite_met(job):
            logger.debug(
                "Prerequisite not met, job stays pending",
                extra_data={"webhook_id": job.webhook_id, "prerequisite": job.prerequisite_event},
            )
            results["skipped"] += 1
            return

        if not await self.claim(job_id):
            results["skipped"] += 1
            return
        if entity_key:
            claimed_entities.add(entity_key)

        success, error = await self._process_claimed(job)
        results["processed"] += 1
        if success:
            results["successful"] += 1
        else:
            results["failed"] += 1
            results["errors"].append({"job_id": job_id, "error": error})

    async def _process_claimed(self, job: WebhookJob) -> tuple[bool, str | None]:
        job_id = job.id
        webhook_id = job.webhook_id
        group, action, entity_id, raw_payload = job.group, job.action, job.entity_id, job.payload

        try:
            try:
                payload = json.loads(raw_payload)
            except ValueError as exc:
                raise ValueError(f"Invalid JSON payload: {exc}") from exc

            result = await self.router.route(
                group, action, payload, entity_id, SyncContext.for_webhook(job_id)
            )
        except Exception as exc:
            await self.db.rollback()
            error = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
            await self.handle_failure(job_id, error)
            logger.warning(
                "Webhook processing failed",
                extra_data={"webhook_id": webhook_id, "event": f"{group}.{action}", "error": error},
            )
            return False, error

        await self.mark_processed(job_id)
        logger.info(
            "Webhook processed",
            extra_data={
                "webhook_id": webhook_id,
                "event": f"{group}.{action}",
                "status": result.get("status") if isinstance(result, dict) else None,
            },
        )
        return True, None

    async def mark_processed(self, job_id: int) -> None:
        now = utcnow()
        await self.db.execute(
            update(WebhookJob)
            .where(WebhookJob.id == job_id)
            .values(
                status=WebhookJobStatus.PROCESSED,
                processed_at=now,
                updated_at=now,
                error_message=None,
                next_attempt_at=None,
            )
        )
        await self.db.commit()

    async def handle_failure(self, job_id: int, error_message: str) -> WebhookJob | None:
        """Count the attempt; at the cap the job fails, otherwise it retries after a backoff"""
        job = await self.db.get(WebhookJob, job_id, populate_existing=True)
        if job is None:
            return None

        now = utcnow()
        job.attempts = (job.attempts or 0) + 1
        job.error_message = error_message[:2000]
        job.processing_started_at = None
        job.updated_at = now

        if job.attempts >= self.max_attempts:
            job.status = WebhookJobStatus.FAILED
            job.next_attempt_at = None
        else:
            job.status = WebhookJobStatus.PENDING
            backoff_seconds = _calculate_backoff_seconds(
                job.attempts - 1,
                base_seconds=settings.WEBHOOK_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.WEBHOOK_MAX_BACKOFF_SECONDS,
            )
            job.next_attempt_at = now + timedelta(seconds=backoff_seconds)

        await self.db.commit()
        return job

    async def process_queued_webhooks_with_timeout(self, batch_size: int | None = None) -> dict:
        reset = await self.reset_stuck_webhooks()
        results = await self.process_queued_webhooks(batch_size)
        results["reset_stuck"] = reset
        return results

    async def force_process_webhook(self, job_id: int) -> dict:
        """Process one job now, ignoring priority, prerequisites and backoff"""
        job = await self.db.get(WebhookJob, job_id)
        if job is None:
            raise NotFoundException("Webhook job", job_id, ErrorCode.WEBHOOK_JOB_NOT_FOUND)

        if job.status != WebhookJobStatus.PENDING:
            await self.db.execute(
                update(WebhookJob)
                .where(WebhookJob.id == job_id)
                .values(status=WebhookJobStatus.PENDING, next_attempt_at=None, updated_at=utcnow())
            )
            await self.db.commit()

        if not await self.claim(job_id):
            return {"success": False, "job_id": job_id, "error": "Job was claimed by another worker"}

        job = await self.db.get(WebhookJob, job_id, populate_existing=True)
        success, error = await self._process_claimed(job)
        logger.info("Webhook force processed", extra_data={"job_id": job_id, "success": success})
        return {"success": success, "job_id": job_id, "error": error}

    # ------------------------------------------------------------------ maintenance

    async def reset_stuck_webhooks(self) -> int:
        """Processing longer than the timeout -> pending, attempts + 1"""
        cutoff = utcnow() - self.stuck_timeout
        stuck = await self.get_stuck_webhooks()
        if not stuck:
            return 0

        result = await self.db.execute(
            update(WebhookJob)
            .where(
                WebhookJob.status == WebhookJobStatus.PROCESSING,
                WebhookJob.processing_started_at < cutoff,
            )
            .values(
                status=WebhookJobStatus.PENDING,
                attempts=WebhookJob.attempts + 1,
                error_message=STUCK_RESET_NOTE,
                processing_started_at=None,
                next_attempt_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.warning(
            "Reset stuck webhooks",
            extra_data={
                "count": result.rowcount,
                "timeout_seconds": int(self.stuck_timeout.total_seconds()),
                "webhook_ids": [job["webhook_id"] for job in stuck][:50],
            },
        )
        return result.rowcount

    async def cleanup_failed_webhooks(self) -> int:
        """Archive failed jobs at the attempt cap untouched for the retention window"""
        cutoff = utcnow() - timedelta(days=settings.WEBHOOK_RETENTION_DAYS)
        result = await self.db.execute(
            update(WebhookJob)
            .where(
                WebhookJob.status == WebhookJobStatus.FAILED,
                WebhookJob.attempts >= self.max_attempts,
                WebhookJob.updated_at < cutoff,
            )
            .values(status=WebhookJobStatus.ARCHIVED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info("Archived failed webhooks", extra_data={"count": result.rowcount})
        return result.rowcount

    async def cleanup(self, days: int | None = None) -> int:
        """Delete processed jobs, and archived ones past retention"""
        days = settings.WEBHOOK_RETENTION_DAYS if days is None else days
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            sa_delete(WebhookJob)
            .where(
                WebhookJob.status.in_([WebhookJobStatus.PROCESSED, WebhookJobStatus.ARCHIVED]),
                WebhookJob.updated_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount
        await self.db.commit()
        logger.info("Cleaned up old webhook jobs", extra_data={"deleted": deleted, "cutoff_days": days})
        return deleted

    async def retry_failed_webhooks(self) -> int:
        result = await self.db.execute(
            update(WebhookJob)
            .where(WebhookJob.status == WebhookJobStatus.FAILED)
            .values(
                status=WebhookJobStatus.PENDING,
                attempts=0,
                error_message=None,
                next_attempt_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info("Failed webhooks queued for retry", extra_data={"count": result.rowcount})
        return result.rowcount

    # ------------------------------------------------------------------ monitoring

    async def get_queue_stats(self) -> dict:
        result = await self.db.execute(
            select(WebhookJob.status, func.count(WebhookJob.id)).group_by(WebhookJob.status)
        )
        counts = {status.value: 0 for status in WebhookJobStatus}
        for status, count in result.all():
            key = status.value if isinstance(status, WebhookJobStatus) else str(status)
            counts[key] = count

        oldest = await self.db.execute(
            select(func.min(WebhookJob.created_at)).where(WebhookJob.status == WebhookJobStatus.PENDING)
        )
        oldest_pending = oldest.scalar_one_or_none()
        return {
            "by_status": counts,
            "total": sum(counts.values()),
            "oldest_pending": _iso(oldest_pending),
            "oldest_pending_age_seconds": (
                int((utcnow() - oldest_pending).total_seconds()) if oldest_pending else None
            ),
        }

    async def get_recent_activity(self, limit: int = 20) -> list[dict]:
        result = await self.db.execute(
            select(WebhookJob).order_by(WebhookJob.updated_at.desc(), WebhookJob.id.desc()).limit(limit)
        )
        return [job_to_dict(job) for job in result.scalars().all()]

    async def get_stuck_webhooks(self) -> list[dict]:
        now = utcnow()
        result = await self.db.execute(
            select(WebhookJob)
            .where(
                WebhookJob.status == WebhookJobStatus.PROCESSING,
                WebhookJob.processing_started_at < now - self.stuck_timeout,
            )
            .order_by(WebhookJob.processing_started_at.asc())
        )
        stuck = []
        for job in result.scalars().all():
            entry = job_to_dict(job)
            entry["stuck_seconds"] = int((now - job.processing_started_at).total_seconds())
            stuck.append(entry)
        return stuck

    async def get_queue_health_status(self) -> dict:
        stats = await self.get_queue_stats()
        stuck = await self.get_stuck_webhooks()
        too_long = await self.db.execute(
            select(func.count(WebhookJob.id)).where(
                WebhookJob.status == WebhookJobStatus.PROCESSING,
                WebhookJob.processing_started_at < utcnow() - timedelta(seconds=PROCESSING_TOO_LONG_SECONDS),
            )
        )
        return {
            "stats": stats,
            "stuck_webhooks": stuck,
            "stuck_count": len(stuck),
            "failed_count": stats["by_status"][WebhookJobStatus.FAILED.value],
            "oldest_pending": stats["oldest_pending"],
            "processing_too_long": too_long.scalar_one(),
            "health_status": "unhealthy" if stuck else "healthy",
            "timestamp": utcnow().isoformat(),
        }
