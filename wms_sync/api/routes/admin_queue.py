"""
Admin Queue Endpoints - ניטור ותחזוקה של תור ה-webhooks ללא גישה ישירה ל-DB.

- health / stats / recent / stuck: מצב התור
- reset-stuck / archive-failed / retry-failed / cleanup: תחזוקה
- force/{job_id}: עיבוד job בודד מחוץ לסדר העדיפויות
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.api.dependencies.admin_auth import require_admin_api_key
from wms_sync.core.circuit_breaker import get_wms_circuit_breaker
from wms_sync.core.logging import get_logger
from wms_sync.db.database import get_db
from wms_sync.domain.services.webhook_queue_service import WebhookQueueService

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


# ─── Pydantic models ────────────────────────────────────────────────────────

class QueueStatsResponse(BaseModel):
    by_status: dict[str, int]
    total: int
    oldest_pending: datetime | None = None
    oldest_pending_age_seconds: float | None = None


class QueueHealthResponse(BaseModel):
    health_status: str = Field(description="healthy | unhealthy")
    stats: dict[str, Any]
    stuck_count: int
    failed_count: int
    processing_too_long: int
    oldest_pending: datetime | None = None
    stuck_webhooks: list[dict[str, Any]]
    circuit_breaker: dict[str, Any] | None = None
    timestamp: datetime


class MaintenanceResponse(BaseModel):
    """תוצאה של פעולת תחזוקה על התור"""
    action: str
    affected: int


class ProcessQueueResponse(BaseModel):
    processed: int
    successful: int
    failed: int
    skipped: int
    errors: list[dict[str, Any]]
    reset_stuck: int | None = None


# ─── Read endpoints ─────────────────────────────────────────────────────────

@router.get(
    "/health",
    response_model=QueueHealthResponse,
    summary="בריאות תור ה-webhooks",
    description="jobs תקועים, jobs שנכשלו, ומצב ה-circuit breaker של ה-WMS.",
)
async def queue_health(db: AsyncSession = Depends(get_db)) -> QueueHealthResponse:
    health = await WebhookQueueService(db).get_queue_health_status()
    health["circuit_breaker"] = get_wms_circuit_breaker().snapshot()
    return QueueHealthResponse(**health)


@router.get("/stats", response_model=QueueStatsResponse, summary="ספירת jobs לפי סטטוס")
async def queue_stats(db: AsyncSession = Depends(get_db)) -> QueueStatsResponse:
    return QueueStatsResponse(**await WebhookQueueService(db).get_queue_stats())


@router.get("/recent", summary="פעילות אחרונה בתור")
async def queue_recent(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    return await WebhookQueueService(db).get_recent_activity(limit)


@router.get("/stuck", summary="jobs שתקועים בעיבוד")
async def queue_stuck(db: AsyncSession = Depends(get_db)) -> list[dict[str, Any]]:
    return await WebhookQueueService(db).get_stuck_webhooks()


# ─── Maintenance ────────────────────────────────────────────────────────────

@router.post("/process", response_model=ProcessQueueResponse, summary="עיבוד מנה מהתור")
async def queue_process(
    batch_size: int | None = Query(None, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> ProcessQueueResponse:
    results = await WebhookQueueService(db).process_queued_webhooks_with_timeout(batch_size)
    return ProcessQueueResponse(**results)


@router.post("/reset-stuck", response_model=MaintenanceResponse, summary="החזרת jobs תקועים לתור")
async def queue_reset_stuck(db: AsyncSession = Depends(get_db)) -> MaintenanceResponse:
    affected = await WebhookQueueService(db).reset_stuck_webhooks()
    return MaintenanceResponse(action="reset_stuck", affected=affected)


@router.post("/archive-failed", response_model=MaintenanceResponse, summary="ארכוב jobs שנכשלו")
async def queue_archive_failed(db: AsyncSession = Depends(get_db)) -> MaintenanceResponse:
    affected = await WebhookQueueService(db).cleanup_failed_webhooks()
    return MaintenanceResponse(action="archive_failed", affected=affected)


@router.post("/retry-failed", response_model=MaintenanceResponse, summary="ניסיון חוזר ל-jobs שנכשלו")
async def queue_retry_failed(db: AsyncSession = Depends(get_db)) -> MaintenanceResponse:
    affected = await WebhookQueueService(db).retry_failed_webhooks()
    return MaintenanceResponse(action="retry_failed", affected=affected)


@router.post("/cleanup", response_model=MaintenanceResponse, summary="מחיקת jobs ישנים")
async def queue_cleanup(
    days: int | None = Query(None, ge=0, le=365),
    db: AsyncSession = Depends(get_db),
) -> MaintenanceResponse:
    affected = await WebhookQueueService(db).cleanup(days)
    return MaintenanceResponse(action="cleanup", affected=affected)


@router.post(
    "/force/{job_id}",
    summary="עיבוד כפוי של job בודד",
    responses={404: {"description": "job לא נמצא"}},
)
async def queue_force_process(job_id: int, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    result = await WebhookQueueService(db).force_process_webhook(job_id)
    logger.info("Webhook job force-processed by admin", extra_data={"job_id": job_id, "result": result})
    return result
