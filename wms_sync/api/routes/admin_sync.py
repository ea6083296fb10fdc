"""
Admin Sync Endpoints - batch sync against the WMS and per-order tools.

- POST /sync/everything        queue a full sync batch
- GET  /sync/progress/{id}     batch progress
- POST /sync/next              run the next pending sync job inline
- POST /sync/orders            manual order sync (forced, skip rules ignored)
- GET  /orders/{id}/state      sync state of one order
- POST /orders/{id}/state/reset
- POST /orders/{id}/export     send the order to the WMS
- POST /orders/{id}/cancel     cancel the order in the WMS
"""
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.api.dependencies.admin_auth import require_admin_api_key
from wms_sync.core.exceptions import ErrorCode, NotFoundException
from wms_sync.core.logging import get_logger
from wms_sync.db.database import get_db
from wms_sync.db.models.order import Order
from wms_sync.domain.events import SyncContext
from wms_sync.domain.services.order_state_service import OrderStateStore
from wms_sync.domain.services.order_sync_service import OrderSyncCoordinator
from wms_sync.domain.services.sync_jobs_service import SyncJobsService
from wms_sync.domain.services.wms import get_wms_client

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class StartSyncResponse(BaseModel):
    batch_id: str
    scheduled: bool = Field(description="האם נשלחה משימת Celery לעיבוד הבאץ'")


class ManualOrderSyncRequest(BaseModel):
    """ללא order_ids - משיכת ההזמנות האחרונות מה-WMS"""
    order_ids: list[int] | None = None


async def _get_order_or_404(db: AsyncSession, order_id: int) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFoundException("Order", order_id, ErrorCode.ORDER_NOT_FOUND)
    return order


# ─── Batch sync ─────────────────────────────────────────────────────────────

@router.post("/sync/everything", response_model=StartSyncResponse, summary="סנכרון מלא מול ה-WMS")
async def start_sync_everything(db: AsyncSession = Depends(get_db)) -> StartSyncResponse:
    from wms_sync.workers.tasks import process_sync_jobs

    batch_id = await SyncJobsService(db, get_wms_client()).start_sync_everything()
    scheduled = True
    try:
        process_sync_jobs.delay()
    except Exception as e:
        # ה-beat ימשיך את הבאץ' גם בלי המשימה הזו
        scheduled = False
        logger.warning(
            "Could not schedule sync batch processing",
            extra_data={"batch_id": batch_id, "error": str(e)},
        )
    return StartSyncResponse(batch_id=batch_id, scheduled=scheduled)


@router.get(
    "/sync/progress/{batch_id}",
    summary="התקדמות באץ' סנכרון",
    responses={404: {"description": "באץ' לא נמצא"}},
)
async def sync_progress(batch_id: str, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return await SyncJobsService(db, get_wms_client()).get_sync_progress(batch_id)


@router.post("/sync/next", summary="הרצת ה-sync job הבא")
async def sync_next_job(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return await SyncJobsService(db, get_wms_client()).process_next_job()


@router.post("/sync/orders", summary="סנכרון הזמנות ידני")
async def manual_order_sync(
    request: ManualOrderSyncRequest,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await SyncJobsService(db, get_wms_client()).process_manual_order_sync(request.order_ids)


# ─── Per-order tools ────────────────────────────────────────────────────────

@router.get("/orders/{order_id}/state", summary="מצב סנכרון של הזמנה")
async def order_state(order_id: int, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    order = await _get_order_or_404(db, order_id)
    summary = await OrderStateStore(db).get_order_state_summary(order)
    await db.commit()
    return summary


@router.post("/orders/{order_id}/state/reset", summary="איפוס מצב הסנכרון ל-pending")
async def reset_order_state(order_id: int, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    order = await _get_order_or_404(db, order_id)
    store = OrderStateStore(db)
    await store.reset_to_pending(order)
    await db.commit()
    logger.info("Order sync state reset by admin", extra_data={"order_id": order_id})
    return await store.get_order_state_summary(order)


@router.post("/orders/{order_id}/export", summary="שליחת הזמנה ל-WMS")
async def export_order(order_id: int, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    order = await _get_order_or_404(db, order_id)
    coordinator = OrderSyncCoordinator(db, get_wms_client())
    result = await coordinator.export_order(order, SyncContext.for_manual())
    return result.to_dict()


@router.post(
    "/orders/{order_id}/cancel",
    summary="ביטול הזמנה ב-WMS",
    responses={404: {"description": "הזמנה לא נמצאה או לא נשלחה ל-WMS"}},
)
async def cancel_order(order_id: int, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    order = await _get_order_or_404(db, order_id)
    result = await OrderSyncCoordinator(db, get_wms_client()).cancel_order_in_wms(order)
    return result.to_dict()
