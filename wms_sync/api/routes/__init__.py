"""
API Routes
"""
from fastapi import APIRouter

from wms_sync.api.routes.admin_queue import router as admin_queue_router
from wms_sync.api.routes.admin_sync import router as admin_sync_router
from wms_sync.api.webhooks.wms import router as wms_webhook_router

router = APIRouter()

router.include_router(wms_webhook_router, prefix="/webhooks/wms", tags=["Webhooks"])
router.include_router(admin_queue_router, prefix="/admin/queue", tags=["Admin Queue"])
router.include_router(admin_sync_router, prefix="/admin", tags=["Admin Sync"])
