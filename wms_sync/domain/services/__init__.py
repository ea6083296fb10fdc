"""
Domain Services
"""
from wms_sync.domain.services.order_state_service import OrderStateStore
from wms_sync.domain.services.order_service import OrderService
from wms_sync.domain.services.product_resolver import ProductResolver
from wms_sync.domain.services.shipping_method_service import ShippingMethodService
from wms_sync.domain.services.order_sync_service import OrderSyncCoordinator, ReconciliationResult
from wms_sync.domain.services.webhook_router import WebhookRouter
from wms_sync.domain.services.webhook_queue_service import WebhookQueueService
from wms_sync.domain.services.sync_jobs_service import SyncJobsService

__all__ = [
    "OrderStateStore",
    "OrderService",
    "ProductResolver",
    "ShippingMethodService",
    "OrderSyncCoordinator",
    "ReconciliationResult",
    "WebhookRouter",
    "WebhookQueueService",
    "SyncJobsService",
]
