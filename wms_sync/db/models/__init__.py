"""
Database Models
"""
from wms_sync.db.models.webhook_job import WebhookJob, WebhookJobStatus
from wms_sync.db.models.order import Order, OrderLine, OrderNote, OrderStatus
from wms_sync.db.models.order_state import (
    OrderStateRecord,
    OrderSyncState,
    ProcessingSource,
)
from wms_sync.db.models.product import Product
from wms_sync.db.models.shipping_method_mapping import ShippingMethodMapping
from wms_sync.db.models.sync_job import SyncJob, SyncJobStatus

__all__ = [
    "WebhookJob",
    "WebhookJobStatus",
    "Order",
    "OrderLine",
    "OrderNote",
    "OrderStatus",
    "OrderStateRecord",
    "OrderSyncState",
    "ProcessingSource",
    "Product",
    "ShippingMethodMapping",
    "SyncJob",
    "SyncJobStatus",
]
