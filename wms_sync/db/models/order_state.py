"""
Order State Model - the single sync-status record of an order aggregate.
"""
import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.ext.mutable import MutableDict

from wms_sync.core.clock import utcnow
from wms_sync.db.database import Base


class OrderSyncState(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    EXPORTED = "exported"
    SYNCED_FROM_REMOTE = "synced_from_remote"
    WEBHOOK_PROCESSED = "webhook_processed"
    FAILED = "failed"
    SKIPPED = "skipped"


# states that block any further automatic processing until reset_to_pending()
TERMINAL_STATES = frozenset({
    OrderSyncState.SYNCED_FROM_REMOTE,
    OrderSyncState.EXPORTED,
    OrderSyncState.SKIPPED,
})


class ProcessingSource(str, enum.Enum):
    EXPORT = "export"
    WEBHOOK = "webhook"
    REMOTE_SYNC = "wms_sync"
    MANUAL = "manual"


class OrderStateRecord(Base):
    """Sync status of one order (1:1 with orders)"""

    __tablename__ = "order_states"

    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True)
    state = Column(String(30), nullable=False, default=OrderSyncState.PENDING.value)
    remote_order_id = Column(String(100), nullable=True, index=True)
    last_processed_at = Column(DateTime, nullable=True)
    processing_source = Column(String(20), nullable=True)
    error_message = Column(Text, nullable=True)
    meta = Column("meta_data", MutableDict.as_mutable(JSON), nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
