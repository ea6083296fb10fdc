"""
Webhook Job Model - persistent, priority ordered queue of inbound WMS events.

webhook_id is the producer's dedup id: enqueueing the same id twice keeps a
single row. Rows move pending -> processing -> processed | pending (retry) |
failed, and failed rows are archived by the retention sweep.
"""
import enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text

from wms_sync.core.clock import utcnow
from wms_sync.db.database import Base


class WebhookJobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    ARCHIVED = "archived"


class WebhookJob(Base):
    """One queued inbound event notification"""

    __tablename__ = "webhook_jobs"

    id = Column(Integer, primary_key=True, index=True)
    webhook_id = Column(String(200), nullable=False, unique=True)

    group = Column("event_group", String(50), nullable=False)
    action = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=True)
    external_reference = Column(String(100), nullable=True, index=True)
    # raw JSON text - decoding happens in the worker so malformed bodies fail the job
    payload = Column(Text, nullable=False)

    priority = Column(Integer, nullable=False, default=999)
    requires_prerequisite = Column(Boolean, nullable=False, default=False)
    prerequisite_event = Column(String(100), nullable=True)  # "group.action"

    status = Column(
        SQLEnum(WebhookJobStatus, native_enum=False, length=20),
        nullable=False,
        default=WebhookJobStatus.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    processing_started_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_jobs_dequeue", "status", "priority", "created_at"),
        Index("ix_webhook_jobs_prerequisite", "entity_id", "event_group", "action", "status"),
    )

    @property
    def event_key(self) -> str:
        return f"{self.group}.{self.action}"
