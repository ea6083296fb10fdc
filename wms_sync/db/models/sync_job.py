"""
Sync Job Model - batch orchestration ("sync everything") work items.
"""
import enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String, Text

from wms_sync.core.clock import utcnow
from wms_sync.db.database import Base


class SyncJobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(String(64), nullable=False, index=True)
    job_type = Column(String(50), nullable=False)
    priority = Column(Integer, nullable=False)
    status = Column(
        SQLEnum(SyncJobStatus, native_enum=False, length=20),
        nullable=False,
        default=SyncJobStatus.PENDING,
    )
    result_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_sync_jobs_next", "status", "priority", "created_at"),
    )
