# ===== calsync/models/calendar_sync_job.py =====
from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, JSON, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid

from calsync.models.base import Base
from calsync.utils.datetime_utils import utcnow


class CalendarSyncJob(Base):
    """Audit record of one background synchronization run"""
    __tablename__ = "calendar_sync_jobs"
    __table_args__ = (
        Index("idx_calendar_sync_jobs_integration_status", "calendar_integration_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    calendar_integration_id = Column(
        UUID(as_uuid=True),
        ForeignKey("calendar_integrations.id", ondelete="CASCADE"),
        nullable=False,
    )

    job_type = Column(String(30), nullable=False)  # sync_bookings, sync_availability, sync_events
    status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, failed
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    events_processed = Column(Integer, default=0)
    error_message = Column(Text)
    job_data = Column(JSON)

    created_at = Column(DateTime(timezone=True), default=utcnow)

    integration = relationship("CalendarIntegration", back_populates="sync_jobs")

    def mark_processing(self):
        self.status = "processing"
        self.started_at = utcnow()

    def mark_completed(self, events_processed: int = 0):
        self.status = "completed"
        self.completed_at = utcnow()
        self.events_processed = events_processed

    def mark_failed(self, error_message: str):
        self.status = "failed"
        self.completed_at = utcnow()
        self.error_message = error_message

    def __repr__(self):
        return f"<CalendarSyncJob {self.job_type} {self.status}>"
