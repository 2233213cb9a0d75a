# ===== calsync/models/calendar_event.py =====
from sqlalchemy import Column, String, Boolean, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid

from calsync.models.base import Base
from calsync.utils.datetime_utils import ensure_utc, utcnow


class CalendarEvent(Base):
    """Local mirror of a pushed booking or a pulled external busy interval"""
    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("calendar_integration_id", "external_event_id", name="uq_calendar_event_external_id"),
        Index("idx_calendar_events_window", "calendar_integration_id", "starts_at", "ends_at"),
        Index("idx_calendar_events_booking", "booking_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    calendar_integration_id = Column(
        UUID(as_uuid=True),
        ForeignKey("calendar_integrations.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Set only for events pushed from a booking
    booking_id = Column(UUID(as_uuid=True), nullable=True)

    external_event_id = Column(String(255), nullable=False)
    title = Column(String(500))
    description = Column(Text)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    is_all_day = Column(Boolean, default=False, nullable=False)

    blocks_booking = Column(Boolean, default=True, nullable=False)
    block_type = Column(String(10), default="full", nullable=False)  # full, partial, none

    last_updated_externally = Column(DateTime(timezone=True))
    synced_at = Column(DateTime(timezone=True), default=utcnow)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    integration = relationship("CalendarIntegration", back_populates="events")

    @property
    def is_from_booking(self) -> bool:
        return self.booking_id is not None

    @property
    def duration_minutes(self) -> int:
        return int((ensure_utc(self.ends_at) - ensure_utc(self.starts_at)).total_seconds() // 60)

    def overlaps(self, start, end) -> bool:
        return ensure_utc(self.starts_at) < ensure_utc(end) and ensure_utc(self.ends_at) > ensure_utc(start)

    def to_dict(self):
        return {
            "id": str(self.id),
            "calendar_integration_id": str(self.calendar_integration_id),
            "booking_id": str(self.booking_id) if self.booking_id else None,
            "external_event_id": self.external_event_id,
            "title": self.title,
            "starts_at": ensure_utc(self.starts_at).isoformat(),
            "ends_at": ensure_utc(self.ends_at).isoformat(),
            "is_all_day": self.is_all_day,
            "blocks_booking": self.blocks_booking,
            "block_type": self.block_type,
        }

    def __repr__(self):
        return f"<CalendarEvent {self.external_event_id} {self.starts_at} - {self.ends_at}>"
