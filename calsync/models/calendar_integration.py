# ===== calsync/models/calendar_integration.py =====
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, LargeBinary, JSON, UniqueConstraint, Index, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import timedelta
from typing import Optional
import uuid

from calsync.models.base import Base
from calsync.schemas.calendar_events import BookingSnapshot, CalendarProvider
from calsync.schemas.sync_settings import SyncSettings
from calsync.utils.datetime_utils import ensure_utc, utcnow

UNHEALTHY_ERROR_COUNT = 5
STALE_SYNC_AFTER = timedelta(hours=24)
OVERDUE_SYNC_AFTER = timedelta(hours=2)


class CalendarIntegration(Base):
    __tablename__ = "calendar_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "service_id", "provider", "calendar_id", name="uq_calendar_integration_target"),
        # NULLs are distinct in the constraint above; one "all services" row per calendar
        Index(
            "uq_calendar_integration_target_all_services",
            "user_id", "provider", "calendar_id",
            unique=True,
            postgresql_where=text("service_id IS NULL"),
            sqlite_where=text("service_id IS NULL"),
        ),
        Index("idx_calendar_integrations_user_active", "user_id", "is_active"),
        Index("idx_calendar_integrations_provider_active", "provider", "is_active"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Owner lives in the user domain; service_id NULL means "all services"
    user_id = Column(UUID(as_uuid=True), nullable=False)
    service_id = Column(UUID(as_uuid=True), nullable=True)

    provider = Column(String(20), nullable=False)  # 'google', 'ical'
    calendar_id = Column(String(255), nullable=False)
    calendar_name = Column(String(255))
    calendar_timezone = Column(String(64), default="UTC")
    calendar_color = Column(String(7))

    # Fernet encrypted; for iCal the access token holds the encoded feed URL
    access_token_encrypted = Column(LargeBinary, nullable=False)
    refresh_token_encrypted = Column(LargeBinary, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    # Sync toggles
    sync_bookings = Column(Boolean, default=True, nullable=False)
    sync_availability = Column(Boolean, default=False, nullable=False)
    auto_block_external_events = Column(Boolean, default=False, nullable=False)
    sync_settings = Column(JSON, default=lambda: SyncSettings().model_dump())

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    sync_error_count = Column(Integer, default=0, nullable=False)
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    events = relationship(
        "CalendarEvent",
        back_populates="integration",
        cascade="all, delete-orphan",
    )
    sync_jobs = relationship(
        "CalendarSyncJob",
        back_populates="integration",
        cascade="all, delete-orphan",
    )

    @property
    def provider_enum(self) -> CalendarProvider:
        return CalendarProvider.parse(self.provider)

    @property
    def provider_name(self) -> str:
        return self.provider_enum.display_name

    def effective_sync_settings(self) -> SyncSettings:
        """Stored settings layered over the defaults"""
        merged = SyncSettings().model_dump()
        merged.update(self.sync_settings or {})
        return SyncSettings.model_validate(merged)

    # ========== TOKEN & FRESHNESS ==========

    def is_token_expired(self, now=None) -> bool:
        if self.token_expires_at is None:
            return False
        return ensure_utc(self.token_expires_at) <= ensure_utc(now or utcnow())

    def needs_token_refresh(self, buffer: timedelta, now=None) -> bool:
        if self.token_expires_at is None:
            return False
        return ensure_utc(self.token_expires_at) <= ensure_utc(now or utcnow()) + buffer

    def next_sync_at(self):
        anchor = self.last_sync_at or self.created_at
        if anchor is None:
            return None
        return ensure_utc(anchor) + timedelta(minutes=self.effective_sync_settings().sync_frequency)

    def is_due_for_sync(self, now=None) -> bool:
        if self.last_sync_at is None:
            return True
        frequency = timedelta(minutes=self.effective_sync_settings().sync_frequency)
        return ensure_utc(self.last_sync_at) <= ensure_utc(now or utcnow()) - frequency

    def is_healthy(self, now=None) -> bool:
        now = ensure_utc(now or utcnow())
        if not self.is_active or self.is_token_expired(now):
            return False
        if (self.sync_error_count or 0) > UNHEALTHY_ERROR_COUNT:
            return False
        if self.last_sync_at and ensure_utc(self.last_sync_at) < now - STALE_SYNC_AFTER:
            return False
        return True

    def status_label(self, now=None) -> str:
        now = ensure_utc(now or utcnow())
        if not self.is_active:
            return "Inactive"
        if self.is_token_expired(now):
            return "Token Expired"
        if self.last_sync_at and ensure_utc(self.last_sync_at) < now - OVERDUE_SYNC_AFTER:
            return "Sync Overdue"
        return "Active"

    def record_sync_success(self, now=None):
        self.last_sync_at = ensure_utc(now or utcnow())
        self.sync_error_count = 0
        self.last_sync_error = None

    def record_sync_failure(self, message: str, disable_threshold: Optional[int] = None):
        self.sync_error_count = (self.sync_error_count or 0) + 1
        self.last_sync_error = message
        if disable_threshold and self.sync_error_count >= disable_threshold:
            self.is_active = False

    # ========== EVENT RENDERING ==========

    def render_event_title(self, booking: BookingSnapshot) -> str:
        settings = self.effective_sync_settings()
        client_name = (booking.client_name or "Client") if settings.include_client_name else "Client"
        replacements = {
            "{service_name}": booking.service_name,
            "{client_name}": client_name,
            "{booking_ref}": booking.reference,
            "{duration}": f"{booking.duration_minutes} min",
        }
        title = settings.event_title_template
        for placeholder, value in replacements.items():
            title = title.replace(placeholder, value)
        return title

    def render_event_description(self, booking: BookingSnapshot) -> str:
        settings = self.effective_sync_settings()
        lines = [
            f"Service: {booking.service_name}",
            f"Reference: {booking.reference}",
        ]
        if settings.include_client_name and booking.client_name:
            lines.append(f"Client: {booking.client_name}")
        if settings.include_location and booking.location:
            lines.append(f"Location: {booking.location}")
        if booking.add_ons_description:
            lines.append(f"Add-ons: {booking.add_ons_description}")
        if settings.include_notes and booking.notes:
            lines.append(f"Notes: {booking.notes}")
        lines.append(f"Duration: {booking.duration_minutes} minutes")
        lines.append(f"Status: {booking.status.title()}")
        return "\n".join(lines)

    def to_dict(self):
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "service_id": str(self.service_id) if self.service_id else None,
            "provider": self.provider,
            "calendar_id": self.calendar_id,
            "calendar_name": self.calendar_name,
            "is_active": self.is_active,
            "sync_bookings": self.sync_bookings,
            "sync_availability": self.sync_availability,
            "auto_block_external_events": self.auto_block_external_events,
            "sync_settings": self.effective_sync_settings().model_dump(),
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "sync_error_count": self.sync_error_count,
            "last_sync_error": self.last_sync_error,
        }

    def __repr__(self):
        return f"<CalendarIntegration {self.provider}:{self.calendar_id} user={self.user_id}>"
