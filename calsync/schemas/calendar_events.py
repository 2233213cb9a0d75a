# calsync/schemas/calendar_events.py
from __future__ import annotations
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum
from uuid import UUID


class CalendarProvider(str, Enum):
    GOOGLE = "google"
    ICAL = "ical"

    @property
    def display_name(self) -> str:
        return {
            CalendarProvider.GOOGLE: "Google Calendar",
            CalendarProvider.ICAL: "iCal/CalDAV",
        }[self]

    @classmethod
    def parse(cls, value: str) -> "CalendarProvider":
        """Map a provider string to the enum, raising ConfigurationError when unknown"""
        from calsync.core.exceptions import ConfigurationError

        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Unsupported calendar provider: {value}")


class BlockType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class BookingSnapshot(BaseModel):
    """Read-only view of a booking owned by the booking domain"""
    id: UUID = Field(..., description="Booking identifier")
    user_id: UUID = Field(..., description="Owner of the booking (the provider)")
    service_id: Optional[UUID] = Field(None, description="Booked service")
    service_name: str = Field("Booking", description="Human readable service name")
    starts_at: datetime = Field(..., description="Scheduled start")
    ends_at: datetime = Field(..., description="Scheduled end")
    client_name: Optional[str] = Field(None, description="Client full name")
    client_email: Optional[str] = Field(None, description="Client email")
    client_phone: Optional[str] = Field(None, description="Client phone")
    location: Optional[str] = Field(None, description="Where the booking takes place")
    reference: str = Field(..., description="Human facing booking reference")
    add_ons_description: Optional[str] = Field(None, description="Selected add-ons")
    notes: Optional[str] = Field(None, description="Client notes")
    status: str = Field("confirmed", description="Booking status")

    @field_validator("ends_at")
    @classmethod
    def end_after_start(cls, v: datetime, info) -> datetime:
        starts_at = info.data.get("starts_at")
        if starts_at and v <= starts_at:
            raise ValueError("End time must be after start time")
        return v

    @property
    def duration_minutes(self) -> int:
        return int((self.ends_at - self.starts_at).total_seconds() // 60)


class BusyInterval(BaseModel):
    """A normalized event returned by a provider listing"""
    id: str
    title: str = "Busy"
    start: datetime
    end: datetime
    all_day: bool = False
    busy: bool = True

    def blocks(self) -> bool:
        """All-day and free (transparent) events never block a slot"""
        return self.busy and not self.all_day


class CalendarInfo(BaseModel):
    """Metadata of the external calendar behind an integration"""
    id: str
    name: str
    timezone: str = "UTC"
    color: Optional[str] = None


class PushResult(BaseModel):
    synced: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    # set when at least one failure may succeed on a later attempt
    retryable: bool = False


class RemoveResult(BaseModel):
    removed: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    retryable: bool = False


class PullResult(BaseModel):
    integration_id: UUID
    success: bool = True
    created: int = 0
    updated: int = 0
    deleted: int = 0
    error: Optional[str] = None
    retryable: bool = False

    @property
    def events_processed(self) -> int:
        return self.created + self.updated


class AvailabilityConflict(BaseModel):
    provider: CalendarProvider
    calendar_name: Optional[str] = None
    conflicting_events: List[BusyInterval] = Field(default_factory=list)
    error: Optional[str] = None


class AvailabilityResult(BaseModel):
    available: bool = True
    conflicts: List[AvailabilityConflict] = Field(default_factory=list)
    checked_calendars: int = 0
    error: Optional[str] = None


class ScheduledSyncResult(BaseModel):
    processed: int = 0
    queued: int = 0
    failed: int = 0


class OAuthInitiation(BaseModel):
    authorization_url: str
    state: str
    provider: CalendarProvider
    expires_at: datetime
    instructions: List[str] = Field(default_factory=list)


class OAuthCallbackResult(BaseModel):
    integration_id: UUID
    provider: CalendarProvider
    calendar: CalendarInfo
    created: bool


class IntegrationStatus(BaseModel):
    """Health/freshness view of an integration"""
    id: UUID
    provider: CalendarProvider
    provider_name: str
    calendar_name: Optional[str] = None
    service_id: Optional[UUID] = None
    is_active: bool
    is_healthy: bool
    status: str
    sync_bookings: bool
    sync_availability: bool
    auto_block_external_events: bool
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    sync_error_count: int = 0
    last_sync_error: Optional[str] = None


# ========== REQUEST BODIES ==========

class AuthorizeRequest(BaseModel):
    service_id: Optional[UUID] = Field(None, description="Restrict the calendar to one service")
    user_id: Optional[UUID] = Field(None, description="Connect on behalf of another user (admins)")


class ICalConnectRequest(BaseModel):
    feed_url: str = Field(..., min_length=1, description="iCal / webcal feed URL")
    state: str = Field(..., min_length=1, description="State returned by the authorize step")


class AvailabilityCheckRequest(BaseModel):
    start: datetime
    end: datetime
    service_id: Optional[UUID] = None
    user_id: Optional[UUID] = None

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v: datetime, info) -> datetime:
        start = info.data.get("start")
        if start and v <= start:
            raise ValueError("End time must be after start time")
        return v
