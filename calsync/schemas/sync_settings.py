# calsync/schemas/sync_settings.py
from __future__ import annotations
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List

HEX_COLOR_PATTERN = r"^#[a-fA-F0-9]{6}$"


def _check_reminders(values: Optional[List[int]]) -> Optional[List[int]]:
    if values is None:
        return values
    for minutes in values:
        if minutes < 0 or minutes > 10080:
            raise ValueError("Reminder minutes must be between 0 and 10080 (one week)")
    return values


class SyncSettings(BaseModel):
    """Per-integration synchronization preferences"""
    sync_frequency: int = Field(30, ge=5, le=1440, description="Minutes between pulls")
    event_title_template: str = Field("{service_name} - {client_name}", max_length=255)
    include_client_name: bool = True
    include_location: bool = True
    include_notes: bool = False
    calendar_color: str = Field("#4285F4", pattern=HEX_COLOR_PATTERN)
    reminder_minutes: List[int] = Field(default_factory=lambda: [15, 60])
    max_events_per_sync: int = Field(100, ge=1, le=2500)
    sync_past_days: int = Field(7, ge=0, le=365)
    sync_future_days: int = Field(90, ge=1, le=730)

    @field_validator("reminder_minutes")
    @classmethod
    def reminders_in_range(cls, v: List[int]) -> List[int]:
        return _check_reminders(v)


class SyncSettingsUpdate(BaseModel):
    """Partial update merged into the stored settings"""
    sync_frequency: Optional[int] = Field(None, ge=5, le=1440)
    event_title_template: Optional[str] = Field(None, max_length=255)
    include_client_name: Optional[bool] = None
    include_location: Optional[bool] = None
    include_notes: Optional[bool] = None
    calendar_color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    reminder_minutes: Optional[List[int]] = None
    max_events_per_sync: Optional[int] = Field(None, ge=1, le=2500)
    sync_past_days: Optional[int] = Field(None, ge=0, le=365)
    sync_future_days: Optional[int] = Field(None, ge=1, le=730)

    @field_validator("reminder_minutes")
    @classmethod
    def reminders_in_range(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        return _check_reminders(v)


class IntegrationSettingsUpdate(BaseModel):
    """Fields a user may change on an existing integration"""
    sync_bookings: Optional[bool] = None
    sync_availability: Optional[bool] = None
    auto_block_external_events: Optional[bool] = None
    sync_settings: Optional[SyncSettingsUpdate] = None
