# calsync/schemas/__init__.py
from .calendar_events import (
    CalendarProvider,
    BlockType,
    BookingSnapshot,
    BusyInterval,
    CalendarInfo,
    PushResult,
    RemoveResult,
    PullResult,
    AvailabilityConflict,
    AvailabilityResult,
    ScheduledSyncResult,
    OAuthInitiation,
    OAuthCallbackResult,
    IntegrationStatus,
    AuthorizeRequest,
    ICalConnectRequest,
    AvailabilityCheckRequest,
)

from .credentials import (
    TokenBundle,
    OAuthCredential,
    FeedCredential,
    ProviderCredential,
)

from .sync_settings import (
    SyncSettings,
    SyncSettingsUpdate,
    IntegrationSettingsUpdate,
)

__all__ = [
    "CalendarProvider",
    "BlockType",
    "BookingSnapshot",
    "BusyInterval",
    "CalendarInfo",
    "PushResult",
    "RemoveResult",
    "PullResult",
    "AvailabilityConflict",
    "AvailabilityResult",
    "ScheduledSyncResult",
    "OAuthInitiation",
    "OAuthCallbackResult",
    "IntegrationStatus",
    "AuthorizeRequest",
    "ICalConnectRequest",
    "AvailabilityCheckRequest",
    "TokenBundle",
    "OAuthCredential",
    "FeedCredential",
    "ProviderCredential",
    "SyncSettings",
    "SyncSettingsUpdate",
    "IntegrationSettingsUpdate",
]
