# calsync/models/__init__.py
from .base import Base
from .calendar_integration import CalendarIntegration
from .calendar_event import CalendarEvent
from .calendar_sync_job import CalendarSyncJob

__all__ = [
    "Base",
    "CalendarIntegration",
    "CalendarEvent",
    "CalendarSyncJob",
]
