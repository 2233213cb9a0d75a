# calsync/services/notification/notification_service.py
"""Contract toward the notification domain (email/SMS/push live elsewhere)"""
import logging
from typing import Protocol
from uuid import UUID

logger = logging.getLogger(__name__)


class NotificationService(Protocol):
    def cancel_notifications_for_booking(self, booking_id: UUID) -> None:
        ...

    def reschedule_notifications_for_booking(self, booking_id: UUID) -> None:
        ...


class LoggingNotificationService:
    """Default sink used when no notification backend is wired in"""

    def cancel_notifications_for_booking(self, booking_id: UUID) -> None:
        logger.info(f"Cancel notifications requested for booking {booking_id}")

    def reschedule_notifications_for_booking(self, booking_id: UUID) -> None:
        logger.info(f"Reschedule notifications requested for booking {booking_id}")
