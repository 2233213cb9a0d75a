# ===== calsync/tasks/calendar_tasks.py =====
from contextlib import contextmanager
from datetime import timedelta
from typing import Dict
from uuid import UUID
import logging

from redis.exceptions import LockError

from calsync.config.celery_config import celery_app
from calsync.config.database import SessionLocal
from calsync.config.settings import get_settings
from calsync.core.exceptions import ProviderUnavailable
from calsync.core.permissions import Actor
from calsync.schemas.calendar_events import BookingSnapshot
from calsync.services.calendar.providers import build_provider_registry, build_vault, read_denial_policy
from calsync.services.integration.integration_service import CalendarIntegrationService
from calsync.services.sync.calendar_sync_service import CalendarSyncService
from calsync.utils.locks import integration_sync_lock

logger = logging.getLogger(__name__)
settings = get_settings()

# Seconds to wait before each retry of a failed sync
RETRY_BACKOFF = (30, 120, 300)


@contextmanager
def session_scope():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def build_sync_service(db) -> CalendarSyncService:
    vault = build_vault(db, settings)
    return CalendarSyncService(
        db,
        build_provider_registry(vault, settings),
        read_denial_policy=read_denial_policy(settings),
        batch_size=settings.SYNC_BATCH_SIZE,
        error_disable_threshold=settings.SYNC_ERROR_DISABLE_THRESHOLD,
        retention_days=settings.EVENT_RETENTION_DAYS,
    )


def build_integration_service(db) -> CalendarIntegrationService:
    vault = build_vault(db, settings)
    return CalendarIntegrationService(db, vault, build_provider_registry(vault, settings))


def _backoff(retries: int) -> int:
    return RETRY_BACKOFF[min(retries, len(RETRY_BACKOFF) - 1)]


@celery_app.task(bind=True, max_retries=3)
def sync_calendar_integration(self, integration_id: str) -> Dict:
    """Pull external events for one integration; one run per integration at a time"""
    lock = integration_sync_lock(integration_id, settings.SYNC_LOCK_TIMEOUT_SECONDS)
    if not lock.acquire(blocking=False):
        logger.info(f"Sync already running for integration {integration_id}, skipping")
        return {"status": "skipped", "reason": "sync_in_progress"}

    try:
        with session_scope() as db:
            result = build_sync_service(db).sync_integration(UUID(integration_id))
    finally:
        try:
            lock.release()
        except LockError:
            logger.warning(f"Sync lock for integration {integration_id} expired before release")

    if result.success:
        logger.info(f"Synced calendar integration {integration_id}")
        return {
            "status": "success",
            "created": result.created,
            "updated": result.updated,
            "deleted": result.deleted,
        }

    if result.retryable:
        logger.warning(f"Calendar sync failed for integration {integration_id}, retrying: {result.error}")
        raise self.retry(countdown=_backoff(self.request.retries), exc=ProviderUnavailable(result.error))

    logger.error(f"Calendar sync failed for integration {integration_id}: {result.error}")
    return {"status": "failed", "error": result.error}


@celery_app.task
def process_scheduled_syncs() -> Dict:
    """Periodic entry point: queue a sync job per due integration"""
    with session_scope() as db:
        return build_sync_service(db).process_scheduled_syncs().model_dump()


@celery_app.task
def refresh_expiring_tokens() -> Dict:
    with session_scope() as db:
        return build_integration_service(db).refresh_expiring_tokens(
            lookahead=timedelta(minutes=settings.TOKEN_REFRESH_LOOKAHEAD_MINUTES)
        )


@celery_app.task
def cleanup_old_calendar_events() -> Dict:
    with session_scope() as db:
        return {"deleted": build_sync_service(db).cleanup_old_events()}


@celery_app.task(bind=True, max_retries=3)
def push_booking_to_calendars(self, booking_payload: Dict) -> Dict:
    """Create or update the booking's events in every syncing calendar"""
    booking = BookingSnapshot.model_validate(booking_payload)
    with session_scope() as db:
        result = build_sync_service(db).push_booking_to_calendars(Actor.system(), booking)

    if result.retryable and self.request.retries < self.max_retries:
        # Already-synced calendars are updated in place on retry
        raise self.retry(countdown=_backoff(self.request.retries))
    if result.failed:
        logger.error(f"Booking {booking.id} not synced to {result.failed} calendar(s): {result.errors}")
    return result.model_dump()


@celery_app.task(bind=True, max_retries=3)
def remove_booking_from_calendars(self, booking_payload: Dict) -> Dict:
    booking = BookingSnapshot.model_validate(booking_payload)
    with session_scope() as db:
        result = build_sync_service(db).remove_booking_from_calendars(Actor.system(), booking)

    if result.retryable and self.request.retries < self.max_retries:
        raise self.retry(countdown=_backoff(self.request.retries))
    return result.model_dump()
