# calsync/services/sync/calendar_sync_service.py
"""
Fan-out of bookings to external calendars and reconciliation of external events.

Every per-integration step is isolated: one provider failing is recorded and the
loop moves on to the next integration.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from calsync.core.exceptions import AuthorizationDenied, TokenExpiredNoRefresh, is_retryable
from calsync.core.permissions import (
    Actor,
    ReadDenialPolicy,
    can_manage_booking,
    can_manage_integration,
    can_view_integration,
)
from calsync.models import CalendarEvent, CalendarIntegration, CalendarSyncJob
from calsync.schemas.calendar_events import (
    AvailabilityConflict,
    AvailabilityResult,
    BlockType,
    BookingSnapshot,
    BusyInterval,
    PullResult,
    PushResult,
    RemoveResult,
    ScheduledSyncResult,
)
from calsync.services.calendar.providers import CalendarProviderRegistry
from calsync.services.notification.notification_service import LoggingNotificationService, NotificationService
from calsync.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Shortest allowed sync_frequency; lets the due-check prefilter in SQL
MIN_SYNC_FREQUENCY = timedelta(minutes=5)


def dispatch_sync_job(integration: CalendarIntegration):
    """Queue a background sync for one integration"""
    from calsync.tasks.calendar_tasks import sync_calendar_integration
    sync_calendar_integration.delay(str(integration.id))


class CalendarSyncService:

    def __init__(
            self,
            db: Session,
            providers: CalendarProviderRegistry,
            notifier: Optional[NotificationService] = None,
            read_denial_policy: ReadDenialPolicy = ReadDenialPolicy.FAIL_OPEN,
            batch_size: int = 50,
            error_disable_threshold: Optional[int] = 10,
            retention_days: int = 30,
            dispatcher: Callable[[CalendarIntegration], None] = dispatch_sync_job,
    ):
        self.db = db
        self.providers = providers
        self.notifier = notifier or LoggingNotificationService()
        self.read_denial_policy = read_denial_policy
        self.batch_size = batch_size
        self.error_disable_threshold = error_disable_threshold
        self.retention_days = retention_days
        self.dispatcher = dispatcher

    # ========== PUSH ==========

    def push_booking_to_calendars(self, actor: Actor, booking: BookingSnapshot) -> PushResult:
        if not can_manage_booking(actor, booking.user_id):
            raise AuthorizationDenied("You cannot sync this booking")

        result = PushResult()
        for integration in self._booking_integrations(booking):
            provider = integration.provider
            try:
                if self._push_to_integration(actor, integration, booking):
                    result.synced += 1
                else:
                    result.failed += 1
                    result.errors.append(f"Failed to sync to {provider}")
            except Exception as exc:
                self.db.rollback()
                logger.error(f"Error syncing booking {booking.id} to {provider} integration: {exc}")
                result.failed += 1
                result.retryable = result.retryable or is_retryable(exc)
                result.errors.append(f"Error syncing to {provider}: {exc}")

        logger.info(f"Pushed booking {booking.id}: {result.synced} synced, {result.failed} failed")
        return result

    def _push_to_integration(self, actor: Actor, integration: CalendarIntegration, booking: BookingSnapshot) -> bool:
        adapter = self.providers.for_integration(integration)
        link = self._booking_event(integration, booking.id)
        now = utcnow()

        if link is not None:
            if not adapter.update_event(actor, integration, booking, link.external_event_id):
                return False
            link.external_event_id = adapter.updated_event_id(booking, link.external_event_id)
            link.title = integration.render_event_title(booking)
            link.starts_at = ensure_utc(booking.starts_at)
            link.ends_at = ensure_utc(booking.ends_at)
            link.synced_at = now
        else:
            external_event_id = adapter.create_event(actor, integration, booking)
            if not external_event_id:
                return False
            self.db.add(CalendarEvent(
                calendar_integration_id=integration.id,
                booking_id=booking.id,
                external_event_id=external_event_id,
                title=integration.render_event_title(booking),
                description=integration.render_event_description(booking),
                starts_at=ensure_utc(booking.starts_at),
                ends_at=ensure_utc(booking.ends_at),
                is_all_day=False,
                # the booking itself already occupies the slot internally
                blocks_booking=False,
                block_type=BlockType.NONE.value,
                synced_at=now,
            ))

        self.db.commit()
        return True

    # ========== REMOVE ==========

    def remove_booking_from_calendars(self, actor: Actor, booking: BookingSnapshot) -> RemoveResult:
        if not can_manage_booking(actor, booking.user_id):
            raise AuthorizationDenied("You cannot sync this booking")

        result = RemoveResult()
        links = self.db.query(CalendarEvent).filter(CalendarEvent.booking_id == booking.id).all()

        for link in links:
            integration = link.integration
            provider = integration.provider
            if not integration.is_active:
                # Nothing reachable remotely; drop the local mirror only
                self.db.delete(link)
                self.db.commit()
                continue
            try:
                adapter = self.providers.for_integration(integration)
                if adapter.delete_event(actor, integration, link.external_event_id):
                    self.db.delete(link)
                    self.db.commit()
                    result.removed += 1
                else:
                    result.failed += 1
                    result.errors.append(f"Failed to remove from {provider}")
            except Exception as exc:
                self.db.rollback()
                logger.error(f"Error removing booking {booking.id} from {provider}: {exc}")
                result.failed += 1
                result.retryable = result.retryable or is_retryable(exc)
                result.errors.append(f"Error removing from {provider}: {exc}")

        return result

    # ========== BOOKING LIFECYCLE ==========

    def reschedule_booking(self, actor: Actor, booking: BookingSnapshot) -> PushResult:
        result = self.push_booking_to_calendars(actor, booking)
        self._notify(self.notifier.reschedule_notifications_for_booking, booking.id)
        return result

    def cancel_booking(self, actor: Actor, booking: BookingSnapshot) -> RemoveResult:
        result = self.remove_booking_from_calendars(actor, booking)
        self._notify(self.notifier.cancel_notifications_for_booking, booking.id)
        return result

    @staticmethod
    def _notify(send: Callable[[UUID], None], booking_id: UUID):
        try:
            send(booking_id)
        except Exception as exc:
            logger.warning(f"Notification hook failed for booking {booking_id}: {exc}")

    # ========== PULL ==========

    def pull_external_events(self, actor: Actor, integration: CalendarIntegration,
                             now: Optional[datetime] = None) -> PullResult:
        """Mirror the integration's busy intervals in its configured window (idempotent)"""
        if not can_manage_integration(actor, integration.user_id):
            raise AuthorizationDenied()

        result = PullResult(integration_id=integration.id)
        if not integration.is_active:
            result.success = False
            result.error = "Integration is inactive"
            return result

        now = ensure_utc(now or utcnow())
        settings = integration.effective_sync_settings()
        window_start = now - timedelta(days=settings.sync_past_days)
        window_end = now + timedelta(days=settings.sync_future_days)

        try:
            adapter = self.providers.for_integration(integration)
            intervals = adapter.list_busy_intervals(actor, integration, window_start, window_end)
        except TokenExpiredNoRefresh as exc:
            # The vault already deactivated the integration and counted the failure
            self.db.rollback()
            result.success = False
            result.error = exc.message
            return result
        except Exception as exc:
            self.db.rollback()
            logger.error(f"Pull failed for {integration.provider} integration {integration.id}: {exc}")
            integration.record_sync_failure(str(exc), self.error_disable_threshold)
            self.db.commit()
            result.success = False
            result.error = str(exc)
            result.retryable = is_retryable(exc)
            return result

        capped = len(intervals) > settings.max_events_per_sync
        intervals = intervals[:settings.max_events_per_sync]

        existing = {
            event.external_event_id: event
            for event in self.db.query(CalendarEvent).filter(
                CalendarEvent.calendar_integration_id == integration.id
            ).all()
        }
        seen = set()

        for interval in intervals:
            if interval.id in seen:
                continue
            seen.add(interval.id)

            event = existing.get(interval.id)
            if event is None:
                self.db.add(self._event_from_interval(integration, interval, now))
                result.created += 1
            elif event.is_from_booking:
                # Our own pushed booking echoed back by the provider
                continue
            elif self._apply_interval(event, interval, now):
                result.updated += 1

        if not capped:
            for external_id, event in existing.items():
                if external_id in seen or event.is_from_booking:
                    continue
                if event.overlaps(window_start, window_end):
                    self.db.delete(event)
                    result.deleted += 1

        integration.record_sync_success(now)
        self.db.commit()

        logger.info(
            f"Pulled {integration.provider} integration {integration.id}: "
            f"{result.created} created, {result.updated} updated, {result.deleted} deleted"
        )
        return result

    @staticmethod
    def _event_from_interval(integration: CalendarIntegration, interval: BusyInterval, now: datetime) -> CalendarEvent:
        return CalendarEvent(
            calendar_integration_id=integration.id,
            external_event_id=interval.id,
            title=interval.title,
            starts_at=ensure_utc(interval.start),
            ends_at=ensure_utc(interval.end),
            is_all_day=interval.all_day,
            blocks_booking=interval.busy,
            block_type=(BlockType.FULL if interval.busy else BlockType.NONE).value,
            last_updated_externally=now,
            synced_at=now,
        )

    @staticmethod
    def _apply_interval(event: CalendarEvent, interval: BusyInterval, now: datetime) -> bool:
        changed = (
            event.title != interval.title
            or ensure_utc(event.starts_at) != ensure_utc(interval.start)
            or ensure_utc(event.ends_at) != ensure_utc(interval.end)
            or event.is_all_day != interval.all_day
            or event.blocks_booking != interval.busy
        )
        if changed:
            event.title = interval.title
            event.starts_at = ensure_utc(interval.start)
            event.ends_at = ensure_utc(interval.end)
            event.is_all_day = interval.all_day
            event.blocks_booking = interval.busy
            event.block_type = (BlockType.FULL if interval.busy else BlockType.NONE).value
            event.last_updated_externally = now
            event.synced_at = now
        return changed

    def sync_integration(self, integration_id: UUID, actor: Optional[Actor] = None) -> PullResult:
        """Pull one integration and record the run as a CalendarSyncJob"""
        actor = actor or Actor.system()
        integration = self.db.query(CalendarIntegration).filter_by(id=integration_id).first()
        if integration is None:
            return PullResult(integration_id=integration_id, success=False, error="Integration not found")

        job = CalendarSyncJob(
            calendar_integration_id=integration.id,
            job_type="sync_events",
            job_data={"triggered_by": "system" if actor.is_system else str(actor.user_id)},
        )
        job.mark_processing()
        self.db.add(job)
        self.db.commit()

        result = self.pull_external_events(actor, integration)

        if result.success:
            job.mark_completed(result.events_processed)
        else:
            job.mark_failed(result.error or "Unknown error")
        self.db.commit()
        return result

    # ========== AVAILABILITY ==========

    def check_availability(self, actor: Actor, user_id: UUID, start: datetime, end: datetime,
                           service_id: Optional[UUID] = None) -> AvailabilityResult:
        fail_open = self.read_denial_policy is ReadDenialPolicy.FAIL_OPEN

        if not can_view_integration(actor, user_id):
            logger.warning(f"Actor {actor.user_id} denied availability check for user {user_id}")
            return AvailabilityResult(available=fail_open, error="Unauthorized")

        query = self.db.query(CalendarIntegration).filter(
            CalendarIntegration.user_id == user_id,
            CalendarIntegration.is_active.is_(True),
            CalendarIntegration.auto_block_external_events.is_(True),
        )
        if service_id:
            query = query.filter(or_(
                CalendarIntegration.service_id == service_id,
                CalendarIntegration.service_id.is_(None),
            ))

        result = AvailabilityResult()
        for integration in query.all():
            result.checked_calendars += 1
            try:
                adapter = self.providers.for_integration(integration)
                available, conflicts = adapter.slot_conflicts(actor, integration, start, end)
                if available:
                    continue
                result.conflicts.append(AvailabilityConflict(
                    provider=integration.provider_enum,
                    calendar_name=integration.calendar_name,
                    conflicting_events=conflicts,
                ))
            except Exception as exc:
                logger.warning(f"Availability check failed for {integration.provider} integration {integration.id}: {exc}")
                if not fail_open:
                    result.conflicts.append(AvailabilityConflict(
                        provider=integration.provider_enum,
                        calendar_name=integration.calendar_name,
                        error=str(exc),
                    ))

        result.available = not result.conflicts
        return result

    # ========== SCHEDULING & MAINTENANCE ==========

    def due_integrations(self, now: Optional[datetime] = None) -> List[CalendarIntegration]:
        now = ensure_utc(now or utcnow())
        candidates = self.db.query(CalendarIntegration).filter(
            CalendarIntegration.is_active.is_(True),
            or_(
                CalendarIntegration.last_sync_at.is_(None),
                CalendarIntegration.last_sync_at <= now - MIN_SYNC_FREQUENCY,
            ),
        ).order_by(CalendarIntegration.last_sync_at.asc().nullsfirst()).all()
        return [integration for integration in candidates if integration.is_due_for_sync(now)][:self.batch_size]

    def process_scheduled_syncs(self, now: Optional[datetime] = None) -> ScheduledSyncResult:
        """Hand every due integration to its own background job"""
        result = ScheduledSyncResult()
        for integration in self.due_integrations(now):
            result.processed += 1
            try:
                self.dispatcher(integration)
                result.queued += 1
            except Exception as exc:
                logger.error(f"Failed to queue sync for integration {integration.id}: {exc}")
                result.failed += 1

        logger.info(f"Scheduled syncs: {result.queued} queued, {result.failed} failed")
        return result

    def cleanup_old_events(self, now: Optional[datetime] = None) -> int:
        cutoff = ensure_utc(now or utcnow()) - timedelta(days=self.retention_days)
        deleted = self.db.query(CalendarEvent).filter(
            CalendarEvent.ends_at < cutoff
        ).delete(synchronize_session=False)
        self.db.commit()
        logger.info(f"Removed {deleted} calendar events that ended before {cutoff.isoformat()}")
        return deleted

    # ========== QUERIES ==========

    def _booking_integrations(self, booking: BookingSnapshot) -> List[CalendarIntegration]:
        service_match = CalendarIntegration.service_id.is_(None)
        if booking.service_id:
            service_match = or_(service_match, CalendarIntegration.service_id == booking.service_id)
        return self.db.query(CalendarIntegration).filter(
            CalendarIntegration.user_id == booking.user_id,
            CalendarIntegration.is_active.is_(True),
            CalendarIntegration.sync_bookings.is_(True),
            service_match,
        ).order_by(CalendarIntegration.created_at).all()

    def _booking_event(self, integration: CalendarIntegration, booking_id: UUID) -> Optional[CalendarEvent]:
        return self.db.query(CalendarEvent).filter(
            CalendarEvent.calendar_integration_id == integration.id,
            CalendarEvent.booking_id == booking_id,
        ).first()
