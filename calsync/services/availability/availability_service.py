# ===== calsync/services/availability/availability_service.py =====
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional
from uuid import UUID
from sqlalchemy import or_
from sqlalchemy.orm import Session
import logging

from calsync.core.exceptions import DataConflict
from calsync.core.permissions import Actor, can_view_integration
from calsync.models import CalendarEvent, CalendarIntegration
from calsync.schemas.calendar_events import BusyInterval
from calsync.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open intervals [a) and [b) conflict iff start_a < end_b and end_a > start_b"""
    return ensure_utc(start_a) < ensure_utc(end_b) and ensure_utc(end_a) > ensure_utc(start_b)


def conflicting_intervals(intervals: Iterable[BusyInterval], start: datetime, end: datetime) -> List[BusyInterval]:
    """Busy, timed intervals overlapping [start, end); all-day events never block"""
    return [
        interval for interval in intervals
        if interval.blocks() and intervals_overlap(interval.start, interval.end, start, end)
    ]


def is_slot_free(intervals: Iterable[BusyInterval], start: datetime, end: datetime) -> bool:
    return not conflicting_intervals(intervals, start, end)


class AvailabilityService:
    """Overlap queries and free-gap computation over the local event mirror"""

    @staticmethod
    def _visible(actor: Actor, integration: CalendarIntegration) -> bool:
        if can_view_integration(actor, integration.user_id):
            return True
        logger.warning(f"Actor {actor.user_id} denied read access to integration {integration.id}")
        return False

    @staticmethod
    def find_conflicting_events(
            db: Session,
            actor: Actor,
            integration: CalendarIntegration,
            start: datetime,
            end: datetime,
            exclude_event_id: Optional[UUID] = None,
    ) -> List[CalendarEvent]:
        """Blocking events of one integration overlapping [start, end)"""
        if not AvailabilityService._visible(actor, integration):
            return []

        query = db.query(CalendarEvent).filter(
            CalendarEvent.calendar_integration_id == integration.id,
            CalendarEvent.blocks_booking.is_(True),
            CalendarEvent.starts_at < ensure_utc(end),
            CalendarEvent.ends_at > ensure_utc(start),
        )
        if exclude_event_id:
            query = query.filter(CalendarEvent.id != exclude_event_id)
        return query.order_by(CalendarEvent.starts_at).all()

    @staticmethod
    def find_user_conflicts(
            db: Session,
            actor: Actor,
            user_id: UUID,
            start: datetime,
            end: datetime,
            service_id: Optional[UUID] = None,
    ) -> List[CalendarEvent]:
        """Blocking mirror events across every auto-blocking integration of a user"""
        query = db.query(CalendarIntegration).filter(
            CalendarIntegration.user_id == user_id,
            CalendarIntegration.is_active.is_(True),
            CalendarIntegration.auto_block_external_events.is_(True),
        )
        if service_id:
            query = query.filter(or_(
                CalendarIntegration.service_id == service_id,
                CalendarIntegration.service_id.is_(None),
            ))

        conflicts: List[CalendarEvent] = []
        for integration in query.all():
            conflicts.extend(
                event for event in AvailabilityService.find_conflicting_events(db, actor, integration, start, end)
                if not event.is_all_day
            )
        return conflicts

    @staticmethod
    def assert_no_conflicts(
            db: Session,
            actor: Actor,
            integration: CalendarIntegration,
            start: datetime,
            end: datetime,
            exclude_event_id: Optional[UUID] = None,
    ):
        """Raise DataConflict listing the titles of overlapping blocking events"""
        conflicts = AvailabilityService.find_conflicting_events(
            db, actor, integration, start, end, exclude_event_id
        )
        if conflicts:
            raise DataConflict([event.title or "Busy" for event in conflicts])

    @staticmethod
    def get_availability_gaps(
            db: Session,
            actor: Actor,
            integration: CalendarIntegration,
            start: datetime,
            end: datetime,
            min_gap_minutes: int = 30,
    ) -> List[Dict]:
        """Free windows of at least min_gap_minutes between timed blocking events"""
        start, end = ensure_utc(start), ensure_utc(end)
        events = [
            event for event in AvailabilityService.find_conflicting_events(db, actor, integration, start, end)
            if not event.is_all_day
        ]

        min_gap = timedelta(minutes=min_gap_minutes)
        gaps = []
        cursor = start
        for event in sorted(events, key=lambda e: ensure_utc(e.starts_at)):
            event_start = ensure_utc(event.starts_at)
            if event_start - cursor >= min_gap:
                gaps.append(_gap(cursor, event_start))
            cursor = max(cursor, ensure_utc(event.ends_at))

        if end - cursor >= min_gap:
            gaps.append(_gap(cursor, end))
        return gaps

    @staticmethod
    def search_events(
            db: Session,
            actor: Actor,
            integration: CalendarIntegration,
            text: Optional[str] = None,
            start: Optional[datetime] = None,
            end: Optional[datetime] = None,
            blocking_only: bool = False,
            limit: int = 50,
    ) -> List[CalendarEvent]:
        if not AvailabilityService._visible(actor, integration):
            return []

        query = db.query(CalendarEvent).filter(CalendarEvent.calendar_integration_id == integration.id)
        if text:
            pattern = f"%{text}%"
            query = query.filter(or_(CalendarEvent.title.ilike(pattern), CalendarEvent.description.ilike(pattern)))
        if start:
            query = query.filter(CalendarEvent.ends_at > ensure_utc(start))
        if end:
            query = query.filter(CalendarEvent.starts_at < ensure_utc(end))
        if blocking_only:
            query = query.filter(CalendarEvent.blocks_booking.is_(True))
        return query.order_by(CalendarEvent.starts_at).limit(limit).all()

    @staticmethod
    def get_event_stats(db: Session, actor: Actor, integration: CalendarIntegration, now: Optional[datetime] = None) -> Dict:
        if not AvailabilityService._visible(actor, integration):
            return {}

        now = ensure_utc(now or utcnow())
        events = db.query(CalendarEvent).filter(CalendarEvent.calendar_integration_id == integration.id).all()

        blocking = [e for e in events if e.blocks_booking]
        timed_blocking = [e for e in blocking if not e.is_all_day]
        blocked_minutes = sum(e.duration_minutes for e in timed_blocking)
        days = Counter(ensure_utc(e.starts_at).strftime("%A") for e in events)

        return {
            "total_events": len(events),
            "blocking_events": len(blocking),
            "all_day_events": sum(1 for e in events if e.is_all_day),
            "upcoming_events": sum(1 for e in events if ensure_utc(e.starts_at) > now),
            "past_events": sum(1 for e in events if ensure_utc(e.ends_at) < now),
            "total_blocked_hours": round(blocked_minutes / 60, 2),
            "busiest_day": days.most_common(1)[0][0] if days else None,
            "average_event_duration": (
                round(sum(e.duration_minutes for e in events) / len(events), 1) if events else 0
            ),
        }


def _gap(start: datetime, end: datetime) -> Dict:
    return {
        "start": start,
        "end": end,
        "duration_minutes": int((end - start).total_seconds() // 60),
    }
