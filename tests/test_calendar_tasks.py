from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from celery.exceptions import Retry
from redis.exceptions import LockError

from calsync.core.exceptions import (
    ConfigurationError,
    ProviderUnavailable,
    TokenExpiredNoRefresh,
    UnsupportedProviderOperation,
)
from calsync.models import CalendarEvent, CalendarSyncJob
from calsync.services.integration.integration_service import CalendarIntegrationService
from calsync.services.sync.calendar_sync_service import CalendarSyncService
from calsync.tasks import calendar_tasks


class DummyLock:
    def __init__(self, acquired=True, release_error=None):
        self.acquired = acquired
        self.release_error = release_error
        self.released = False

    def acquire(self, blocking=True):
        return self.acquired

    def release(self):
        self.released = True
        if self.release_error is not None:
            raise self.release_error


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
def wired(monkeypatch, db_session, vault, registry, dispatched):
    """Point the tasks at the test session and the in-memory adapters"""
    lock = DummyLock()

    @contextmanager
    def test_scope():
        yield db_session

    monkeypatch.setattr(calendar_tasks, "session_scope", test_scope)
    monkeypatch.setattr(
        calendar_tasks,
        "build_sync_service",
        lambda db: CalendarSyncService(db, registry, dispatcher=lambda integration: dispatched.append(integration.id)),
    )
    monkeypatch.setattr(
        calendar_tasks,
        "build_integration_service",
        lambda db: CalendarIntegrationService(db, vault, registry),
    )
    monkeypatch.setattr(calendar_tasks, "integration_sync_lock", lambda integration_id, timeout: lock)
    return lock


def test_sync_task_pulls_and_releases_lock(wired, make_integration, google_adapter, busy, db_session):
    integration = make_integration()
    google_adapter.intervals = [busy("ext-1", datetime(2030, 3, 4, 9, tzinfo=timezone.utc))]

    result = calendar_tasks.sync_calendar_integration.run(str(integration.id))

    assert result == {"status": "success", "created": 1, "updated": 0, "deleted": 0}
    assert wired.released is True
    assert db_session.query(CalendarSyncJob).one().status == "completed"


def test_sync_task_skips_when_another_run_holds_the_lock(wired, make_integration, google_adapter):
    wired.acquired = False
    integration = make_integration()

    result = calendar_tasks.sync_calendar_integration.run(str(integration.id))

    assert result == {"status": "skipped", "reason": "sync_in_progress"}
    assert google_adapter.listed == []


def test_sync_task_retries_transient_failures(wired, make_integration, google_adapter):
    integration = make_integration()
    google_adapter.failures[integration.id] = ProviderUnavailable("Google Calendar API error 503")

    # Outside a worker, Celery re-raises the retry cause
    with pytest.raises(ProviderUnavailable):
        calendar_tasks.sync_calendar_integration.run(str(integration.id))

    assert wired.released is True


def test_sync_task_gives_up_on_permanent_failures(wired, make_integration):
    integration = make_integration(is_active=False)

    result = calendar_tasks.sync_calendar_integration.run(str(integration.id))

    assert result == {"status": "failed", "error": "Integration is inactive"}


def test_sync_task_tolerates_expired_lock(wired, make_integration):
    wired.release_error = LockError("Cannot release an unlocked lock")
    integration = make_integration()

    result = calendar_tasks.sync_calendar_integration.run(str(integration.id))

    assert result["status"] == "success"


def test_retry_backoff_is_capped():
    assert [calendar_tasks._backoff(n) for n in range(5)] == [30, 120, 300, 300, 300]


def test_scheduled_sync_task_dispatches_due_integrations(wired, make_integration, dispatched):
    due = make_integration()
    make_integration(last_sync_at=datetime.now(timezone.utc))

    result = calendar_tasks.process_scheduled_syncs.run()

    assert result == {"processed": 1, "queued": 1, "failed": 0}
    assert dispatched == [due.id]


def test_token_refresh_task(wired, make_integration, google_adapter):
    make_integration(refresh_token="refresh-soon", expires_in=timedelta(minutes=2))

    result = calendar_tasks.refresh_expiring_tokens.run()

    assert result == {"refreshed": 1, "failed": 0}
    assert google_adapter.refreshed == ["refresh-soon"]


def test_cleanup_task(wired, make_integration, add_event, db_session):
    integration = make_integration()
    add_event(integration, "ancient", datetime.now(timezone.utc) - timedelta(days=90))

    assert calendar_tasks.cleanup_old_calendar_events.run() == {"deleted": 1}
    assert db_session.query(CalendarEvent).count() == 0


def test_push_task_accepts_json_payload(wired, make_integration, make_booking, db_session):
    make_integration()
    booking = make_booking()

    result = calendar_tasks.push_booking_to_calendars.run(booking.model_dump(mode="json"))

    assert result == {"synced": 1, "failed": 0, "errors": [], "retryable": False}
    assert str(db_session.query(CalendarEvent).one().booking_id) == str(booking.id)


def test_push_task_retries_partial_failures(wired, make_integration, make_booking, google_adapter):
    integration = make_integration()
    google_adapter.failures[integration.id] = ProviderUnavailable("timeout")

    with pytest.raises(Retry):
        calendar_tasks.push_booking_to_calendars.run(make_booking().model_dump(mode="json"))


def test_remove_task(wired, make_integration, make_booking, google_adapter):
    make_integration()
    booking = make_booking()
    payload = booking.model_dump(mode="json")
    calendar_tasks.push_booking_to_calendars.run(payload)

    result = calendar_tasks.remove_booking_from_calendars.run(payload)

    assert result == {"removed": 1, "failed": 0, "errors": [], "retryable": False}
    assert len(google_adapter.deleted) == 1


@pytest.mark.parametrize("error", [
    ConfigurationError("bad key"),
    UnsupportedProviderOperation("nope"),
    TokenExpiredNoRefresh(),
])
def test_push_task_does_not_retry_permanent_failures(wired, make_integration, make_booking, google_adapter, error):
    healthy, broken = make_integration(), make_integration()
    google_adapter.failures[broken.id] = error

    result = calendar_tasks.push_booking_to_calendars.run(make_booking().model_dump(mode="json"))

    assert (result["synced"], result["failed"], result["retryable"]) == (1, 1, False)
    assert len(google_adapter.created) == 1


def test_remove_task_retries_only_transient_failures(wired, make_integration, make_booking, google_adapter):
    integration = make_integration()
    payload = make_booking().model_dump(mode="json")
    calendar_tasks.push_booking_to_calendars.run(payload)

    google_adapter.failures[integration.id] = UnsupportedProviderOperation("nope")
    result = calendar_tasks.remove_booking_from_calendars.run(payload)
    assert (result["failed"], result["retryable"]) == (1, False)

    google_adapter.failures[integration.id] = ProviderUnavailable("timeout")
    with pytest.raises(Retry):
        calendar_tasks.remove_booking_from_calendars.run(payload)
