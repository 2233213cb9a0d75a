from __future__ import annotations

import os
from contextlib import nullcontext
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from cryptography.fernet import Fernet

# Settings are read once at import time; point them at throwaway backends first.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CALENDAR_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("SECRET_KEY", "test-state-signing-secret")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")

import pytest  # noqa: E402

from calsync.config.database import SessionLocal, engine  # noqa: E402
from calsync.core.permissions import Actor  # noqa: E402
from calsync.models import Base, CalendarEvent, CalendarIntegration  # noqa: E402
from calsync.schemas.calendar_events import (  # noqa: E402
    BookingSnapshot,
    BusyInterval,
    CalendarInfo,
    CalendarProvider,
)
from calsync.schemas.credentials import FeedCredential, TokenBundle  # noqa: E402
from calsync.services.calendar.base import CalendarProviderAdapter  # noqa: E402
from calsync.services.calendar.providers import CalendarProviderRegistry  # noqa: E402
from calsync.services.credentials.credential_vault import CredentialVault  # noqa: E402
from calsync.utils.datetime_utils import utcnow  # noqa: E402


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio calls the OAuth flow makes"""

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.ttls = {}

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl
        return True

    async def get(self, key):
        return self.values.get(key)

    async def getdel(self, key):
        self.ttls.pop(key, None)
        return self.values.pop(key, None)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            elif self.sets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def srem(self, key, *members):
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        return removed

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def expire(self, key, ttl):
        self.ttls[key] = ttl
        return True

    async def ping(self):
        return True


class DummyAdapter(CalendarProviderAdapter):
    """In-memory provider: records every call, fails on demand per integration"""

    def __init__(self, vault, provider=CalendarProvider.GOOGLE, **kwargs):
        super().__init__(vault, **kwargs)
        self.provider = provider
        self.intervals = []
        self.failures = {}
        self.refresh_failures = set()
        self.created = []
        self.updated = []
        self.deleted = []
        self.listed = []
        self.exchanged = []
        self.refreshed = []
        self.revoked = []
        self.calendar = CalendarInfo(id="primary", name="Work Calendar", timezone="Europe/London", color="#4285F4")
        self.tokens = TokenBundle(
            access_token="access-from-code",
            refresh_token="refresh-from-code",
            expires_at=utcnow() + timedelta(hours=1),
        )

    def auth_url(self, state):
        return f"https://auth.example.test/authorize?state={state}"

    def exchange_code(self, code):
        self.exchanged.append(code)
        return self.tokens

    def refresh(self, refresh_token):
        self.refreshed.append(refresh_token)
        if refresh_token in self.refresh_failures:
            raise RuntimeError("invalid_grant")
        return TokenBundle(access_token=f"refreshed-{refresh_token}", expires_at=utcnow() + timedelta(hours=1))

    def calendar_info(self, access_token):
        return self.calendar

    def revoke(self, access_token):
        self.revoked.append(access_token)
        return True

    def _fail_if_configured(self, integration):
        exc = self.failures.get(integration.id)
        if exc is not None:
            raise exc

    def _create_event(self, integration, booking):
        self._fail_if_configured(integration)
        self.created.append((integration.id, booking.id))
        return f"evt-{booking.reference}-{len(self.created)}"

    def _update_event(self, integration, booking, external_event_id):
        self._fail_if_configured(integration)
        self.updated.append((integration.id, external_event_id))
        return True

    def _delete_event(self, integration, external_event_id):
        self._fail_if_configured(integration)
        self.deleted.append((integration.id, external_event_id))
        return True

    def _list_busy_intervals(self, integration, start, end):
        self._fail_if_configured(integration)
        self.listed.append((integration.id, start, end))
        return list(self.intervals)


@pytest.fixture
def anyio_backend():
    # The services are asyncio-based (asyncio.to_thread); run async tests on asyncio only.
    return "asyncio"


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def encryption_key():
    return os.environ["CALENDAR_ENCRYPTION_KEY"]


@pytest.fixture
def vault(db_session, encryption_key):
    return CredentialVault(db_session, encryption_key=encryption_key, refresh_lock=lambda _id: nullcontext())


@pytest.fixture
def owner_id():
    return uuid4()


@pytest.fixture
def owner(owner_id):
    return Actor.for_user(owner_id)


@pytest.fixture
def stranger():
    return Actor.for_user(uuid4())


@pytest.fixture
def google_adapter(vault):
    return DummyAdapter(vault, CalendarProvider.GOOGLE)


@pytest.fixture
def ical_adapter(vault):
    return DummyAdapter(vault, CalendarProvider.ICAL)


@pytest.fixture
def registry(google_adapter, ical_adapter):
    return CalendarProviderRegistry.from_adapters([google_adapter, ical_adapter])


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_integration(db_session, vault, owner_id):
    def _make(provider=CalendarProvider.GOOGLE, user_id=None, calendar_id=None, access_token="access-1",
              refresh_token="refresh-1", expires_in=timedelta(hours=1), **fields):
        integration = CalendarIntegration(
            user_id=user_id or owner_id,
            provider=provider.value,
            calendar_id=calendar_id or f"cal-{uuid4().hex[:8]}",
            calendar_name=fields.pop("calendar_name", "Work Calendar"),
            calendar_timezone="UTC",
            **fields,
        )
        if provider is CalendarProvider.ICAL:
            bundle = TokenBundle(access_token=FeedCredential(url=access_token).to_token(), token_type="ical")
        else:
            bundle = TokenBundle(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=utcnow() + expires_in if expires_in is not None else None,
            )
        vault.store_tokens(integration, bundle)
        db_session.add(integration)
        db_session.commit()
        db_session.refresh(integration)
        return integration

    return _make


@pytest.fixture
def make_booking(owner_id):
    def _make(**fields):
        starts_at = fields.pop("starts_at", datetime(2030, 3, 4, 14, 0, tzinfo=timezone.utc))
        values = {
            "id": uuid4(),
            "user_id": owner_id,
            "service_name": "Haircut",
            "starts_at": starts_at,
            "ends_at": starts_at + timedelta(minutes=45),
            "client_name": "Ada Lovelace",
            "client_email": "ada@example.com",
            "location": "12 Main Street",
            "reference": "BK-1001",
        }
        values.update(fields)
        return BookingSnapshot(**values)

    return _make


@pytest.fixture
def busy():
    def _make(event_id, start, minutes=60, **fields):
        return BusyInterval(id=event_id, start=start, end=start + timedelta(minutes=minutes), **fields)

    return _make


@pytest.fixture
def add_event(db_session):
    def _add(integration, external_event_id, start, minutes=60, **fields):
        event = CalendarEvent(
            calendar_integration_id=integration.id,
            external_event_id=external_event_id,
            title=fields.pop("title", "Busy"),
            starts_at=start,
            ends_at=start + timedelta(minutes=minutes),
            **fields,
        )
        db_session.add(event)
        db_session.commit()
        return event

    return _add
