from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError
from oauthlib.oauth2.rfc6749.errors import InvalidClientError, InvalidGrantError

import calsync.services.calendar.google_calendar_service as google_mod
from calsync.core.exceptions import (
    ConfigurationError,
    OAuthDenied,
    OAuthMisconfigured,
    ProviderUnavailable,
    TokenExpiredNoRefresh,
)
from calsync.services.calendar.google_calendar_service import GoogleCalendarAdapter


class DummyResp:
    def __init__(self, status, reason="Error"):
        self.status = status
        self.reason = reason


class DummyRequest:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.num_retries = None

    def execute(self, num_retries=0):
        self.num_retries = num_retries
        if self.error is not None:
            raise self.error
        return self.result


class DummyEvents:
    def __init__(self, pages=None, insert_result=None, delete_error=None):
        self.pages = list(pages or [])
        self.insert_result = insert_result
        self.delete_error = delete_error
        self.list_calls = []
        self.inserted = []

    def list(self, **kwargs):
        self.list_calls.append(kwargs)
        return DummyRequest(self.pages.pop(0))

    def insert(self, calendarId, body):
        self.inserted.append((calendarId, body))
        return DummyRequest(self.insert_result)

    def delete(self, calendarId, eventId):
        return DummyRequest({}, error=self.delete_error)


class DummyCalendarList:
    def __init__(self, calendar):
        self.calendar = calendar

    def get(self, calendarId):
        return DummyRequest(self.calendar)


class DummyClient:
    def __init__(self, events=None, calendar=None):
        self._events = events or DummyEvents()
        self._calendar = calendar or {}

    def events(self):
        return self._events

    def calendarList(self):
        return DummyCalendarList(self._calendar)


@pytest.fixture
def adapter(vault):
    return GoogleCalendarAdapter(
        vault,
        client_id="client-id.apps.googleusercontent.com",
        client_secret="client-secret",
        redirect_uri="https://app.example.com/oauth/callback",
        num_retries=2,
    )


def _use_client(monkeypatch, adapter, client):
    monkeypatch.setattr(adapter, "_calendar_client", lambda access_token: client)


def test_missing_client_credentials_is_a_configuration_error(vault):
    with pytest.raises(ConfigurationError):
        GoogleCalendarAdapter(vault, client_id="", client_secret="", redirect_uri="https://x")


def test_auth_url_requests_offline_access_with_state(adapter):
    url = adapter.auth_url("signed-state")

    assert url.startswith("https://accounts.google.com/o/oauth2/auth?")
    assert "state=signed-state" in url
    assert "access_type=offline" in url
    assert "prompt=consent" in url
    assert "client_id=client-id.apps.googleusercontent.com" in url


@pytest.mark.parametrize("hex_color, color_id", [
    ("#5484ed", "9"),
    ("#DC2127", "11"),
    ("#dd2228", "11"),
    ("#4285F4", "9"),
    ("#e1e1e1", "8"),
    ("blue", "9"),
    ("#zzzzzz", "9"),
    (None, "9"),
])
def test_color_id_uses_nearest_palette_entry(hex_color, color_id):
    assert GoogleCalendarAdapter.color_id_for(hex_color) == color_id


def test_event_body_carries_booking_metadata(adapter, make_integration, make_booking):
    integration = make_integration(sync_settings={"reminder_minutes": [10], "calendar_color": "#51b749"})
    booking = make_booking(notes="Bring photos")

    body = adapter.build_event_body(integration, booking)

    assert body["summary"] == "Haircut - Ada Lovelace"
    assert body["start"]["dateTime"] == "2030-03-04T14:00:00+00:00"
    assert body["colorId"] == "10"
    assert body["reminders"] == {"useDefault": False, "overrides": [{"method": "popup", "minutes": 10}]}
    assert body["extendedProperties"]["private"]["booking_id"] == str(booking.id)
    assert body["location"] == "12 Main Street"
    assert body["attendees"][0]["email"] == "ada@example.com"
    assert "Bring photos" not in body["description"]


def test_create_event_returns_provider_id(adapter, make_integration, make_booking, owner, monkeypatch):
    events = DummyEvents(insert_result={"id": "google-event-1"})
    _use_client(monkeypatch, adapter, DummyClient(events=events))
    integration = make_integration(calendar_id="primary")

    event_id = adapter.create_event(owner, integration, make_booking())

    assert event_id == "google-event-1"
    assert events.inserted[0][0] == "primary"


def test_create_event_denied_for_stranger(adapter, make_integration, make_booking, stranger, monkeypatch):
    events = DummyEvents(insert_result={"id": "never"})
    _use_client(monkeypatch, adapter, DummyClient(events=events))

    assert adapter.create_event(stranger, make_integration(), make_booking()) is None
    assert events.inserted == []


def test_list_busy_intervals_follows_pages_and_skips_free_events(adapter, make_integration, owner, monkeypatch):
    events = DummyEvents(pages=[
        {
            "items": [
                {"id": "a", "summary": "Dentist",
                 "start": {"dateTime": "2030-03-04T09:00:00Z"}, "end": {"dateTime": "2030-03-04T10:00:00Z"}},
                {"id": "b", "transparency": "transparent",
                 "start": {"dateTime": "2030-03-04T11:00:00Z"}, "end": {"dateTime": "2030-03-04T12:00:00Z"}},
            ],
            "nextPageToken": "page-2",
        },
        {
            "items": [
                {"id": "c", "start": {"date": "2030-03-05"}, "end": {"date": "2030-03-06"}},
                {"id": "d", "status": "cancelled",
                 "start": {"dateTime": "2030-03-04T13:00:00Z"}, "end": {"dateTime": "2030-03-04T14:00:00Z"}},
            ],
        },
    ])
    _use_client(monkeypatch, adapter, DummyClient(events=events))
    start = datetime(2030, 3, 1, tzinfo=timezone.utc)

    intervals = adapter.list_busy_intervals(owner, make_integration(), start, start + timedelta(days=7))

    assert [interval.id for interval in intervals] == ["a", "c"]
    assert intervals[0].title == "Dentist"
    assert intervals[0].start == datetime(2030, 3, 4, 9, tzinfo=timezone.utc)
    assert intervals[1].all_day is True
    assert intervals[1].title == "Busy"
    assert events.list_calls[1]["pageToken"] == "page-2"
    assert events.list_calls[0]["singleEvents"] is True


def test_slot_availability_ignores_all_day_events(adapter, make_integration, owner, monkeypatch):
    events = DummyEvents(pages=[{
        "items": [{"id": "holiday", "start": {"date": "2030-03-04"}, "end": {"date": "2030-03-05"}}],
    }])
    _use_client(monkeypatch, adapter, DummyClient(events=events))
    start = datetime(2030, 3, 4, 10, tzinfo=timezone.utc)

    assert adapter.is_slot_available(owner, make_integration(), start, start + timedelta(hours=1)) is True


@pytest.mark.parametrize("status", [404, 410])
def test_delete_of_missing_event_counts_as_success(adapter, make_integration, owner, monkeypatch, status):
    error = HttpError(resp=DummyResp(status, "Not Found"), content=b"gone")
    _use_client(monkeypatch, adapter, DummyClient(events=DummyEvents(delete_error=error)))

    assert adapter.delete_event(owner, make_integration(), "evt-1") is True


def test_delete_server_error_is_provider_unavailable(adapter, make_integration, owner, monkeypatch):
    error = HttpError(resp=DummyResp(500, "Backend Error"), content=b"boom")
    _use_client(monkeypatch, adapter, DummyClient(events=DummyEvents(delete_error=error)))

    with pytest.raises(ProviderUnavailable) as excinfo:
        adapter.delete_event(owner, make_integration(), "evt-1")

    assert excinfo.value.status_code == 500


def test_execute_passes_retry_count(adapter):
    request = DummyRequest({"ok": True})

    assert adapter._execute(request) == {"ok": True}
    assert request.num_retries == 2


def test_calendar_info_reads_primary_calendar(adapter, monkeypatch):
    calendar = {"id": "owner@example.com", "summary": "Owner", "timeZone": "Europe/Dublin", "backgroundColor": "#9fe1e7"}
    _use_client(monkeypatch, adapter, DummyClient(calendar=calendar))

    info = adapter.calendar_info("access")

    assert (info.id, info.name, info.timezone, info.color) == (
        "owner@example.com", "Owner", "Europe/Dublin", "#9fe1e7"
    )


def test_exchange_code_maps_oauth_errors(adapter, monkeypatch):
    class DummyFlow:
        def __init__(self, error):
            self.error = error

        def fetch_token(self, code):
            raise self.error

    monkeypatch.setattr(adapter, "_build_flow", lambda: DummyFlow(InvalidGrantError()))
    with pytest.raises(OAuthDenied):
        adapter.exchange_code("expired-code")

    monkeypatch.setattr(adapter, "_build_flow", lambda: DummyFlow(InvalidClientError()))
    with pytest.raises(OAuthMisconfigured):
        adapter.exchange_code("code")


def test_exchange_code_returns_token_bundle(adapter, monkeypatch):
    class DummyCredentials:
        token = "ya29.access"
        refresh_token = "1//refresh"
        expiry = datetime(2030, 1, 1, 12, 0)
        scopes = ["https://www.googleapis.com/auth/calendar"]

    class DummyFlow:
        credentials = DummyCredentials()

        def fetch_token(self, code):
            self.code = code

    monkeypatch.setattr(adapter, "_build_flow", lambda: DummyFlow())

    bundle = adapter.exchange_code("auth-code")

    assert bundle.access_token == "ya29.access"
    assert bundle.refresh_token == "1//refresh"
    assert bundle.expires_at == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_refresh_omits_unchanged_refresh_token(adapter, monkeypatch):
    class DummyCredentials:
        def __init__(self, token, refresh_token, **kwargs):
            self.token = token
            self.refresh_token = refresh_token
            self.expiry = None

        def refresh(self, request):
            self.token = "ya29.fresh"
            self.expiry = datetime(2030, 1, 1, 13, 0)

    monkeypatch.setattr(google_mod, "Credentials", DummyCredentials)

    bundle = adapter.refresh("1//refresh")

    assert bundle.access_token == "ya29.fresh"
    assert bundle.refresh_token is None
    assert bundle.expires_at == datetime(2030, 1, 1, 13, 0, tzinfo=timezone.utc)


def test_refresh_rejection_is_token_expired(adapter, monkeypatch):
    class DummyCredentials:
        def __init__(self, **kwargs):
            pass

        def refresh(self, request):
            raise RefreshError("invalid_grant: Token has been expired or revoked.")

    monkeypatch.setattr(google_mod, "Credentials", DummyCredentials)

    with pytest.raises(TokenExpiredNoRefresh):
        adapter.refresh("1//revoked")


def test_revoke_reports_provider_answer(adapter, monkeypatch):
    calls = []

    class DummyResponse:
        status_code = 200

    def fake_post(url, params, headers, timeout):
        calls.append((url, params))
        return DummyResponse()

    monkeypatch.setattr(google_mod.requests, "post", fake_post)

    assert adapter.revoke("ya29.access") is True
    assert calls == [(GoogleCalendarAdapter.REVOKE_URI, {"token": "ya29.access"})]
