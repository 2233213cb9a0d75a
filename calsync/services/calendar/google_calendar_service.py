# calsync/services/calendar/google_calendar_service.py
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import httplib2
import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
import logging

from calsync.core.exceptions import (
    ConfigurationError,
    ProviderUnavailable,
    TokenExpiredNoRefresh,
    oauth_error_for,
)
from calsync.core.permissions import ReadDenialPolicy
from calsync.models import CalendarIntegration
from calsync.schemas.calendar_events import BookingSnapshot, BusyInterval, CalendarInfo, CalendarProvider
from calsync.schemas.credentials import TokenBundle
from calsync.services.calendar.base import CalendarProviderAdapter
from calsync.services.credentials.credential_vault import CredentialVault
from calsync.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(seconds=3600)
MAX_EVENT_PAGES = 10


class _TimeoutRequest(Request):
    """google-auth transport with an explicit per-call timeout"""

    def __init__(self, timeout: int, session=None):
        super().__init__(session)
        self._timeout = timeout

    def __call__(self, *args, **kwargs):
        kwargs.setdefault("timeout", self._timeout)
        return super().__call__(*args, **kwargs)


class GoogleCalendarAdapter(CalendarProviderAdapter):
    provider = CalendarProvider.GOOGLE

    SCOPES = [
        'https://www.googleapis.com/auth/calendar',
        'https://www.googleapis.com/auth/calendar.events',
    ]
    AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
    TOKEN_URI = "https://oauth2.googleapis.com/token"
    REVOKE_URI = "https://oauth2.googleapis.com/revoke"

    # Google's fixed event palette (colorId -> background)
    COLOR_PALETTE = {
        "#a4bdfc": "1",
        "#7ae7bf": "2",
        "#dbadff": "3",
        "#ff887c": "4",
        "#fbd75b": "5",
        "#ffb878": "6",
        "#46d6db": "7",
        "#e1e1e1": "8",
        "#5484ed": "9",
        "#51b749": "10",
        "#dc2127": "11",
    }
    FALLBACK_COLOR_ID = "9"

    def __init__(
            self,
            vault: CredentialVault,
            client_id: str,
            client_secret: str,
            redirect_uri: str,
            timeout: int = 10,
            num_retries: int = 3,
            read_denial_policy: ReadDenialPolicy = ReadDenialPolicy.FAIL_OPEN,
    ):
        super().__init__(vault, read_denial_policy)
        if not client_id or not client_secret:
            raise ConfigurationError("Google Calendar client credentials are not configured")
        if not redirect_uri:
            raise ConfigurationError("GOOGLE_REDIRECT_URI is not set")

        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.num_retries = num_retries

        # OAuth credentials from Google Cloud Console
        self.client_config = {
            "web": {
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uris": [redirect_uri],
                "auth_uri": self.AUTH_URI,
                "token_uri": self.TOKEN_URI,
            }
        }

    # ========== AUTHORIZATION FLOW ==========

    def _build_flow(self) -> Flow:
        # The code exchange happens in a later request; no PKCE verifier to carry over
        return Flow.from_client_config(
            self.client_config,
            scopes=self.SCOPES,
            redirect_uri=self.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def auth_url(self, state: str) -> str:
        authorization_url, _ = self._build_flow().authorization_url(
            access_type='offline',  # Gets refresh token
            include_granted_scopes='true',
            prompt='consent',  # Force consent screen to get refresh token
            state=state,
        )
        return authorization_url

    def exchange_code(self, code: str) -> TokenBundle:
        flow = self._build_flow()
        try:
            flow.fetch_token(code=code)
        except OAuth2Error as exc:
            logger.error(f"Google rejected authorization code: {exc.error}")
            raise oauth_error_for(exc.error) from exc
        except requests.RequestException as exc:
            raise ProviderUnavailable(f"Google token endpoint unreachable: {exc}") from exc

        credentials = flow.credentials
        logger.info("Successfully exchanged authorization code for Google tokens")
        return TokenBundle(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=ensure_utc(credentials.expiry) or utcnow() + DEFAULT_TOKEN_LIFETIME,
            scope=" ".join(credentials.scopes or self.SCOPES),
        )

    def refresh(self, refresh_token: str) -> TokenBundle:
        """Refresh expired access token using refresh token"""
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.TOKEN_URI,
            client_id=self.client_config['web']['client_id'],
            client_secret=self.client_config['web']['client_secret'],
        )
        try:
            credentials.refresh(_TimeoutRequest(self.timeout))
        except RefreshError as exc:
            raise TokenExpiredNoRefresh(f"Google refused the refresh token: {exc}") from exc
        except TransportError as exc:
            raise ProviderUnavailable(f"Google token endpoint unreachable: {exc}") from exc

        return TokenBundle(
            access_token=credentials.token,
            # Google usually omits a new refresh token; the vault keeps the old one
            refresh_token=credentials.refresh_token if credentials.refresh_token != refresh_token else None,
            expires_at=ensure_utc(credentials.expiry) or utcnow() + DEFAULT_TOKEN_LIFETIME,
        )

    def calendar_info(self, access_token: str) -> CalendarInfo:
        client = self._calendar_client(access_token)
        calendar = self._execute(client.calendarList().get(calendarId='primary'))
        return CalendarInfo(
            id=calendar.get('id', 'primary'),
            name=calendar.get('summaryOverride') or calendar.get('summary') or 'Primary Calendar',
            timezone=calendar.get('timeZone') or 'UTC',
            color=calendar.get('backgroundColor') or '#4285F4',
        )

    def revoke(self, access_token: str) -> bool:
        try:
            response = requests.post(
                self.REVOKE_URI,
                params={'token': access_token},
                headers={'content-type': 'application/x-www-form-urlencoded'},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning(f"Failed to revoke Google token: {exc}")
            return False
        return response.status_code == 200

    def instructions(self) -> List[str]:
        return [
            "You'll be redirected to Google to sign in.",
            "Grant access to your Google Calendar.",
            "Bookings will be added to your primary calendar.",
            "Busy times in Google Calendar can block new bookings.",
        ]

    # ========== EVENTS ==========

    def _create_event(self, integration: CalendarIntegration, booking: BookingSnapshot) -> Optional[str]:
        client = self._authorized_client(integration)
        event = self._execute(client.events().insert(
            calendarId=integration.calendar_id,
            body=self.build_event_body(integration, booking),
        ))
        logger.info(f"Created Google event {event.get('id')} for booking {booking.reference}")
        return event.get('id')

    def _update_event(self, integration: CalendarIntegration, booking: BookingSnapshot, external_event_id: str) -> bool:
        client = self._authorized_client(integration)
        self._execute(client.events().update(
            calendarId=integration.calendar_id,
            eventId=external_event_id,
            body=self.build_event_body(integration, booking),
        ))
        return True

    def _delete_event(self, integration: CalendarIntegration, external_event_id: str) -> bool:
        client = self._authorized_client(integration)
        try:
            self._execute(client.events().delete(
                calendarId=integration.calendar_id,
                eventId=external_event_id,
            ))
        except ProviderUnavailable as exc:
            if exc.status_code in (404, 410):
                logger.info(f"Google event {external_event_id} already deleted")
                return True
            raise
        return True

    def _list_busy_intervals(self, integration: CalendarIntegration,
                             start: datetime, end: datetime) -> List[BusyInterval]:
        client = self._authorized_client(integration)
        intervals: List[BusyInterval] = []
        page_token = None

        for _ in range(MAX_EVENT_PAGES):
            response = self._execute(client.events().list(
                calendarId=integration.calendar_id,
                timeMin=ensure_utc(start).isoformat(),
                timeMax=ensure_utc(end).isoformat(),
                singleEvents=True,
                orderBy='startTime',
                maxResults=250,
                pageToken=page_token,
            ))
            for item in response.get('items', []):
                interval = self._to_busy_interval(item)
                if interval:
                    intervals.append(interval)
            page_token = response.get('nextPageToken')
            if not page_token:
                break

        return intervals

    # ========== HELPERS ==========

    def build_event_body(self, integration: CalendarIntegration, booking: BookingSnapshot) -> Dict:
        settings = integration.effective_sync_settings()
        tz = integration.calendar_timezone or 'UTC'
        body = {
            'summary': integration.render_event_title(booking),
            'description': integration.render_event_description(booking),
            'start': {'dateTime': ensure_utc(booking.starts_at).isoformat(), 'timeZone': tz},
            'end': {'dateTime': ensure_utc(booking.ends_at).isoformat(), 'timeZone': tz},
            'colorId': self.color_id_for(settings.calendar_color),
            'reminders': {
                'useDefault': False,
                'overrides': [{'method': 'popup', 'minutes': m} for m in settings.reminder_minutes],
            },
            'extendedProperties': {
                'private': {'booking_id': str(booking.id), 'booking_reference': booking.reference},
            },
        }
        if settings.include_location and booking.location:
            body['location'] = booking.location
        if settings.include_client_name and booking.client_email:
            body['attendees'] = [{
                'email': booking.client_email,
                'displayName': booking.client_name or booking.client_email,
                'responseStatus': 'accepted',
            }]
        return body

    @classmethod
    def color_id_for(cls, hex_color: Optional[str]) -> str:
        """Nearest palette colorId; malformed colors get the fallback swatch"""
        target = _parse_hex(hex_color)
        if target is None:
            return cls.FALLBACK_COLOR_ID
        exact = cls.COLOR_PALETTE.get(hex_color.lower())
        if exact:
            return exact

        def distance(swatch: str) -> int:
            rgb = _parse_hex(swatch)
            return sum((a - b) ** 2 for a, b in zip(rgb, target))

        nearest = min(cls.COLOR_PALETTE, key=distance)
        return cls.COLOR_PALETTE[nearest]

    @staticmethod
    def _to_busy_interval(item: Dict) -> Optional[BusyInterval]:
        if item.get('transparency') == 'transparent' or item.get('status') == 'cancelled':
            return None

        start, all_day = _parse_event_time(item.get('start') or {})
        end, _ = _parse_event_time(item.get('end') or {})
        if start is None or end is None:
            return None

        return BusyInterval(
            id=item.get('id', ''),
            title=item.get('summary') or 'Busy',
            start=start,
            end=end,
            all_day=all_day,
            busy=True,
        )

    def _authorized_client(self, integration: CalendarIntegration):
        access_token = self.vault.get_valid_access_token(integration, self)
        return self._calendar_client(access_token)

    def _calendar_client(self, access_token: str):
        http = AuthorizedHttp(Credentials(token=access_token), http=httplib2.Http(timeout=self.timeout))
        return build('calendar', 'v3', http=http, cache_discovery=False)

    def _execute(self, request):
        """Run an API request with googleapiclient's exponential-backoff retries"""
        try:
            return request.execute(num_retries=self.num_retries)
        except HttpError as exc:
            status = exc.resp.status if exc.resp is not None else None
            raise ProviderUnavailable(f"Google Calendar API error {status}: {exc.reason}", status_code=status) from exc
        except (OSError, httplib2.HttpLib2Error) as exc:
            raise ProviderUnavailable(f"Google Calendar API unreachable: {exc}") from exc


def _parse_hex(value: Optional[str]) -> Optional[Tuple[int, int, int]]:
    if not value or len(value) != 7 or not value.startswith('#'):
        return None
    try:
        return int(value[1:3], 16), int(value[3:5], 16), int(value[5:7], 16)
    except ValueError:
        return None


def _parse_event_time(value: Dict) -> Tuple[Optional[datetime], bool]:
    if value.get('dateTime'):
        parsed = datetime.fromisoformat(value['dateTime'].replace('Z', '+00:00'))
        return ensure_utc(parsed), False
    if value.get('date'):
        day = datetime.strptime(value['date'], '%Y-%m-%d')
        return day.replace(tzinfo=timezone.utc), True
    return None, False
