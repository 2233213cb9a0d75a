# calsync/services/calendar/ical_service.py
import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlencode, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from calsync.core.exceptions import OAuthFlowError, ProviderUnavailable, UnsupportedProviderOperation
from calsync.core.permissions import ReadDenialPolicy
from calsync.models import CalendarIntegration
from calsync.schemas.calendar_events import BookingSnapshot, BusyInterval, CalendarInfo, CalendarProvider
from calsync.schemas.credentials import FeedCredential, TokenBundle
from calsync.services.calendar.base import CalendarProviderAdapter
from calsync.services.credentials.credential_vault import CredentialVault
from calsync.utils import ical_codec
from calsync.utils.datetime_utils import ensure_utc

logger = logging.getLogger(__name__)


class ICalFeedAdapter(CalendarProviderAdapter):
    """
    Read-only iCal/CalDAV subscription.

    There is no OAuth: the user submits a feed URL, which is validated by downloading
    it. Pushed bookings are written as .ics files under the export directory.
    """

    provider = CalendarProvider.ICAL
    DEFAULT_COLOR = "#34A853"
    ALLOWED_SCHEMES = ("http", "https")

    def __init__(
            self,
            vault: CredentialVault,
            setup_url: str,
            export_dir: str,
            app_url: str,
            organizer_email: Optional[str] = None,
            validation_timeout: int = 10,
            fetch_timeout: int = 30,
            fetch_retries: int = 3,
            backoff_seconds: float = 1.0,
            read_denial_policy: ReadDenialPolicy = ReadDenialPolicy.FAIL_OPEN,
    ):
        super().__init__(vault, read_denial_policy)
        self.setup_url = setup_url
        self.export_dir = Path(export_dir)
        self.uid_domain = urlparse(app_url).netloc or app_url
        self.organizer_email = organizer_email or None
        self.validation_timeout = validation_timeout
        self.fetch_timeout = fetch_timeout

        self._validation_session = requests.Session()
        self._feed_session = requests.Session()
        retry = Retry(
            total=fetch_retries,
            backoff_factor=backoff_seconds,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset(["GET"]),
        )
        self._feed_session.mount("http://", HTTPAdapter(max_retries=retry))
        self._feed_session.mount("https://", HTTPAdapter(max_retries=retry))

    # ========== AUTHORIZATION FLOW ==========

    def auth_url(self, state: str) -> str:
        return f"{self.setup_url}?{urlencode({'state': state, 'provider': self.provider.value})}"

    def exchange_code(self, code: str) -> TokenBundle:
        """The 'code' is the submitted feed URL"""
        url = normalize_feed_url(code)
        parsed = urlparse(url)
        if parsed.scheme not in self.ALLOWED_SCHEMES or not parsed.netloc:
            raise OAuthFlowError("Invalid iCal URL format")

        try:
            data = self._download(url, self.validation_timeout, with_retries=False)
        except ProviderUnavailable as exc:
            raise OAuthFlowError("Unable to access the iCal feed URL") from exc

        if not ical_codec.is_calendar_document(data):
            raise OAuthFlowError("URL does not point to a valid iCal feed")

        logger.info(f"Validated iCal feed on host {parsed.netloc}")
        return TokenBundle(
            access_token=FeedCredential(url=url).to_token(),
            refresh_token=None,
            expires_at=None,
            token_type="ical",
        )

    def refresh(self, refresh_token: str) -> TokenBundle:
        raise UnsupportedProviderOperation("iCal feeds do not support token refresh")

    def calendar_info(self, access_token: str) -> CalendarInfo:
        url = FeedCredential.from_token(access_token).url
        data = self._download(url, self.fetch_timeout)
        return CalendarInfo(
            id=hashlib.md5(url.encode()).hexdigest(),
            name=ical_codec.extract_calendar_name(data),
            timezone=ical_codec.extract_timezone(data),
            color=self.DEFAULT_COLOR,
        )

    def instructions(self) -> List[str]:
        return [
            "Find the iCal/ICS link in your calendar application's sharing settings.",
            "Paste the feed URL in the form provided.",
            "Busy times from the feed can block new bookings.",
            "Bookings are exported as .ics files you can import into your calendar.",
        ]

    # ========== EVENTS ==========

    def _create_event(self, integration: CalendarIntegration, booking: BookingSnapshot) -> Optional[str]:
        settings = integration.effective_sync_settings()
        attendee = None
        if settings.include_client_name and booking.client_email:
            attendee = ical_codec.Attendee(email=booking.client_email, name=booking.client_name)

        content = ical_codec.generate_event(
            uid=f"booking-{booking.id}@{self.uid_domain}",
            start=booking.starts_at,
            end=booking.ends_at,
            summary=integration.render_event_title(booking),
            description=integration.render_event_description(booking),
            location=booking.location if settings.include_location else None,
            organizer_email=self.organizer_email,
            attendee=attendee,
            reminder_minutes=settings.reminder_minutes,
        )

        filename = self.export_filename(booking)
        path = self.export_path(integration, filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8", newline="")
        logger.info(f"Wrote iCal export {filename} for integration {integration.id}")
        return filename

    @staticmethod
    def export_filename(booking: BookingSnapshot) -> str:
        return f"booking-{booking.reference}.ics"

    def updated_event_id(self, booking: BookingSnapshot, external_event_id: str) -> str:
        # a changed booking reference renames the export
        return self.export_filename(booking)

    def _update_event(self, integration: CalendarIntegration, booking: BookingSnapshot, external_event_id: str) -> bool:
        filename = self._create_event(integration, booking)
        if filename and filename != external_event_id:
            self._delete_event(integration, external_event_id)
        return filename is not None

    def _delete_event(self, integration: CalendarIntegration, external_event_id: str) -> bool:
        self.export_path(integration, external_event_id).unlink(missing_ok=True)
        return True

    def _list_busy_intervals(self, integration: CalendarIntegration,
                             start: datetime, end: datetime) -> List[BusyInterval]:
        data = self._download(self._feed_url(integration), self.fetch_timeout)
        events = ical_codec.parse_events(data, ensure_utc(start), ensure_utc(end))
        return [
            BusyInterval(
                id=event.uid,
                title=event.summary,
                start=event.start,
                end=event.end,
                all_day=event.all_day,
                busy=event.busy,
            )
            for event in events
        ]

    # ========== HELPERS ==========

    def export_path(self, integration: CalendarIntegration, filename: str) -> Path:
        # Generated names only; never let a stored id escape the export directory
        return self.export_dir / str(integration.id) / Path(filename).name

    def _feed_url(self, integration: CalendarIntegration) -> str:
        credential = self.vault.load_credential(integration)
        if not isinstance(credential, FeedCredential):
            raise ProviderUnavailable(f"Integration {integration.id} has no feed credential")
        return credential.url

    def _download(self, url: str, timeout: int, with_retries: bool = True) -> str:
        session = self._feed_session if with_retries else self._validation_session
        host = urlparse(url).netloc
        try:
            response = session.get(url, timeout=timeout, headers={"Accept": "text/calendar, */*"})
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning(f"iCal feed download from {host} failed: {exc.__class__.__name__}")
            raise ProviderUnavailable(f"Failed to fetch iCal feed from {host}") from exc
        return response.text


def normalize_feed_url(url: str) -> str:
    url = (url or "").strip()
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://"):]
    return url
