# calsync/services/calendar/providers.py
"""Adapter selection by CalendarProvider"""
from datetime import timedelta
from typing import Callable, Dict, Iterable, Optional, Union

from sqlalchemy.orm import Session

from calsync.config.settings import Settings, get_settings
from calsync.core.exceptions import ConfigurationError
from calsync.core.permissions import ReadDenialPolicy
from calsync.models import CalendarIntegration
from calsync.schemas.calendar_events import CalendarProvider
from calsync.services.calendar.base import CalendarProviderAdapter
from calsync.services.calendar.google_calendar_service import GoogleCalendarAdapter
from calsync.services.calendar.ical_service import ICalFeedAdapter
from calsync.services.credentials.credential_vault import CredentialVault

AdapterFactory = Callable[[], CalendarProviderAdapter]


class CalendarProviderRegistry:
    """Lazily builds one adapter per provider so an unconfigured provider only fails when used"""

    def __init__(self, factories: Dict[CalendarProvider, AdapterFactory]):
        self._factories = dict(factories)
        self._adapters: Dict[CalendarProvider, CalendarProviderAdapter] = {}

    @classmethod
    def from_adapters(cls, adapters: Iterable[CalendarProviderAdapter]) -> "CalendarProviderRegistry":
        registry = cls({})
        for adapter in adapters:
            registry._adapters[adapter.provider] = adapter
        return registry

    def get(self, provider: Union[CalendarProvider, str]) -> CalendarProviderAdapter:
        if not isinstance(provider, CalendarProvider):
            provider = CalendarProvider.parse(provider)
        if provider not in self._adapters:
            factory = self._factories.get(provider)
            if factory is None:
                raise ConfigurationError(f"No adapter configured for calendar provider: {provider.value}")
            self._adapters[provider] = factory()
        return self._adapters[provider]

    def for_integration(self, integration: CalendarIntegration) -> CalendarProviderAdapter:
        return self.get(integration.provider_enum)


def read_denial_policy(settings: Settings) -> ReadDenialPolicy:
    try:
        return ReadDenialPolicy(settings.CALENDAR_READ_DENIAL_POLICY)
    except ValueError:
        raise ConfigurationError(f"Unknown CALENDAR_READ_DENIAL_POLICY: {settings.CALENDAR_READ_DENIAL_POLICY}")


def build_vault(db: Session, settings: Optional[Settings] = None) -> CredentialVault:
    settings = settings or get_settings()
    return CredentialVault(
        db,
        encryption_key=settings.CALENDAR_ENCRYPTION_KEY,
        refresh_buffer=timedelta(minutes=settings.TOKEN_REFRESH_BUFFER_MINUTES),
    )


def build_provider_registry(vault: CredentialVault, settings: Optional[Settings] = None) -> CalendarProviderRegistry:
    settings = settings or get_settings()
    policy = read_denial_policy(settings)

    return CalendarProviderRegistry({
        CalendarProvider.GOOGLE: lambda: GoogleCalendarAdapter(
            vault,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            redirect_uri=settings.GOOGLE_REDIRECT_URI,
            timeout=settings.GOOGLE_API_TIMEOUT_SECONDS,
            num_retries=settings.GOOGLE_API_NUM_RETRIES,
            read_denial_policy=policy,
        ),
        CalendarProvider.ICAL: lambda: ICalFeedAdapter(
            vault,
            setup_url=settings.ICAL_SETUP_URL,
            export_dir=settings.ICAL_EXPORT_DIR,
            app_url=settings.APP_URL,
            organizer_email=settings.ICAL_ORGANIZER_EMAIL,
            validation_timeout=settings.ICAL_VALIDATION_TIMEOUT_SECONDS,
            fetch_timeout=settings.ICAL_FETCH_TIMEOUT_SECONDS,
            fetch_retries=settings.ICAL_FETCH_RETRIES,
            backoff_seconds=settings.ICAL_FETCH_BACKOFF_SECONDS,
            read_denial_policy=policy,
        ),
    })
