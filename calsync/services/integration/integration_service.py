# calsync/services/integration/integration_service.py
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calsync.core.exceptions import AuthorizationDenied, TokenExpiredNoRefresh
from calsync.core.permissions import Actor, can_create_integration_for, can_manage_integration, can_view_integration
from calsync.models import CalendarIntegration
from calsync.schemas.calendar_events import CalendarInfo, CalendarProvider, IntegrationStatus
from calsync.schemas.credentials import TokenBundle
from calsync.schemas.sync_settings import IntegrationSettingsUpdate, SyncSettings
from calsync.services.calendar.providers import CalendarProviderRegistry
from calsync.services.credentials.credential_vault import CredentialVault
from calsync.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class CalendarIntegrationService:
    """CRUD, health and token upkeep for calendar integration records"""

    def __init__(self, db: Session, vault: CredentialVault, providers: CalendarProviderRegistry):
        self.db = db
        self.vault = vault
        self.providers = providers

    @staticmethod
    def default_sync_settings() -> Dict:
        return SyncSettings().model_dump()

    # ========== CREATE / UPSERT ==========

    def upsert_from_oauth(
            self,
            actor: Actor,
            user_id: UUID,
            provider: CalendarProvider,
            calendar: CalendarInfo,
            tokens: TokenBundle,
            service_id: Optional[UUID] = None,
    ) -> Tuple[CalendarIntegration, bool]:
        """
        Create the integration, or refresh the tokens of the existing one for the same
        (user, service, provider, calendar). Returns (integration, created).
        """
        if not can_create_integration_for(actor, user_id):
            raise AuthorizationDenied("You cannot connect a calendar for this user")

        try:
            integration, created = self._upsert(user_id, provider, calendar, tokens, service_id)
        except IntegrityError:
            # A concurrent callback inserted the same calendar first; update that row
            self.db.rollback()
            integration, created = self._upsert(user_id, provider, calendar, tokens, service_id)
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(integration)
        action = "Created" if created else "Updated"
        logger.info(f"{action} {provider.value} integration {integration.id} for user {user_id}")
        return integration, created

    def _upsert(self, user_id, provider, calendar, tokens, service_id) -> Tuple[CalendarIntegration, bool]:
        integration = self.find_existing(user_id, provider, calendar.id, service_id)
        created = integration is None

        if created:
            integration = CalendarIntegration(
                user_id=user_id,
                service_id=service_id,
                provider=provider.value,
                calendar_id=calendar.id,
                sync_bookings=True,
                sync_availability=False,
                auto_block_external_events=False,
                sync_settings=self.default_sync_settings(),
                sync_error_count=0,
            )
            self.db.add(integration)

        integration.calendar_name = calendar.name
        integration.calendar_timezone = calendar.timezone
        integration.calendar_color = calendar.color
        integration.is_active = True
        integration.sync_error_count = 0
        integration.last_sync_error = None
        self.vault.store_tokens(integration, tokens)

        self.db.commit()
        return integration, created

    def find_existing(self, user_id: UUID, provider: CalendarProvider, calendar_id: str,
                      service_id: Optional[UUID] = None) -> Optional[CalendarIntegration]:
        query = self.db.query(CalendarIntegration).filter(
            CalendarIntegration.user_id == user_id,
            CalendarIntegration.provider == provider.value,
            CalendarIntegration.calendar_id == calendar_id,
        )
        if service_id is None:
            query = query.filter(CalendarIntegration.service_id.is_(None))
        else:
            query = query.filter(CalendarIntegration.service_id == service_id)
        return query.first()

    # ========== READ ==========

    def get_integration(self, actor: Actor, integration_id: UUID) -> Optional[CalendarIntegration]:
        integration = self.db.query(CalendarIntegration).filter_by(id=integration_id).first()
        if integration is None:
            return None
        if not can_view_integration(actor, integration.user_id):
            logger.warning(f"Actor {actor.user_id} denied access to integration {integration_id}")
            return None
        return integration

    def list_integrations(self, actor: Actor, user_id: UUID, service_id: Optional[UUID] = None,
                          active_only: bool = False) -> List[CalendarIntegration]:
        if not can_view_integration(actor, user_id):
            logger.warning(f"Actor {actor.user_id} denied listing integrations of user {user_id}")
            return []

        query = self.db.query(CalendarIntegration).filter(CalendarIntegration.user_id == user_id)
        if service_id:
            query = query.filter(or_(
                CalendarIntegration.service_id == service_id,
                CalendarIntegration.service_id.is_(None),
            ))
        if active_only:
            query = query.filter(CalendarIntegration.is_active.is_(True))
        return query.order_by(CalendarIntegration.created_at).all()

    def get_sync_status(self, actor: Actor, user_id: UUID, now: Optional[datetime] = None) -> List[IntegrationStatus]:
        return [self.to_status(integration, now) for integration in self.list_integrations(actor, user_id)]

    @staticmethod
    def to_status(integration: CalendarIntegration, now: Optional[datetime] = None) -> IntegrationStatus:
        now = ensure_utc(now or utcnow())
        return IntegrationStatus(
            id=integration.id,
            provider=integration.provider_enum,
            provider_name=integration.provider_name,
            calendar_name=integration.calendar_name,
            service_id=integration.service_id,
            is_active=integration.is_active,
            is_healthy=integration.is_healthy(now),
            status=integration.status_label(now),
            sync_bookings=integration.sync_bookings,
            sync_availability=integration.sync_availability,
            auto_block_external_events=integration.auto_block_external_events,
            last_sync_at=ensure_utc(integration.last_sync_at),
            next_sync_at=integration.next_sync_at(),
            sync_error_count=integration.sync_error_count or 0,
            last_sync_error=integration.last_sync_error,
        )

    # ========== UPDATE / DELETE ==========

    def update_settings(self, actor: Actor, integration: CalendarIntegration,
                        update: IntegrationSettingsUpdate) -> CalendarIntegration:
        if not can_manage_integration(actor, integration.user_id):
            raise AuthorizationDenied()

        for field in ("sync_bookings", "sync_availability", "auto_block_external_events"):
            value = getattr(update, field)
            if value is not None:
                setattr(integration, field, value)

        if update.sync_settings is not None:
            merged = integration.effective_sync_settings().model_dump()
            merged.update(update.sync_settings.model_dump(exclude_none=True))
            integration.sync_settings = SyncSettings.model_validate(merged).model_dump()

        self.db.commit()
        self.db.refresh(integration)
        logger.info(f"Updated settings for integration {integration.id}")
        return integration

    def delete_integration(self, actor: Actor, integration: CalendarIntegration, revoke: bool = True):
        """Delete the integration and its mirrored events / sync jobs; revocation is best effort"""
        if not can_manage_integration(actor, integration.user_id):
            raise AuthorizationDenied()

        if revoke:
            self._revoke_remote_access(integration)

        integration_id = integration.id
        self.db.delete(integration)
        self.db.commit()
        logger.info(f"Deleted calendar integration {integration_id}")

    def _revoke_remote_access(self, integration: CalendarIntegration):
        try:
            adapter = self.providers.for_integration(integration)
            access_token = self.vault.get_access_token(integration)
            if access_token and not adapter.revoke(access_token):
                logger.warning(f"Provider did not confirm revocation for integration {integration.id}")
        except Exception as exc:
            logger.warning(f"Could not revoke access for integration {integration.id}: {exc}")

    # ========== TOKEN UPKEEP ==========

    def refresh_expiring_tokens(self, lookahead: timedelta = timedelta(minutes=10),
                                now: Optional[datetime] = None) -> Dict[str, int]:
        """Refresh every active integration whose token expires within the lookahead"""
        cutoff = ensure_utc(now or utcnow()) + lookahead
        integrations = self.db.query(CalendarIntegration).filter(
            CalendarIntegration.is_active.is_(True),
            CalendarIntegration.token_expires_at.isnot(None),
            CalendarIntegration.token_expires_at <= cutoff,
        ).all()

        results = {"refreshed": 0, "failed": 0}
        for integration in integrations:
            try:
                adapter = self.providers.for_integration(integration)
                if self.vault.refresh_if_expiring(integration, adapter, buffer=lookahead):
                    results["refreshed"] += 1
            except TokenExpiredNoRefresh:
                results["failed"] += 1
            except Exception as exc:
                logger.error(f"Token refresh for integration {integration.id} failed: {exc}")
                results["failed"] += 1

        logger.info(f"Token refresh run: {results}")
        return results
