# calsync/services/calendar/base.py
"""Uniform interface over the supported calendar backends"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from calsync.core.permissions import Actor, ReadDenialPolicy, can_manage_integration, can_view_integration
from calsync.models import CalendarIntegration
from calsync.schemas.calendar_events import BookingSnapshot, BusyInterval, CalendarInfo, CalendarProvider
from calsync.schemas.credentials import TokenBundle
from calsync.services.availability.availability_service import conflicting_intervals
from calsync.services.credentials.credential_vault import CredentialVault

logger = logging.getLogger(__name__)


class CalendarProviderAdapter(ABC):
    """
    One implementation per CalendarProvider.

    Public event operations check the actor first. A denied actor gets a neutral
    result (None / False / []) rather than an exception; write paths that must
    reject are enforced by the callers (sync orchestrator, integration registry).
    """

    provider: CalendarProvider

    def __init__(self, vault: CredentialVault, read_denial_policy: ReadDenialPolicy = ReadDenialPolicy.FAIL_OPEN):
        self.vault = vault
        self.read_denial_policy = read_denial_policy

    # ========== AUTHORIZATION FLOW ==========

    @abstractmethod
    def auth_url(self, state: str) -> str:
        ...

    @abstractmethod
    def exchange_code(self, code: str) -> TokenBundle:
        ...

    @abstractmethod
    def refresh(self, refresh_token: str) -> TokenBundle:
        ...

    @abstractmethod
    def calendar_info(self, access_token: str) -> CalendarInfo:
        ...

    def revoke(self, access_token: str) -> bool:
        """Invalidate remote access; providers without revocation succeed trivially"""
        return True

    def instructions(self) -> List[str]:
        return []

    # ========== EVENTS ==========

    def create_event(self, actor: Actor, integration: CalendarIntegration, booking: BookingSnapshot) -> Optional[str]:
        if not self._can_write(actor, integration):
            return None
        return self._create_event(integration, booking)

    def update_event(self, actor: Actor, integration: CalendarIntegration,
                     booking: BookingSnapshot, external_event_id: str) -> bool:
        if not self._can_write(actor, integration):
            return False
        return self._update_event(integration, booking, external_event_id)

    def updated_event_id(self, booking: BookingSnapshot, external_event_id: str) -> str:
        """Id of the remote event after update_event; providers that re-key on update override this"""
        return external_event_id

    def delete_event(self, actor: Actor, integration: CalendarIntegration, external_event_id: str) -> bool:
        if not self._can_write(actor, integration):
            return False
        return self._delete_event(integration, external_event_id)

    def list_busy_intervals(self, actor: Actor, integration: CalendarIntegration,
                            start: datetime, end: datetime) -> List[BusyInterval]:
        if not self._can_read(actor, integration):
            return []
        return self._list_busy_intervals(integration, start, end)

    def is_slot_available(self, actor: Actor, integration: CalendarIntegration,
                          start: datetime, end: datetime) -> bool:
        available, _ = self.slot_conflicts(actor, integration, start, end)
        return available

    def slot_conflicts(self, actor: Actor, integration: CalendarIntegration,
                       start: datetime, end: datetime) -> Tuple[bool, List[BusyInterval]]:
        """(available, blocking intervals overlapping the slot) from a single listing"""
        if not self._can_read(actor, integration):
            return self.read_denial_policy is ReadDenialPolicy.FAIL_OPEN, []
        conflicts = conflicting_intervals(self._list_busy_intervals(integration, start, end), start, end)
        return not conflicts, conflicts

    @abstractmethod
    def _create_event(self, integration: CalendarIntegration, booking: BookingSnapshot) -> Optional[str]:
        ...

    @abstractmethod
    def _update_event(self, integration: CalendarIntegration, booking: BookingSnapshot, external_event_id: str) -> bool:
        ...

    @abstractmethod
    def _delete_event(self, integration: CalendarIntegration, external_event_id: str) -> bool:
        ...

    @abstractmethod
    def _list_busy_intervals(self, integration: CalendarIntegration,
                             start: datetime, end: datetime) -> List[BusyInterval]:
        ...

    # ========== PERMISSIONS ==========

    def _can_write(self, actor: Actor, integration: CalendarIntegration) -> bool:
        if can_manage_integration(actor, integration.user_id):
            return True
        logger.warning(f"Actor {actor.user_id} may not modify {self.provider.value} integration {integration.id}")
        return False

    def _can_read(self, actor: Actor, integration: CalendarIntegration) -> bool:
        if can_view_integration(actor, integration.user_id):
            return True
        logger.warning(f"Actor {actor.user_id} may not read {self.provider.value} integration {integration.id}")
        return False
