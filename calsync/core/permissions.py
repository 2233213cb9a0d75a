# calsync/core/permissions.py
"""
Actors and permission checks.

Every core operation receives the acting identity explicitly. The checks below
are pure functions of (actor, resource owner) so they can be tested in isolation.
"""
from enum import Enum
from typing import FrozenSet, Iterable, Optional
from uuid import UUID

from pydantic import BaseModel, Field

MANAGE_ALL_CALENDAR_INTEGRATIONS = "manage_all_calendar_integrations"
VIEW_ALL_CALENDAR_INTEGRATIONS = "view_all_calendar_integrations"
MANAGE_ALL_BOOKINGS = "manage_all_bookings"


class Actor(BaseModel):
    """The identity on whose behalf an operation runs"""

    user_id: Optional[UUID] = None
    permissions: FrozenSet[str] = Field(default_factory=frozenset)
    is_system: bool = False

    model_config = {"frozen": True}

    @classmethod
    def system(cls) -> "Actor":
        """Scheduler / worker identity"""
        return cls(is_system=True)

    @classmethod
    def for_user(cls, user_id: UUID, permissions: Iterable[str] = ()) -> "Actor":
        return cls(user_id=user_id, permissions=frozenset(permissions))

    def has_permission(self, permission: str) -> bool:
        return self.is_system or permission in self.permissions

    def is_owner(self, owner_id: Optional[UUID]) -> bool:
        return self.user_id is not None and owner_id is not None and str(self.user_id) == str(owner_id)


class ReadDenialPolicy(str, Enum):
    """What a read path reports when access is denied or a provider fails"""
    FAIL_OPEN = "fail_open"      # treat as available / empty
    FAIL_CLOSED = "fail_closed"  # treat as unavailable


def can_manage_integration(actor: Actor, owner_id: Optional[UUID]) -> bool:
    return actor.is_owner(owner_id) or actor.has_permission(MANAGE_ALL_CALENDAR_INTEGRATIONS)


def can_view_integration(actor: Actor, owner_id: Optional[UUID]) -> bool:
    return (
        can_manage_integration(actor, owner_id)
        or actor.has_permission(VIEW_ALL_CALENDAR_INTEGRATIONS)
    )


def can_create_integration_for(actor: Actor, user_id: Optional[UUID]) -> bool:
    return can_manage_integration(actor, user_id)


def can_manage_booking(actor: Actor, booking_owner_id: Optional[UUID]) -> bool:
    return actor.is_owner(booking_owner_id) or actor.has_permission(MANAGE_ALL_BOOKINGS)
