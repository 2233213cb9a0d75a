# ============================================================================
# FILE: calsync/api/v1/dashboard/calendar.py
# JWT authenticated endpoints - thin HTTP layer over the calendar services
# IMPORTANT: Specific routes MUST come before parameterized routes
# ============================================================================

from fastapi import APIRouter, Depends, HTTPException, Query, Path, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from html import escape
from typing import List, Optional
from uuid import UUID
import logging

from calsync.api.dependencies import (
    get_current_actor,
    get_integration_service,
    get_oauth_service,
    get_sync_service,
)
from calsync.config.database import get_db
from calsync.core.exceptions import AuthorizationDenied, CalendarIntegrationError
from calsync.core.permissions import Actor, can_manage_integration
from calsync.models import CalendarIntegration
from calsync.schemas.calendar_events import (
    AuthorizeRequest,
    AvailabilityCheckRequest,
    AvailabilityResult,
    ICalConnectRequest,
    IntegrationStatus,
    OAuthCallbackResult,
    OAuthInitiation,
)
from calsync.schemas.sync_settings import IntegrationSettingsUpdate
from calsync.services.availability.availability_service import AvailabilityService
from calsync.services.integration.integration_service import CalendarIntegrationService
from calsync.services.oauth.oauth_flow_service import CalendarOAuthService
from calsync.services.sync.calendar_sync_service import CalendarSyncService
from calsync.tasks.calendar_tasks import sync_calendar_integration

logger = logging.getLogger(__name__)

router = APIRouter(tags=["dashboard-calendar"])


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _callback_page(title: str, message: str, success: bool) -> str:
    colour = "#10b981" if success else "#ef4444"
    return f"""
    <html>
        <head><title>{escape(title)}</title></head>
        <body style="font-family: sans-serif; text-align: center; padding-top: 4rem;">
            <h1 style="color: {colour};">{escape(title)}</h1>
            <p>{escape(message)}</p>
            <script>setTimeout(() => window.close(), 3000);</script>
        </body>
    </html>
    """


def _load_integration(
        actor: Actor,
        integration_id: UUID,
        integrations: CalendarIntegrationService,
        manage: bool = False,
) -> CalendarIntegration:
    """404 when missing or not visible, 403 when visible but not manageable"""
    integration = integrations.get_integration(actor, integration_id)
    if integration is None:
        raise HTTPException(status_code=404, detail="Calendar integration not found")
    if manage and not can_manage_integration(actor, integration.user_id):
        raise AuthorizationDenied()
    return integration


# ========== OAUTH FLOW ==========

@router.get("/oauth/callback", response_class=HTMLResponse)
async def oauth_callback(
        request: Request,
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
        error_description: Optional[str] = Query(None),
        oauth: CalendarOAuthService = Depends(get_oauth_service),
):
    """
    The provider redirects here after authorization.
    Not authenticated: the single-use state identifies the user.
    """
    try:
        result = await oauth.complete_callback(
            code=code,
            state=state,
            provider_error=error,
            error_description=error_description,
            ip_address=_client_ip(request),
        )
    except CalendarIntegrationError as exc:
        return HTMLResponse(
            _callback_page("Authorization Failed", exc.message, success=False),
            status_code=400,
        )

    calendar_name = result.calendar.name or result.provider.display_name
    return HTMLResponse(_callback_page(
        "Authorization Successful!",
        f"{calendar_name} is connected. You can close this window.",
        success=True,
    ))


@router.post("/ical/connect", response_model=OAuthCallbackResult)
async def connect_ical_feed(
        body: ICalConnectRequest,
        request: Request,
        actor: Actor = Depends(get_current_actor),
        oauth: CalendarOAuthService = Depends(get_oauth_service),
):
    """Second step of the iCal flow: submit the feed URL with the state from /ical/authorize"""
    return await oauth.complete_callback(
        code=body.feed_url,
        state=body.state,
        ip_address=_client_ip(request),
        actor=actor,
    )


@router.delete("/oauth/states")
async def cancel_pending_authorizations(
        actor: Actor = Depends(get_current_actor),
        oauth: CalendarOAuthService = Depends(get_oauth_service),
):
    removed = await oauth.cleanup_user_states(actor.user_id)
    return {"removed": removed}


@router.post("/{provider}/authorize", response_model=OAuthInitiation)
async def initiate_authorization(
        request: Request,
        provider: str = Path(..., description="google or ical"),
        body: Optional[AuthorizeRequest] = None,
        actor: Actor = Depends(get_current_actor),
        oauth: CalendarOAuthService = Depends(get_oauth_service),
):
    """Returns the URL the user must visit to connect a calendar"""
    body = body or AuthorizeRequest()
    return await oauth.initiate(
        actor,
        provider,
        user_id=body.user_id or actor.user_id,
        service_id=body.service_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


# ========== INTEGRATIONS ==========

@router.get("/integrations")
async def list_integrations(
        service_id: Optional[UUID] = Query(None),
        active_only: bool = Query(False),
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
):
    return [
        integration.to_dict()
        for integration in integrations.list_integrations(actor, actor.user_id, service_id, active_only)
    ]


@router.get("/integrations/status", response_model=List[IntegrationStatus])
async def get_sync_status(
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
):
    return integrations.get_sync_status(actor, actor.user_id)


@router.get("/integrations/{integration_id}")
async def get_integration(
        integration_id: UUID,
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
):
    integration = _load_integration(actor, integration_id, integrations)
    return {
        **integration.to_dict(),
        "status": integrations.to_status(integration).model_dump(mode="json"),
    }


@router.patch("/integrations/{integration_id}/settings")
async def update_integration_settings(
        integration_id: UUID,
        update: IntegrationSettingsUpdate,
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
):
    integration = _load_integration(actor, integration_id, integrations)
    return integrations.update_settings(actor, integration, update).to_dict()


@router.delete("/integrations/{integration_id}")
def delete_integration(
        integration_id: UUID,
        revoke: bool = Query(True, description="Revoke access at the provider"),
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
):
    integration = _load_integration(actor, integration_id, integrations)
    integrations.delete_integration(actor, integration, revoke=revoke)
    return {"deleted": True, "integration_id": str(integration_id)}


@router.post("/integrations/{integration_id}/sync", status_code=202)
async def trigger_sync(
        integration_id: UUID,
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
):
    """Queue an immediate pull of external events"""
    integration = _load_integration(actor, integration_id, integrations, manage=True)
    if not integration.is_active:
        raise HTTPException(status_code=409, detail="Calendar integration is inactive. Please reconnect it.")

    task = sync_calendar_integration.delay(str(integration.id))
    logger.info(f"Queued manual sync for integration {integration.id}")
    return {"status": "queued", "task_id": task.id}


# ========== EVENTS & AVAILABILITY ==========

@router.get("/integrations/{integration_id}/events")
async def search_events(
        integration_id: UUID,
        q: Optional[str] = Query(None, description="Text to match in title or description"),
        start: Optional[datetime] = Query(None),
        end: Optional[datetime] = Query(None),
        blocking_only: bool = Query(False),
        limit: int = Query(50, ge=1, le=500),
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
        db: Session = Depends(get_db),
):
    integration = _load_integration(actor, integration_id, integrations)
    events = AvailabilityService.search_events(db, actor, integration, q, start, end, blocking_only, limit)
    return [event.to_dict() for event in events]


@router.get("/integrations/{integration_id}/stats")
async def event_stats(
        integration_id: UUID,
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
        db: Session = Depends(get_db),
):
    integration = _load_integration(actor, integration_id, integrations)
    return AvailabilityService.get_event_stats(db, actor, integration)


@router.get("/integrations/{integration_id}/gaps")
async def availability_gaps(
        integration_id: UUID,
        start: datetime = Query(...),
        days: int = Query(1, ge=1, le=31),
        min_gap_minutes: int = Query(30, ge=5, le=1440),
        actor: Actor = Depends(get_current_actor),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
        db: Session = Depends(get_db),
):
    integration = _load_integration(actor, integration_id, integrations)
    return AvailabilityService.get_availability_gaps(
        db, actor, integration, start, start + timedelta(days=days), min_gap_minutes
    )


@router.post("/availability/check", response_model=AvailabilityResult)
def check_availability(
        body: AvailabilityCheckRequest,
        actor: Actor = Depends(get_current_actor),
        sync: CalendarSyncService = Depends(get_sync_service),
):
    """Live check of the connected calendars for a proposed booking slot"""
    return sync.check_availability(
        actor,
        user_id=body.user_id or actor.user_id,
        start=body.start,
        end=body.end,
        service_id=body.service_id,
    )
