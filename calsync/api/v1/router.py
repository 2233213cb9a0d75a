"""
API v1 router setup
Organized into: dashboard (JWT) routes and service info
"""
from fastapi import APIRouter

from calsync.api.v1.dashboard import calendar

api_v1_router = APIRouter()

# ============================================================================
# DASHBOARD ROUTES (JWT authentication required, except the OAuth callback)
# ============================================================================
api_v1_router.include_router(
    calendar.router,
    prefix="/dashboard/calendar",
    tags=["Dashboard"]
)


# ============================================================================
# ROOT ENDPOINT - API Info
# ============================================================================
@api_v1_router.get("/", tags=["Info"])
async def api_info():
    """API information and supported calendar providers"""
    return {
        "version": "1.0",
        "providers": ["google", "ical"],
        "authentication": {
            "dashboard": "JWT Bearer token required (user login)",
            "oauth_callback": "No authentication; validated by the single-use state",
        }
    }
