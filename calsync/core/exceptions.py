# calsync/core/exceptions.py
"""Calendar integration error taxonomy"""
from typing import List, Optional


class CalendarIntegrationError(Exception):
    """Base class for all calendar integration failures"""

    default_message = "Calendar integration error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConfigurationError(CalendarIntegrationError):
    """Unsupported provider or missing credentials; fatal"""

    default_message = "Calendar integration is not configured"


class AuthorizationDenied(CalendarIntegrationError):
    """Caller lacks permission for the integration or booking"""

    default_message = "You do not have permission to access this calendar integration"


class OAuthFlowError(CalendarIntegrationError):
    """OAuth authorization flow failed; message is safe to show to the user"""

    default_message = "Calendar authorization failed. Please try again."


class StateInvalidOrExpired(OAuthFlowError):
    default_message = "Invalid or expired authorization state. Please try connecting again."


class OAuthDenied(OAuthFlowError):
    default_message = "Calendar access was denied. Please grant permission to continue."


class OAuthMisconfigured(OAuthFlowError):
    default_message = "Calendar integration is misconfigured. Please contact support."


class TokenExpiredNoRefresh(CalendarIntegrationError):
    """Access could not be renewed; the integration must be re-authorized"""

    default_message = "Calendar access expired. Please reconnect your calendar."


class ProviderUnavailable(CalendarIntegrationError):
    """Network or HTTP failure talking to a calendar provider"""

    default_message = "Calendar provider is currently unavailable"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UnsupportedProviderOperation(CalendarIntegrationError):
    """Operation the provider cannot perform (never retried)"""

    default_message = "Operation not supported by this calendar provider"


class DataConflict(CalendarIntegrationError):
    """Requested interval overlaps existing blocking events"""

    def __init__(self, conflicting_titles: List[str], message: Optional[str] = None):
        self.conflicting_titles = list(conflicting_titles)
        super().__init__(
            message or f"Time slot conflicts with existing events: {', '.join(self.conflicting_titles)}"
        )


# Failures a background retry cannot fix
NON_RETRYABLE_ERRORS = (
    ConfigurationError,
    AuthorizationDenied,
    TokenExpiredNoRefresh,
    UnsupportedProviderOperation,
)

NON_RETRYABLE_MARKERS = ("invalid_grant", "unauthorized", "forbidden")


def is_retryable(exc: Exception) -> bool:
    """Whether a background sync failure is worth retrying"""
    if isinstance(exc, NON_RETRYABLE_ERRORS):
        return False
    text = str(exc).lower()
    return not any(marker in text for marker in NON_RETRYABLE_MARKERS)


# OAuth error codes returned on the provider redirect
PROVIDER_ERROR_MESSAGES = {
    "access_denied": "Calendar access was denied. Please grant permission to continue.",
    "invalid_request": "Invalid authorization request. Please try again.",
    "invalid_client": "Calendar integration is misconfigured. Please contact support.",
    "invalid_grant": "Authorization expired. Please try connecting again.",
    "unsupported_response_type": "Unsupported authorization method. Please contact support.",
}
DEFAULT_PROVIDER_ERROR_MESSAGE = "Calendar authorization failed. Please try again."
MISCONFIGURATION_ERRORS = ("invalid_client", "unsupported_response_type")


def oauth_error_for(code: Optional[str]) -> OAuthFlowError:
    """Map a provider OAuth error code to a user-facing exception"""
    message = PROVIDER_ERROR_MESSAGES.get(code or "", DEFAULT_PROVIDER_ERROR_MESSAGE)
    if code in MISCONFIGURATION_ERRORS:
        return OAuthMisconfigured(message)
    return OAuthDenied(message)
