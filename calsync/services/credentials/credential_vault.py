# calsync/services/credentials/credential_vault.py
"""
Encrypted token storage and the refresh-if-needed access path.

The vault never reads the encryption key from global settings; callers pass it in.
"""
import logging
from contextlib import AbstractContextManager
from datetime import timedelta
from typing import Callable, Dict, Any, Optional, Protocol

from redis.exceptions import LockError
from sqlalchemy.orm import Session

from calsync.core.exceptions import ProviderUnavailable, TokenExpiredNoRefresh
from calsync.models import CalendarIntegration
from calsync.schemas.calendar_events import CalendarProvider
from calsync.schemas.credentials import FeedCredential, OAuthCredential, ProviderCredential, TokenBundle
from calsync.utils.datetime_utils import ensure_utc
from calsync.utils.encryption import decrypt_token, encrypt_token, get_cipher
from calsync.utils.locks import token_refresh_lock

logger = logging.getLogger(__name__)


class TokenRefresher(Protocol):
    def refresh(self, refresh_token: str) -> TokenBundle:
        ...


class CredentialVault:
    """Fernet encryption of provider tokens plus per-integration refresh"""

    SECRET_FIELDS = ("access_token", "refresh_token")

    def __init__(
            self,
            db: Session,
            encryption_key: str,
            refresh_buffer: timedelta = timedelta(minutes=5),
            refresh_lock: Callable[[Any], AbstractContextManager] = token_refresh_lock,
    ):
        self.db = db
        self.cipher = get_cipher(encryption_key)
        self.refresh_buffer = refresh_buffer
        self._refresh_lock = refresh_lock

    # ========== TOKEN DATA ==========

    def encrypt(self, token_data: Dict[str, Any]) -> Dict[str, Any]:
        """Encrypt access/refresh tokens; other metadata passes through untouched"""
        encrypted = dict(token_data)
        for field in self.SECRET_FIELDS:
            if encrypted.get(field):
                encrypted[field] = encrypt_token(self.cipher, encrypted[field])
        return encrypted

    def decrypt(self, encrypted_data: Dict[str, Any]) -> Dict[str, Any]:
        decrypted = dict(encrypted_data)
        for field in self.SECRET_FIELDS:
            if decrypted.get(field):
                decrypted[field] = decrypt_token(self.cipher, decrypted[field])
        return decrypted

    def store_tokens(self, integration: CalendarIntegration, bundle: TokenBundle):
        """Write a token bundle onto the integration (caller commits)"""
        integration.access_token_encrypted = encrypt_token(self.cipher, bundle.access_token)
        # Google may omit the refresh token on refresh; keep the prior one
        if bundle.refresh_token:
            integration.refresh_token_encrypted = encrypt_token(self.cipher, bundle.refresh_token)
        integration.token_expires_at = ensure_utc(bundle.expires_at)

    def load_credential(self, integration: CalendarIntegration) -> ProviderCredential:
        access_token = decrypt_token(self.cipher, integration.access_token_encrypted)
        if integration.provider_enum is CalendarProvider.ICAL:
            return FeedCredential.from_token(access_token)
        return OAuthCredential(
            access_token=access_token,
            refresh_token=decrypt_token(self.cipher, integration.refresh_token_encrypted),
            expires_at=ensure_utc(integration.token_expires_at),
        )

    def get_access_token(self, integration: CalendarIntegration) -> Optional[str]:
        return decrypt_token(self.cipher, integration.access_token_encrypted)

    # ========== REFRESH ==========

    def get_valid_access_token(self, integration: CalendarIntegration, refresher: TokenRefresher) -> str:
        """
        Return a usable access token, refreshing first when it expires within the buffer.

        Raises TokenExpiredNoRefresh when the integration is disabled or refresh fails;
        in the latter case the integration is deactivated before raising.
        """
        if not integration.is_active:
            raise TokenExpiredNoRefresh(
                f"{integration.provider_name} integration is inactive; reconnect to resume syncing"
            )

        self.refresh_if_expiring(integration, refresher)
        return self.get_access_token(integration)

    def refresh_if_expiring(self, integration: CalendarIntegration, refresher: TokenRefresher,
                            buffer: Optional[timedelta] = None) -> bool:
        """Refresh under the per-integration lock when expiry falls inside the buffer"""
        buffer = buffer or self.refresh_buffer
        if not integration.needs_token_refresh(buffer):
            return False

        try:
            with self._refresh_lock(integration.id):
                # Another process may have refreshed while we waited for the lock
                self.db.refresh(integration)
                if not integration.needs_token_refresh(buffer):
                    return False
                self.refresh_tokens(integration, refresher)
        except LockError:
            raise ProviderUnavailable(f"Token refresh already in progress for integration {integration.id}")
        return True

    def refresh_tokens(self, integration: CalendarIntegration, refresher: TokenRefresher):
        """Refresh and persist; on failure deactivate the integration and raise"""
        refresh_token = decrypt_token(self.cipher, integration.refresh_token_encrypted)
        if not refresh_token:
            self._disable(integration, "Token refresh failed: no refresh token available")
            raise TokenExpiredNoRefresh()

        try:
            bundle = refresher.refresh(refresh_token)
        except Exception as exc:
            logger.error(f"Token refresh failed for integration {integration.id}: {exc}")
            self._disable(integration, f"Token refresh failed: {exc}")
            raise TokenExpiredNoRefresh() from exc

        self.store_tokens(integration, bundle)
        self.db.commit()
        logger.info(f"Refreshed {integration.provider} tokens for integration {integration.id}")

    def _disable(self, integration: CalendarIntegration, message: str):
        integration.is_active = False
        integration.record_sync_failure(message)
        self.db.commit()
