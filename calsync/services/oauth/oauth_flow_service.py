# calsync/services/oauth/oauth_flow_service.py
"""
OAuth authorization flow for calendar providers.

`state` is a signed, salted blob binding the user, service and provider. The flow
context it points to lives in Redis for a short TTL and is consumed exactly once.
"""
import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Dict, Optional, Union
from uuid import UUID

import redis.asyncio as aioredis

from calsync.config.redis import RedisKeys
from calsync.core.exceptions import (
    AuthorizationDenied,
    OAuthFlowError,
    StateInvalidOrExpired,
    oauth_error_for,
)
from calsync.core.permissions import Actor, can_create_integration_for
from calsync.schemas.calendar_events import CalendarProvider, OAuthCallbackResult, OAuthInitiation
from calsync.services.calendar.providers import CalendarProviderRegistry
from calsync.services.integration.integration_service import CalendarIntegrationService
from calsync.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class CalendarOAuthService:

    def __init__(
            self,
            redis_client: aioredis.Redis,
            providers: CalendarProviderRegistry,
            integrations: CalendarIntegrationService,
            secret_key: str,
            state_ttl: int = 600,
            user_index_ttl: int = 3600,
            enforce_origin_ip: bool = False,
    ):
        self.redis = redis_client
        self.providers = providers
        self.integrations = integrations
        self._secret = secret_key.encode()
        self.state_ttl = state_ttl
        self.user_index_ttl = user_index_ttl
        self.enforce_origin_ip = enforce_origin_ip

    # ========== STATE ==========

    def generate_state(self, user_id: UUID, service_id: Optional[UUID], provider: CalendarProvider) -> str:
        payload = {
            "user_id": str(user_id),
            "service_id": str(service_id) if service_id else None,
            "provider": provider.value,
            "timestamp": int(time.time()),
            "nonce": secrets.token_urlsafe(24),
        }
        payload["checksum"] = self._checksum(payload)
        encoded = base64.urlsafe_b64encode(json.dumps(payload, separators=(",", ":")).encode())
        return encoded.decode().rstrip("=")

    def verify_state(self, state: str) -> Optional[Dict]:
        """Decode a state blob; None if it is malformed or was tampered with"""
        try:
            padded = state + "=" * (-len(state) % 4)
            payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
            expected = self._checksum(payload)
            if not hmac.compare_digest(expected, str(payload.get("checksum", ""))):
                return None
            return payload
        except (ValueError, binascii.Error, KeyError, TypeError, AttributeError):
            return None

    def _checksum(self, payload: Dict) -> str:
        message = "|".join([
            payload["user_id"],
            payload["service_id"] or "",
            payload["provider"],
            str(payload["timestamp"]),
            payload["nonce"],
        ])
        return hmac.new(self._secret, message.encode(), hashlib.sha256).hexdigest()

    # ========== FLOW ==========

    async def initiate(
            self,
            actor: Actor,
            provider: Union[CalendarProvider, str],
            user_id: UUID,
            service_id: Optional[UUID] = None,
            ip_address: Optional[str] = None,
            user_agent: Optional[str] = None,
    ) -> OAuthInitiation:
        if not isinstance(provider, CalendarProvider):
            provider = CalendarProvider.parse(provider)
        if not can_create_integration_for(actor, user_id):
            raise AuthorizationDenied("You cannot connect a calendar for this user")

        adapter = self.providers.get(provider)
        state = self.generate_state(user_id, service_id, provider)
        issued_at = utcnow()
        expires_at = issued_at + timedelta(seconds=self.state_ttl)

        context = {
            "user_id": str(user_id),
            "service_id": str(service_id) if service_id else None,
            "provider": provider.value,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "issued_at": issued_at.isoformat(),
            "expires_at": expires_at.isoformat(),
        }
        await self.redis.setex(RedisKeys.OAUTH_STATE.format(state=state), self.state_ttl, json.dumps(context))

        index_key = RedisKeys.USER_OAUTH_STATES.format(user_id=user_id)
        await self.redis.sadd(index_key, state)
        await self.redis.expire(index_key, self.user_index_ttl)

        logger.info(f"Started {provider.value} authorization for user {user_id}")
        return OAuthInitiation(
            authorization_url=adapter.auth_url(state),
            state=state,
            provider=provider,
            expires_at=expires_at,
            instructions=adapter.instructions(),
        )

    async def consume_state(self, state: str) -> Dict:
        """Atomically fetch and delete the flow context; a second read fails"""
        if not state or self.verify_state(state) is None:
            raise StateInvalidOrExpired()

        raw = await self.redis.getdel(RedisKeys.OAUTH_STATE.format(state=state))
        if raw is None:
            raise StateInvalidOrExpired()

        context = json.loads(raw)
        await self.redis.srem(RedisKeys.USER_OAUTH_STATES.format(user_id=context["user_id"]), state)

        if ensure_utc(datetime.fromisoformat(context["expires_at"])) <= utcnow():
            raise StateInvalidOrExpired()
        return context

    async def complete_callback(
            self,
            code: Optional[str],
            state: Optional[str],
            provider_error: Optional[str] = None,
            error_description: Optional[str] = None,
            ip_address: Optional[str] = None,
            actor: Optional[Actor] = None,
    ) -> OAuthCallbackResult:
        """
        Finish a connect flow. `actor` is set when the caller is authenticated (iCal
        connect) and must be allowed to connect calendars for the user bound to the state.
        """
        if provider_error:
            logger.warning(f"OAuth provider returned error '{provider_error}': {error_description}")
            if state:
                # The pending flow cannot be resumed; drop it
                try:
                    await self.consume_state(state)
                except StateInvalidOrExpired:
                    pass
            raise oauth_error_for(provider_error)

        if not code or not state:
            raise OAuthFlowError("Missing required OAuth parameters")

        context = await self.consume_state(state)
        self._check_origin(context, ip_address)

        provider = CalendarProvider.parse(context["provider"])
        user_id = UUID(context["user_id"])
        service_id = UUID(context["service_id"]) if context.get("service_id") else None
        if actor is not None and not can_create_integration_for(actor, user_id):
            logger.warning(f"Actor {actor.user_id} tried to complete a calendar connect for user {user_id}")
            raise AuthorizationDenied("You cannot connect a calendar for this user")
        adapter = self.providers.get(provider)

        # Provider HTTP calls block; keep them off the event loop
        tokens = await asyncio.to_thread(adapter.exchange_code, code)
        calendar = await asyncio.to_thread(adapter.calendar_info, tokens.access_token)

        integration, created = self.integrations.upsert_from_oauth(
            Actor.for_user(user_id),
            user_id=user_id,
            provider=provider,
            calendar=calendar,
            tokens=tokens,
            service_id=service_id,
        )
        return OAuthCallbackResult(
            integration_id=integration.id,
            provider=provider,
            calendar=calendar,
            created=created,
        )

    def _check_origin(self, context: Dict, ip_address: Optional[str]):
        original_ip = context.get("ip_address")
        if not original_ip or not ip_address or original_ip == ip_address:
            return
        logger.warning(
            f"OAuth callback IP {ip_address} differs from initiating IP {original_ip} "
            f"for user {context.get('user_id')}"
        )
        if self.enforce_origin_ip:
            raise StateInvalidOrExpired("Authorization must be completed from the device that started it")

    async def cleanup_user_states(self, user_id: UUID) -> int:
        """Delete every outstanding flow context of a user"""
        index_key = RedisKeys.USER_OAUTH_STATES.format(user_id=user_id)
        states = await self.redis.smembers(index_key)
        removed = 0
        for state in states:
            removed += await self.redis.delete(RedisKeys.OAUTH_STATE.format(state=state))
        await self.redis.delete(index_key)
        return removed
