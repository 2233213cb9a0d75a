# calsync/utils/locks.py
"""Per-integration Redis locks shared by API processes and workers"""
from redis.lock import Lock

from calsync.config.redis import RedisKeys, get_sync_redis


def token_refresh_lock(integration_id) -> Lock:
    """Coalesces concurrent token refreshes for one integration"""
    return get_sync_redis().lock(
        RedisKeys.TOKEN_REFRESH_LOCK.format(integration_id=integration_id),
        timeout=30,
        blocking_timeout=15,
    )


def integration_sync_lock(integration_id, timeout: int) -> Lock:
    """Serializes background syncs for one integration"""
    return get_sync_redis().lock(
        RedisKeys.SYNC_LOCK.format(integration_id=integration_id),
        timeout=timeout,
        blocking_timeout=0,
    )
