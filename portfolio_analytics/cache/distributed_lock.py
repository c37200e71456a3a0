"""Cross-instance mutual exclusion on Valkey.

A lock is a key set with NX and an expiry, holding a random token. Only the
token holder can release it, and a crashed holder's lock expires on its own.
"""

from __future__ import annotations

import uuid

from redis.exceptions import RedisError

from portfolio_analytics.core.logging import get_logger

from .client import get_valkey_client


logger = get_logger("cache.lock")

LOCK_PREFIX = "portfolio_analytics:lock"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def lock_key(name: str) -> str:
    return f"{LOCK_PREFIX}:{name}"


class DistributedLock:
    """
    Token-guarded Valkey lock.

    Args:
        name: Lock name (prefixed into the key)
        timeout: Expiry in seconds; the lock frees itself if the holder dies
    """

    def __init__(self, name: str, timeout: int = 30):
        self.name = name
        self.key = lock_key(name)
        self.timeout = max(int(timeout), 1)
        self.token = uuid.uuid4().hex
        self.held = False

    async def acquire(self) -> bool:
        client = await get_valkey_client()
        if not await client.set(self.key, self.token, ex=self.timeout, nx=True):
            return False
        self.held = True
        logger.debug(f"Lock acquired: {self.name}")
        return True

    async def release(self) -> bool:
        if not self.held:
            return False
        self.held = False
        try:
            client = await get_valkey_client()
            released = bool(await client.eval(_RELEASE_SCRIPT, 1, self.key, self.token))
        except RedisError as e:
            logger.error(f"Lock release failed for {self.name}: {e}")
            return False
        if not released:
            logger.warning(f"Lock {self.name} expired before release")
        return released
