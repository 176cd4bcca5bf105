"""Redis leases that keep a background sweep from running on two workers at once."""

import asyncio
import logging
import uuid
from typing import Optional

import redis.asyncio as redis

from bondmate.utils import redis_pool

log = logging.getLogger(__name__)

LOCK_PREFIX = "lease"

# Only the holder that set the key may delete it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class AdvisoryLock:
    """``SET NX EX`` lease identified by a random holder token."""

    def __init__(
        self,
        name: str,
        timeout: int = 30,
        retry_count: int = 1,
        retry_delay: float = 0.5,
    ):
        self.name = f"{LOCK_PREFIX}:{name}"
        self.timeout = timeout
        self.retry_count = retry_count
        self.retry_delay = retry_delay
        self.token: Optional[str] = None
        self.redis: Optional[redis.Redis] = None

    async def acquire(self) -> bool:
        self.token = uuid.uuid4().hex
        self.redis = await redis_pool.get_redis()

        for attempt in range(self.retry_count):
            acquired = await self.redis.set(self.name, self.token, nx=True, ex=self.timeout)
            if acquired:
                log.debug("Lease acquired: %s", self.name)
                return True
            if attempt < self.retry_count - 1:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        log.info("Lease %s is held elsewhere", self.name)
        return False

    async def release(self):
        if not self.redis or not self.token:
            return
        try:
            await self.redis.eval(_RELEASE_SCRIPT, 1, self.name, self.token)
            log.debug("Lease released: %s", self.name)
        except Exception as e:
            # the lease expires on its own
            log.error("Failed to release lease %s: %s", self.name, e)


