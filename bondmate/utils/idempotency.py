import json
import logging
from functools import wraps
from typing import Callable, Optional

import redis.asyncio as redis
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.status import HTTP_409_CONFLICT, HTTP_422_UNPROCESSABLE_ENTITY

from bondmate.utils import redis_pool

log = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "X-Idempotency-Key"
IDEMPOTENCY_PREFIX = "idempotency"
MAX_KEY_LENGTH = 256


class IdempotencyLock:
    """Short in-flight lock plus a cached response for one idempotency key."""

    def __init__(self, key: str, ttl: int = 86400):
        self.key = f"{IDEMPOTENCY_PREFIX}:{key}"
        self.lock_key = f"{self.key}:lock"
        self.ttl = ttl
        self.redis: Optional[redis.Redis] = None
        self.acquired = False

    async def acquire(self) -> bool:
        self.redis = await redis_pool.get_redis()
        self.acquired = bool(await self.redis.set(self.lock_key, "1", nx=True, ex=30))
        return self.acquired

    async def release(self):
        if not self.acquired or self.redis is None:
            return
        try:
            await self.redis.delete(self.lock_key)
        except RedisError as e:
            log.warning("Failed to release idempotency lock %s: %s", self.lock_key, e)

    async def get_cached_response(self) -> Optional[dict]:
        if self.redis is None:
            return None
        cached = await self.redis.get(self.key)
        return json.loads(cached) if cached else None

    async def cache_response(self, body: dict, status_code: int = 200):
        if self.redis is None:
            return
        await self.redis.setex(self.key, self.ttl, json.dumps({"status_code": status_code, "body": body}))


def _error(status_code: int, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"ok": False, "error": message, "details": None})


def idempotent(ttl: int = 86400, key_prefix: str = ""):
    """Replay the first successful response for a repeated ``X-Idempotency-Key``.

    Only dict results are cached; errors are never cached, so a client may
    retry after a failure with the same key.
    """

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request: Optional[Request] = kwargs.get("request")
            if request is None:
                request = next((a for a in args if isinstance(a, Request)), None)
            if request is None:
                return await func(*args, **kwargs)

            idempotency_key = request.headers.get(IDEMPOTENCY_HEADER)
            if not idempotency_key:
                return await func(*args, **kwargs)

            if len(idempotency_key) > MAX_KEY_LENGTH or not idempotency_key.replace("-", "").replace("_", "").isalnum():
                raise _error(HTTP_422_UNPROCESSABLE_ENTITY, "Invalid idempotency key format")

            user = getattr(request.state, "user", None)
            user_id = getattr(user, "id", None) or "anon"
            full_key = f"{key_prefix}:{user_id}:{idempotency_key}" if key_prefix else f"{user_id}:{idempotency_key}"

            lock = IdempotencyLock(full_key, ttl)
            try:
                acquired = await lock.acquire()
                cached = await lock.get_cached_response()
            except RedisError as e:
                log.error("Idempotency store unavailable, handling %s without replay: %s", full_key, e)
                return await func(*args, **kwargs)

            try:
                if cached:
                    log.info("Returning cached idempotent response: key=%s", full_key)
                    return JSONResponse(
                        content=cached["body"],
                        status_code=cached["status_code"],
                        headers={"X-Idempotency-Replayed": "true"},
                    )
                if not acquired:
                    raise _error(HTTP_409_CONFLICT, "Duplicate request in progress. Please retry.")

                result = await func(*args, **kwargs)
                if isinstance(result, dict):
                    try:
                        await lock.cache_response(result)
                    except RedisError as e:
                        log.warning("Could not cache idempotent response %s: %s", full_key, e)
                return result
            finally:
                await lock.release()

        return wrapper

    return decorator
