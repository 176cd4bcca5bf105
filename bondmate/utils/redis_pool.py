"""
Redis Connection Pool
=====================
Shared async Redis pool used for sweep leases and request idempotency.
Relationship state never lives in Redis; losing it only means a sweep may
run on two workers at once (every job is idempotent) or an idempotent
replay is missed.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import BusyLoadingError, ConnectionError, TimeoutError

from bondmate.core.config import settings

log = logging.getLogger(__name__)

_redis_pool: Optional[redis.ConnectionPool] = None

POOL_MAX_CONNECTIONS = 20
SOCKET_TIMEOUT = 5.0
SOCKET_CONNECT_TIMEOUT = 5.0
HEALTH_CHECK_INTERVAL = 30
RETRY_ATTEMPTS = 3

_TRANSIENT_ERRORS = (ConnectionError, TimeoutError, BusyLoadingError)


def _create_pool() -> redis.ConnectionPool:
    return redis.ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=POOL_MAX_CONNECTIONS,
        socket_timeout=SOCKET_TIMEOUT,
        socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
        health_check_interval=HEALTH_CHECK_INTERVAL,
        decode_responses=True,
    )


async def get_redis() -> redis.Redis:
    """Client borrowing connections from the lazily created shared pool."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = _create_pool()
        log.info("Redis connection pool initialized (max_connections=%s)", POOL_MAX_CONNECTIONS)

    return redis.Redis(
        connection_pool=_redis_pool,
        retry=Retry(
            retries=RETRY_ATTEMPTS,
            backoff=ExponentialBackoff(cap=0.5, base=0.1),
            supported_errors=_TRANSIENT_ERRORS,
        ),
        retry_on_error=list(_TRANSIENT_ERRORS),
    )


async def close_redis():
    global _redis_pool
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        log.info("Redis connection pool closed")
