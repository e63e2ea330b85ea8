"""
Connection Manager — the two Redis connections shared by the whole process.

  commands    — GET/DEL/SCAN for permission records, XADD for the job queue
  subscriber  — dedicated to the sentiment pub/sub channel

The subscriber connection never issues ordinary commands while a
subscription is active. Reconnection and backoff are left to redis-py
(Retry with exponential backoff); this layer only logs failures so a
transient outage never takes the process down.

Usage:
    connections = ConnectionManager("redis://localhost:6379")
    await connections.connect()
    ...
    await connections.close()
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

logger = structlog.get_logger()

DEFAULT_REDIS_URL = "redis://localhost:6379"


def _build_client(url: str) -> aioredis.Redis:
    return aioredis.from_url(
        url,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(cap=10, base=0.5), retries=3),
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
        health_check_interval=30,
    )


class ConnectionManager:
    """Owns the command and subscriber connections and their lifecycle."""

    def __init__(self, redis_url: str = "", connect_attempts: int = 3):
        self.redis_url = redis_url or DEFAULT_REDIS_URL
        self.connect_attempts = max(1, connect_attempts)
        self.commands: aioredis.Redis = _build_client(self.redis_url)
        self.subscriber: aioredis.Redis = _build_client(self.redis_url)
        self._connected = False
        self._closed = False
        logger.info("connection_manager_initialized", url=self.redis_url)

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    def _on_error(self, connection: str, error: Exception) -> None:
        """Log a connection failure; never re-raise."""
        logger.error("redis_connection_error",
                     connection=connection,
                     url=self.redis_url,
                     error=str(error))

    async def _ping(self, client: aioredis.Redis) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.connect_attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            reraise=True,
        ):
            with attempt:
                await client.ping()

    async def connect(self) -> bool:
        """
        Ping the command connection. Returns False (after logging) when the
        store is unreachable; redis-py reconnects lazily on the next command.
        """
        try:
            await self._ping(self.commands)
        except (RedisError, OSError, RetryError) as e:
            self._on_error("commands", e)
            return False
        self._connected = True
        logger.info("redis_connected", url=self.redis_url)
        return True

    async def health(self) -> dict[str, Any]:
        status = {"url": self.redis_url, "commands": False, "closed": self._closed}
        if self._closed:
            return status
        try:
            status["commands"] = bool(await self.commands.ping())
        except (RedisError, OSError) as e:
            self._on_error("commands", e)
        return status

    async def close(self) -> None:
        """Close both connections. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for name, client in (("subscriber", self.subscriber), ("commands", self.commands)):
            try:
                await client.aclose()
            except (RedisError, OSError) as e:
                self._on_error(name, e)
        self._connected = False
        logger.info("redis_connections_closed", url=self.redis_url)


# ──────────────────────────────────────────────────────────────
#  Process-wide accessor
# ──────────────────────────────────────────────────────────────

_instance: Optional[ConnectionManager] = None


def get_connection_manager(redis_url: str = None, connect_attempts: int = 3) -> ConnectionManager:
    """Lazily create and return the single ConnectionManager for this process."""
    global _instance
    if _instance is None:
        _instance = ConnectionManager(redis_url or DEFAULT_REDIS_URL, connect_attempts)
    return _instance


def reset_connection_manager() -> None:
    """Forget the cached instance (tests, or after close())."""
    global _instance
    _instance = None
