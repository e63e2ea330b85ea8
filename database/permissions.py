"""
Permission Store — typed access to per-user eligibility records.

Key layout:
  user:<telegram_user_id>:permissions  →  JSON PermissionRecord

Records are written by the balance worker (outside this process). The
reconciler is the only reader, and deletes each record once processed.
"""
from __future__ import annotations

import structlog
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.errors import ParseError, StoreConnectionError
from models.schemas import PermissionRecord

logger = structlog.get_logger()

PERMISSION_KEY_PATTERN = "user:*:permissions"


def permission_key(user_id: str) -> str:
    return f"user:{user_id}:permissions"


def user_id_from_key(key: str) -> str:
    """Extract the numeric Telegram user id from ``user:<id>:permissions``."""
    parts = key.split(":")
    if len(parts) != 3 or parts[0] != "user" or parts[2] != "permissions" or not parts[1]:
        raise ParseError(f"Not a permission key: {key!r}", key)
    if not parts[1].isdigit():
        raise ParseError(f"Permission key has a non-numeric user id: {key!r}", key)
    return parts[1]


class PermissionStore:
    """Read/scan/delete over permission records on the command connection."""

    def __init__(self, redis: aioredis.Redis, key_pattern: str = PERMISSION_KEY_PATTERN,
                 scan_count: int = 500):
        self._redis = redis
        self.key_pattern = key_pattern
        self.scan_count = scan_count

    async def scan_keys(self, pattern: str = None) -> list[str]:
        """
        Enumerate every key matching the pattern. Order is unspecified.
        Uses SCAN so the server is never blocked, at the cost of a full keyspace walk.
        """
        pattern = pattern or self.key_pattern
        try:
            keys = {key async for key in self._redis.scan_iter(match=pattern, count=self.scan_count)}
        except (RedisError, OSError) as e:
            raise StoreConnectionError(f"Permission scan failed: {e}") from e
        return list(keys)

    async def get(self, key: str) -> Optional[PermissionRecord]:
        """Fetch and validate a record. None if the key is gone; ParseError if malformed."""
        try:
            raw = await self._redis.get(key)
        except (RedisError, OSError) as e:
            raise StoreConnectionError(f"GET {key} failed: {e}") from e
        if raw is None:
            return None
        return PermissionRecord.from_json(raw, user_id=user_id_from_key(key), source=key)

    async def delete(self, key: str) -> bool:
        """Delete a record. Deleting a missing key is a no-op and returns False."""
        try:
            removed = await self._redis.delete(key)
        except (RedisError, OSError) as e:
            raise StoreConnectionError(f"DEL {key} failed: {e}") from e
        logger.debug("permission_record_deleted", key=key, existed=bool(removed))
        return bool(removed)
