"""Cross-process coordination on Redis: completion locks, once-markers, progress hints.

Key schema
----------
completion_lock:{task_id}               STRING -> holder token  (TTL: COMPLETION_LOCK_TTL_SECONDS)
poll_scheduled:{task_id}:{attempt}      STRING -> "1"           (TTL: poll delay + margin)
task_progress:{task_id}                 STRING -> JSON hint     (TTL: PROGRESS_HINT_TTL_SECONDS)
"""

from __future__ import annotations

import json
import uuid
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from redis.exceptions import RedisError

from pixelrelay.services.exceptions import CoordinatorError

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = structlog.get_logger()


def completion_lock_key(task_id: UUID | str) -> str:
    return f"completion_lock:{task_id}"


def poll_marker_key(task_id: UUID | str, attempt: int) -> str:
    return f"poll_scheduled:{task_id}:{attempt}"


def progress_key(task_id: UUID | str) -> str:
    return f"task_progress:{task_id}"


# Compare-and-delete: only the holder's token may release the lock.
# KEYS[1] = lock key, ARGV[1] = holder token
# Returns 1 if deleted, 0 otherwise.
_RELEASE_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


def _decode(value: Any) -> str | None:
    if value is None:
        return None
    return value.decode() if isinstance(value, bytes) else str(value)


class Coordinator:
    """Thin wrapper over an injected `redis.asyncio.Redis` client.

    Lock and marker operations raise CoordinatorError when Redis is
    unreachable; hint operations are best effort and only log.
    """

    def __init__(self, redis: "aioredis.Redis"):
        self.redis = redis

    async def acquire(self, key: str, ttl: int) -> str | None:
        """Take a mutual-exclusion lock (SET NX EX).

        Args:
            key: Lock key
            ttl: Lock lifetime in seconds

        Returns:
            Holder token to pass to release(), or None if the lock is held

        Raises:
            CoordinatorError: If Redis is unreachable
        """
        token = uuid.uuid4().hex
        try:
            acquired = await self.redis.set(key, token, nx=True, ex=ttl)
        except RedisError as e:
            raise CoordinatorError(f"Lock acquire failed for {key}: {e}") from e
        return token if acquired else None

    async def release(self, key: str, token: str) -> bool:
        """Release a lock only if it is still held with this token.

        A lock that expired and was re-acquired by another holder is left alone.
        """
        try:
            result = await self.redis.eval(_RELEASE_LUA, 1, key, token)
        except RedisError as e:
            logger.warning("coordinator.release_failed", key=key, error=str(e))
            return False
        return bool(result)

    async def mark_once(self, key: str, ttl: int) -> bool:
        """Set a marker only if absent.

        Returns:
            True for the first caller within the TTL, False for everyone else

        Raises:
            CoordinatorError: If Redis is unreachable
        """
        try:
            return bool(await self.redis.set(key, "1", nx=True, ex=ttl))
        except RedisError as e:
            raise CoordinatorError(f"Marker set failed for {key}: {e}") from e

    async def set_hint(self, key: str, value: dict[str, Any], ttl: int) -> None:
        try:
            await self.redis.setex(key, ttl, json.dumps(value))
        except RedisError as e:
            logger.warning("coordinator.hint_write_failed", key=key, error=str(e))

    async def get_hint(self, key: str) -> dict[str, Any] | None:
        try:
            raw = _decode(await self.redis.get(key))
        except RedisError as e:
            logger.warning("coordinator.hint_read_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def clear(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.redis.delete(*keys)
        except RedisError as e:
            logger.warning("coordinator.clear_failed", keys=list(keys), error=str(e))

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError:
            return False
