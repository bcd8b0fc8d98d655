from __future__ import annotations

from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis, RedisError

from kvauth.storage.errors import BackendUnavailable
from kvauth.storage.kv import Key, format_key


class RedisKeyValueStore:
    """Key-value store backed by Redis.

    Keys are flattened to ``namespace:identifier``; TTLs are passed as
    ``PX`` milliseconds. Any ``RedisError`` surfaces as
    ``BackendUnavailable``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic compare-and-set: write only if the stored value is unchanged
    _COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current ~= ARGV[1] then
  return 0
end
local ttl = tonumber(ARGV[3])
if ttl and ttl > 0 then
  redis.call('SET', KEYS[1], ARGV[2], 'PX', ttl)
else
  redis.call('SET', KEYS[1], ARGV[2])
end
return 1
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._compare_and_set = self.client.register_script(self._COMPARE_AND_SET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        # A short-lived synchronous client keeps the async client off the
        # temporary startup event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: Key) -> Optional[str]:
        try:
            return await self.client.get(format_key(key))
        except RedisError as exc:
            raise BackendUnavailable("get", exc) from exc

    async def set(self, key: Key, value: str, ttl_ms: Optional[int] = None) -> bool:
        try:
            return bool(await self.client.set(format_key(key), value, px=ttl_ms))
        except RedisError as exc:
            raise BackendUnavailable("set", exc) from exc

    async def set_if_absent(
        self, key: Key, value: str, ttl_ms: Optional[int] = None
    ) -> bool:
        try:
            return bool(
                await self.client.set(format_key(key), value, px=ttl_ms, nx=True)
            )
        except RedisError as exc:
            raise BackendUnavailable("set_if_absent", exc) from exc

    async def compare_and_set(
        self, key: Key, expected: str, value: str, ttl_ms: Optional[int] = None
    ) -> bool:
        try:
            result = await self._compare_and_set(
                keys=[format_key(key)],
                args=[expected, value, ttl_ms or 0],
            )
        except RedisError as exc:
            raise BackendUnavailable("compare_and_set", exc) from exc
        return bool(int(result))

    async def delete(self, key: Key) -> None:
        try:
            await self.client.delete(format_key(key))
        except RedisError as exc:
            raise BackendUnavailable("delete", exc) from exc

    async def expire(self, key: Key, ttl_ms: int) -> bool:
        try:
            return bool(await self.client.pexpire(format_key(key), ttl_ms))
        except RedisError as exc:
            raise BackendUnavailable("expire", exc) from exc

    async def scan(self, namespace: str, limit: int) -> List[str]:
        pattern = format_key((namespace, "*"))
        keys: List[str] = []
        try:
            async for key in self.client.scan_iter(match=pattern, count=limit * 10):
                keys.append(key)
                if len(keys) >= limit:
                    break
            if not keys:
                return []
            values = await self.client.mget(keys)
        except RedisError as exc:
            raise BackendUnavailable("scan", exc) from exc
        # Keys may expire between SCAN and MGET
        return [value for value in values if value is not None]

    async def close(self) -> None:
        await self.client.aclose()
