"""Redis-backed key-value store tests; skipped when no Redis server answers."""

import os
import uuid

import pytest
from redis import Redis, RedisError

from kvauth.config import Settings
from kvauth.service.results import Err, Ok
from kvauth.storage.errors import BackendUnavailable
from kvauth.storage.redis_kv import RedisKeyValueStore
from kvauth.storage.sessions import SessionStore

REDIS_URL = os.environ.get("KVAUTH_TEST_REDIS_URL", "redis://localhost:6379/15")


def _redis_available() -> bool:
    client = Redis.from_url(REDIS_URL, socket_connect_timeout=0.5)
    try:
        return bool(client.ping())
    except RedisError:
        return False
    finally:
        client.close()


pytestmark = pytest.mark.skipif(not _redis_available(), reason="redis not available")


@pytest.fixture
def namespace():
    return f"kvauth_test_{uuid.uuid4().hex}"


async def test_basic_operations(namespace):
    kv = RedisKeyValueStore(REDIS_URL)
    key = (namespace, "a")
    try:
        assert await kv.get(key) is None
        assert await kv.set(key, "v1", ttl_ms=60_000) is True
        assert await kv.get(key) == "v1"
        assert await kv.set_if_absent(key, "v2") is False
        assert await kv.compare_and_set(key, "stale", "v2") is False
        assert await kv.compare_and_set(key, "v1", "v2", ttl_ms=60_000) is True
        assert await kv.get(key) == "v2"
        assert await kv.expire(key, 60_000) is True
        assert await kv.scan(namespace, limit=10) == ["v2"]
        await kv.delete(key)
        assert await kv.get(key) is None
    finally:
        await kv.close()


async def test_compare_and_set_on_missing_key(namespace):
    kv = RedisKeyValueStore(REDIS_URL)
    try:
        assert await kv.compare_and_set((namespace, "missing"), "v1", "v2") is False
        assert await kv.get((namespace, "missing")) is None
    finally:
        await kv.close()


async def test_session_store_over_redis():
    kv = RedisKeyValueStore(REDIS_URL)
    store = SessionStore(kv, Settings())
    user_id = f"user-{uuid.uuid4().hex}"
    try:
        session = (await store.create(user_id)).value
        assert isinstance(await store.create(user_id), Err)
        appended = await store.append_deny_list_token(session.id, "refresh-a")
        assert isinstance(appended, Ok)
        assert (await store.is_token_denied(session.id, "refresh-a")).value is True
        await store.delete(session.id)
        assert isinstance(await store.get(session.id), Err)
    finally:
        await kv.close()


async def test_unreachable_server_raises_backend_unavailable():
    kv = RedisKeyValueStore("redis://127.0.0.1:1/0", socket_timeout=0.5)
    try:
        with pytest.raises(BackendUnavailable):
            await kv.get(("auth_sessions", "x"))
    finally:
        await kv.close()
