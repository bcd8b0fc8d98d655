from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from kvauth.config import get_settings, reset_settings_cache
from kvauth.logging import get_logger
from kvauth.service.auth import AuthService
from kvauth.service.passwords import CredentialVerifier
from kvauth.service.tokens import TokenService
from kvauth.storage.accounts import AccountStore
from kvauth.storage.kv import KeyValueStore
from kvauth.storage.memory import MemoryKeyValueStore
from kvauth.storage.redis_kv import RedisKeyValueStore
from kvauth.storage.sessions import SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the long-lived store client and the services built on it."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.kv: KeyValueStore = self._build_store()
        self.verifier = CredentialVerifier()
        self.tokens = TokenService(self.settings)
        self.accounts = AccountStore(self.kv, self.verifier)
        self.sessions = SessionStore(self.kv, self.settings)
        self.auth = AuthService(
            self.settings,
            self.accounts,
            self.sessions,
            self.tokens,
            self.verifier,
        )
        if not self.settings.access_token_secret or not self.settings.refresh_token_secret:
            # Not fatal at startup; every token operation reports it instead
            logger.error(
                "token_secrets_missing",
                access_configured=bool(self.settings.access_token_secret),
                refresh_configured=bool(self.settings.refresh_token_secret),
            )
        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            session_ttl_minutes=self.settings.session_ttl_minutes,
        )

    @property
    def store_type(self) -> str:
        return "redis" if isinstance(self.kv, RedisKeyValueStore) else "memory"

    def _build_store(self) -> KeyValueStore:
        if self.settings.use_memory_store:
            return MemoryKeyValueStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisKeyValueStore(self.settings.redis_url)
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for accounts and auth sessions; start Redis or set "
                "USE_MEMORY_STORE=true, TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and accounts "
                "are held in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryKeyValueStore()

    async def close(self) -> None:
        await self.kv.close()
        logger.info("runtime_closed", store_type=self.store_type)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
