from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from kvauth.storage.kv import Key


class MemoryKeyValueStore:
    """In-process key-value store with per-key expiry.

    Used by tests and single-process development runs. Every operation
    holds one re-entrant lock, so compare-and-set is atomic across threads
    and across coroutines sharing the event loop.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # key -> (value, absolute deadline on ``clock`` or None)
        self._data: Dict[Key, Tuple[str, Optional[float]]] = {}
        self._data_lock = threading.RLock()

    def _deadline(self, ttl_ms: Optional[int]) -> Optional[float]:
        if ttl_ms is None:
            return None
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        return self._clock() + ttl_ms / 1000.0

    def _live(self, key: Key) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: Key) -> Optional[str]:
        with self._data_lock:
            return self._live(key)

    async def set(self, key: Key, value: str, ttl_ms: Optional[int] = None) -> bool:
        with self._data_lock:
            self._data[key] = (value, self._deadline(ttl_ms))
            return True

    async def set_if_absent(
        self, key: Key, value: str, ttl_ms: Optional[int] = None
    ) -> bool:
        with self._data_lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl_ms))
            return True

    async def compare_and_set(
        self, key: Key, expected: str, value: str, ttl_ms: Optional[int] = None
    ) -> bool:
        with self._data_lock:
            if self._live(key) != expected:
                return False
            self._data[key] = (value, self._deadline(ttl_ms))
            return True

    async def delete(self, key: Key) -> None:
        with self._data_lock:
            self._data.pop(key, None)

    async def expire(self, key: Key, ttl_ms: int) -> bool:
        with self._data_lock:
            value = self._live(key)
            if value is None:
                return False
            self._data[key] = (value, self._deadline(ttl_ms))
            return True

    async def scan(self, namespace: str, limit: int) -> List[str]:
        with self._data_lock:
            values: List[str] = []
            for key in list(self._data.keys()):
                if key[0] != namespace:
                    continue
                value = self._live(key)
                if value is None:
                    continue
                values.append(value)
                if len(values) >= limit:
                    break
            return values

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()
