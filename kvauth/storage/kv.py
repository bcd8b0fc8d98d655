from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

Key = Tuple[str, str]


def format_key(key: Key) -> str:
    """Flatten a ``(namespace, identifier)`` key for backends that only take strings."""
    namespace, identifier = key
    if not namespace or ":" in namespace:
        raise ValueError(f"invalid key namespace: {namespace!r}")
    return f"{namespace}:{identifier}"


class KeyValueStore(Protocol):
    """Async key-value contract shared by the memory and Redis backends.

    Values are strings (JSON documents for records). TTLs are in
    milliseconds; ``None`` keeps the value until deleted. Backend failures
    raise ``BackendUnavailable``.
    """

    async def get(self, key: Key) -> Optional[str]: ...

    async def set(self, key: Key, value: str, ttl_ms: Optional[int] = None) -> bool: ...

    async def set_if_absent(
        self, key: Key, value: str, ttl_ms: Optional[int] = None
    ) -> bool: ...

    async def compare_and_set(
        self, key: Key, expected: str, value: str, ttl_ms: Optional[int] = None
    ) -> bool: ...

    async def delete(self, key: Key) -> None: ...

    async def expire(self, key: Key, ttl_ms: int) -> bool: ...

    async def scan(self, namespace: str, limit: int) -> List[str]: ...

    async def close(self) -> None: ...
