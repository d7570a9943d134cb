"""Key-value store interface and backend selection."""

from __future__ import annotations

from typing import Protocol
from urllib.parse import quote

from calcast.config import get_settings


class KeyValueStore(Protocol):
    """Persistent string store with prefix listing.

    Values are opaque strings (JSON documents in practice). ``pop`` must be
    atomic: two concurrent callers never both receive the value.
    """

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> str | None: ...

    async def list_keys(self, prefix: str) -> list[str]: ...


def make_key(namespace: str, *parts: str) -> str:
    """Build ``namespace:part1:part2`` with each part percent-quoted.

    Quoting keeps ``:`` inside a workspace or account id from bleeding into
    a neighbouring prefix scan.
    """
    return ":".join([namespace, *(quote(str(p), safe="") for p in parts)])


def make_prefix(namespace: str, *parts: str) -> str:
    return make_key(namespace, *parts) + ":"


_store: KeyValueStore | None = None


def get_store() -> KeyValueStore:
    """Return the process-wide store for the configured backend."""
    global _store
    if _store is None:
        backend = get_settings().store_backend
        if backend == "memory":
            from calcast.store.memory import MemoryStore

            _store = MemoryStore()
        else:
            from calcast.store.redis import RedisStore

            _store = RedisStore()
    return _store


def reset_store() -> None:
    """Drop the cached store (for testing)."""
    global _store
    _store = None
