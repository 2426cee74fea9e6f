"""Locks keyed by an identity, created on first use."""

import asyncio
import contextlib
from collections import Counter
from collections.abc import AsyncGenerator, Hashable
from typing import Generic, TypeVar

__all__ = ["KeyedLock"]

K = TypeVar("K", bound=Hashable)


class KeyedLock(Generic[K]):
    """A set of asyncio locks, one per key.

    The lock for a key only exists while someone holds it or waits on it, so
    the number of locks follows the number of keys in use rather than the
    number of keys ever seen.
    """

    def __init__(self) -> None:
        """Initialize KeyedLock."""
        self._locks: dict[K, asyncio.Lock] = {}
        self._users: Counter[K] = Counter()

    @contextlib.asynccontextmanager
    async def hold(self, key: K) -> AsyncGenerator[None, None]:
        """Hold the lock for a key for the duration of the context."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: K) -> bool:
        """Return True if the lock for a key is currently held."""
        return (lock := self._locks.get(key)) is not None and lock.locked()

    def __len__(self) -> int:
        """Return the number of keys held or waited on."""
        return len(self._locks)
