"""
Shared building blocks: resource lifecycle and per-key locking.
"""

import asyncio
from collections import defaultdict
from typing import Dict


class Resource:
    """Component with an explicit lifecycle; both hooks default to no-ops."""

    async def init(self) -> None:
        """Acquire resources."""

    async def stop(self) -> None:
        """Release resources."""


class KeyedLocks:
    """One ``asyncio.Lock`` per server identity, created on demand."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, key: str) -> asyncio.Lock:
        return self._locks[key]

    def locked(self, key: str) -> bool:
        """Whether the key's lock is currently held."""
        return key in self._locks and self._locks[key].locked()

    def discard(self, key: str) -> None:
        """Forget an idle lock."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
