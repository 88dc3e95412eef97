"""
Per-key asyncio locks, re-entrant within one task.

A task holding ``(tenant_id, provider)`` may acquire the same key again
(e.g. the sync engine calling ``ConnectionStore.upsert`` while it already
holds the key for the whole batch).  Other tasks wait.  Keys are independent,
so different tenants never serialize on each other.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Optional


class _Entry:
    __slots__ = ("lock", "owner", "depth", "waiters")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.owner: Optional[asyncio.Task] = None
        self.depth = 0
        self.waiters = 0


class KeyedLock:
    def __init__(self) -> None:
        self._entries: Dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        task = asyncio.current_task()
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()

        if entry.owner is task and task is not None:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        entry.waiters += 1
        try:
            await entry.lock.acquire()
        finally:
            entry.waiters -= 1
        entry.owner = task
        entry.depth = 1
        try:
            yield
        finally:
            entry.depth = 0
            entry.owner = None
            entry.lock.release()
            if not entry.waiters and self._entries.get(key) is entry:
                del self._entries[key]
