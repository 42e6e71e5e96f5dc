"""Per-subscriber serialization of billing operations."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    owner: asyncio.Task | None = None
    users: int = 0


class SubscriberLocks:
    """One asyncio lock per subscriber, created on demand.

    Waiters are woken in FIFO order. A lock is dropped once no task holds or
    waits for it. Re-acquiring a lock the current task already holds is a
    no-op, so nested engine calls do not deadlock. Tasks spawned while the
    lock is held do not inherit it.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_locked(self, subscriber_id: str) -> bool:
        entry = self._entries.get(subscriber_id)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(self, subscriber_id: str) -> AsyncIterator[None]:
        task = asyncio.current_task()
        entry = self._entries.get(subscriber_id)
        if entry is not None and task is not None and entry.owner is task:
            yield
            return

        entry = self._entries.setdefault(subscriber_id, _Entry())
        entry.users += 1
        try:
            async with entry.lock:
                entry.owner = task
                try:
                    yield
                finally:
                    entry.owner = None
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(subscriber_id, None)
