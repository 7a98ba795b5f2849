"""Per-key asyncio locks that are released from memory once idle.

Used for the per-store gates of the connection manager and the per-store
serialisation of ledger writes.  An entry exists only while some task holds
or waits for the key, so store ids that are never seen again (including ones
the registry rejects) do not accumulate.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLock:
    """A map of ``asyncio.Lock`` keyed by string, pruned when unused.

    The map itself is guarded by a ``threading.Lock`` that is never held
    across an ``await``.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def busy(self, key: str) -> bool:
        """Whether any task currently holds or waits for *key*."""
        with self._guard:
            return key in self._entries

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0 and self._entries.get(key) is entry:
                    del self._entries[key]
