"""Per-instance mutation serialization."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class InstanceLocks:
    """Hands out one ``asyncio.Lock`` per instance id.

    Every mutation of an instance (step execution, approval, pause, resume,
    cancel, escalation bookkeeping) runs under its lock; different instances
    never contend. Locks are dropped once no task holds or awaits them.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, instance_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(instance_id, asyncio.Lock())
        self._waiters[instance_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[instance_id] -= 1
            if self._waiters[instance_id] == 0:
                del self._waiters[instance_id]
                self._locks.pop(instance_id, None)

    def __len__(self) -> int:
        return len(self._locks)
