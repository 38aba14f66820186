"""Per-run serialization of mutating payroll operations."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from payroll_execution.database import try_advisory_xact_lock
from payroll_execution.exceptions import StateConflictError

logger = logging.getLogger(__name__)


class RunLockRegistry:
    """In-process registry of one asyncio lock per payroll run.

    Acquisition is try-only: a caller that finds the run already locked fails
    fast with StateConflictError instead of queueing behind the holder.
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}

    def _lock_for(self, run_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_id] = lock
        return lock

    def is_locked(self, run_id: UUID) -> bool:
        lock = self._locks.get(run_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, run_id: UUID, operation: str) -> AsyncIterator[None]:
        lock = self._lock_for(run_id)
        if lock.locked():
            logger.warning(
                "Concurrent %s rejected for payroll run %s", operation, run_id
            )
            raise StateConflictError(
                f"Payroll run {run_id} has another operation in flight"
            )
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            self._locks.pop(run_id, None)


# Shared by every service instance in the process
run_locks = RunLockRegistry()


class LockingService:
    """Serializes state transitions per payroll run.

    Two layers:
    1. In-process try-lock from ``run_locks``
    2. On PostgreSQL, a transaction-scoped advisory lock so that separate
       processes serialize too

    The optimistic ``version`` column on the run catches anything that slips
    past both (stale flush → StateConflictError).
    """

    def __init__(self, session: AsyncSession, registry: RunLockRegistry | None = None):
        self.session = session
        self.registry = registry or run_locks

    @asynccontextmanager
    async def run_guard(self, run_id: UUID, operation: str) -> AsyncIterator[None]:
        async with self.registry.hold(run_id, operation):
            if not await try_advisory_xact_lock(self.session, str(run_id)):
                raise StateConflictError(
                    f"Payroll run {run_id} is locked by another transaction"
                )
            yield
