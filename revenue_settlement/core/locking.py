"""Per-settlement exclusive locks.

Every lifecycle operation on one settlement runs under that settlement's
lock for the whole read-modify-write. A caller that cannot get the lock in
time fails fast instead of queueing behind a long invoice run. Locks are kept
in a weak registry so ids that are no longer in use do not accumulate.

This only serializes callers inside one process. Writers in other processes
are caught by the optimistic ``version`` column on the settlement row.
"""

import asyncio
import logging
import uuid
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from revenue_settlement.core.config import settings

logger = logging.getLogger(__name__)

_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


class ConcurrentModificationError(Exception):
    """Raised when another operation holds or has changed the same settlement."""

    def __init__(self, settlement_id: uuid.UUID, detail: str | None = None):
        self.settlement_id = settlement_id
        super().__init__(
            detail or f"Settlement {settlement_id} is being modified by another operation"
        )


def _lock_for(settlement_id: uuid.UUID) -> asyncio.Lock:
    lock = _locks.get(settlement_id)
    if lock is None:
        lock = asyncio.Lock()
        _locks[settlement_id] = lock
    return lock


@asynccontextmanager
async def settlement_lock(
    settlement_id: uuid.UUID,
    timeout: float | None = None,
) -> AsyncIterator[None]:
    """Hold the exclusive lock for ``settlement_id``.

    Raises:
        ConcurrentModificationError: If the lock is not acquired within
            ``timeout`` seconds (defaults to ``settlement_lock_timeout_seconds``).
    """
    lock = _lock_for(settlement_id)
    wait = settings.settlement_lock_timeout_seconds if timeout is None else timeout

    if lock.locked():
        logger.debug("Waiting up to %.2fs for lock on settlement %s", wait, settlement_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait)
        except asyncio.TimeoutError as exc:
            logger.warning("Lock timeout on settlement %s", settlement_id)
            raise ConcurrentModificationError(settlement_id) from exc
    else:
        await lock.acquire()

    try:
        yield
    finally:
        lock.release()
