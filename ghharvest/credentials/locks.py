"""Per-credential mutual exclusion.

Only one call may use a given credential at a time so its remaining budget can
be re-read and written back without lost updates. Two strategies exist:

``InProcessCredentialLock``
    One process-wide :class:`threading.Lock` per credential id, shared by
    every broker in the process. Dramatiq runs each message on its own
    thread and event loop, so concurrent jobs in one worker still exclude
    each other. Sufficient when a single process owns the pool.

``RowCredentialLock``
    ``SELECT ... FOR UPDATE`` on the credential row, held by the session's
    transaction until the broker commits. Needed once several worker processes
    share one PostgreSQL pool. SQLite ignores the clause, so on SQLite this
    degrades to its database-wide write lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import typing as typ

from sqlalchemy import select

from ghharvest.github.config import CredentialLockMode
from ghharvest.storage.models import Credential

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession


class CredentialLock(typ.Protocol):
    """Interface for serialising use of one credential."""

    holds_transaction: bool

    def hold(
        self, session: AsyncSession, credential_id: int
    ) -> contextlib.AbstractAsyncContextManager[Credential | None]:
        """Enter the exclusive section and yield a fresh read of the row."""
        ...


async def _fresh_read(
    session: AsyncSession, credential_id: int, *, for_update: bool
) -> Credential | None:
    stmt = select(Credential).where(Credential.id == credential_id)
    if for_update:
        stmt = stmt.with_for_update()
    stmt = stmt.execution_options(populate_existing=True)
    return await session.scalar(stmt)


_POLL_INTERVAL_S = 0.01

_PROCESS_LOCKS: dict[int, threading.Lock] = {}
_REGISTRY_LOCK = threading.Lock()


def _process_lock_for(credential_id: int) -> threading.Lock:
    with _REGISTRY_LOCK:
        lock = _PROCESS_LOCKS.get(credential_id)
        if lock is None:
            lock = _PROCESS_LOCKS[credential_id] = threading.Lock()
        return lock


class InProcessCredentialLock:
    """Serialise credential use across every broker in this process.

    Waiters poll a non-blocking acquire instead of blocking a thread, so a
    cancelled waiter never acquires the lock after it has gone away.
    """

    holds_transaction = False

    @contextlib.asynccontextmanager
    async def hold(
        self, session: AsyncSession, credential_id: int
    ) -> cabc.AsyncIterator[Credential | None]:
        """Acquire the credential's lock and yield its current row."""
        lock = _process_lock_for(credential_id)
        while not lock.acquire(blocking=False):
            await asyncio.sleep(_POLL_INTERVAL_S)
        try:
            yield await _fresh_read(session, credential_id, for_update=False)
        finally:
            lock.release()


class RowCredentialLock:
    """Serialise credential use with a database row lock."""

    holds_transaction = True

    @contextlib.asynccontextmanager
    async def hold(
        self, session: AsyncSession, credential_id: int
    ) -> cabc.AsyncIterator[Credential | None]:
        """Lock the credential row for the rest of the session's transaction."""
        yield await _fresh_read(session, credential_id, for_update=True)


def build_credential_lock(mode: CredentialLockMode) -> CredentialLock:
    """Return the lock strategy configured by ``GHHARVEST_CREDENTIAL_LOCK``."""
    if mode is CredentialLockMode.ROW:
        return RowCredentialLock()
    return InProcessCredentialLock()
