"""Distributed mutual exclusion keyed by a logical lock name.

On PostgreSQL a lock is a session-scoped advisory lock held on a dedicated
connection for the lifetime of the :class:`LockHandle`.  The lock disappears
with the session, so losing the connection means losing the lock; the handle
reports that through its ``lost`` event, fed by the asyncpg termination
listener and by a periodic keepalive round trip.

SQLite has no advisory locks.  In local dev mode the same contract is
provided by lease rows in ``leader_locks``: insert-if-absent to acquire,
expired leases reaped on acquire, the keepalive renews the lease.

INVARIANT: a handle is released exactly once.  A release that finds the
lock was not held raises :class:`LockNotHeldError`; it is never swallowed.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Protocol

from sqlalchemy import delete, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from apps_monitor.clock import Clock, SystemClock
from apps_monitor.errors import LockNotHeldError
from apps_monitor.state.tables import LeaderLockTable

logger = logging.getLogger(__name__)


class LockName(str, Enum):
    ORCHESTRATION = "apps-monitor.orchestration"
    SEEDER = "apps-monitor.seeder"


def advisory_key(name: str) -> int:
    """Map *name* to a stable signed 64-bit advisory lock key.

    Uses the first 8 bytes of the SHA-256 digest so every process derives
    the same key regardless of interpreter hash randomisation.
    """
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class _LockBackend(Protocol):
    async def try_lock(self, conn: AsyncConnection, key: int, name: str) -> bool: ...

    async def keepalive(self, conn: AsyncConnection, key: int) -> bool: ...

    async def unlock(self, conn: AsyncConnection, key: int) -> bool: ...


class _AdvisoryLockBackend:
    """PostgreSQL session-level advisory locks."""

    async def try_lock(self, conn: AsyncConnection, key: int, name: str) -> bool:
        result = await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})
        acquired = bool(result.scalar_one())
        await conn.commit()
        return acquired

    async def keepalive(self, conn: AsyncConnection, key: int) -> bool:
        await conn.execute(text("SELECT 1"))
        await conn.commit()
        return True

    async def unlock(self, conn: AsyncConnection, key: int) -> bool:
        result = await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
        released = bool(result.scalar_one())
        await conn.commit()
        return released


class _LeaseLockBackend:
    """Lease rows in ``leader_locks`` for SQLite."""

    def __init__(self, holder: str, lease: timedelta, clock: Clock) -> None:
        self._holder = holder
        self._lease = lease
        self._clock = clock
        self._table = LeaderLockTable.__table__

    async def try_lock(self, conn: AsyncConnection, key: int, name: str) -> bool:
        now = self._clock.now()
        await conn.execute(
            delete(self._table).where(
                self._table.c.lock_key == key,
                self._table.c.renewed_at < now - self._lease,
            )
        )
        stmt = (
            sqlite_insert(self._table)
            .values(lock_key=key, lock_name=name, holder=self._holder, acquired_at=now, renewed_at=now)
            .on_conflict_do_nothing(index_elements=["lock_key"])
        )
        result = await conn.execute(stmt)
        await conn.commit()
        return (result.rowcount or 0) > 0

    async def keepalive(self, conn: AsyncConnection, key: int) -> bool:
        result = await conn.execute(
            update(self._table)
            .where(self._table.c.lock_key == key, self._table.c.holder == self._holder)
            .values(renewed_at=self._clock.now())
        )
        await conn.commit()
        return (result.rowcount or 0) > 0

    async def unlock(self, conn: AsyncConnection, key: int) -> bool:
        result = await conn.execute(
            delete(self._table).where(self._table.c.lock_key == key, self._table.c.holder == self._holder)
        )
        await conn.commit()
        return (result.rowcount or 0) > 0


async def _abandon_connection(backend: _LockBackend, conn: AsyncConnection, key: int, name: str) -> None:
    """Give up a lock that may or may not have been taken on *conn*.

    The unlock is best effort; the connection is then invalidated rather than
    returned to the pool, which ends the PostgreSQL session and with it any
    advisory lock it still holds.
    """
    try:
        try:
            await backend.unlock(conn, key)
        except Exception as exc:
            logger.warning("Could not unlock %s after an interrupted acquire: %s", name, exc, extra={"lock": name})
    finally:
        try:
            await conn.invalidate()
        finally:
            await conn.close()


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


class LockHandle:
    """A held lock.  Use as ``async with`` to guarantee a single release.

    Parameters
    ----------
    name:
        Logical lock name.
    key:
        Advisory key derived from *name*.
    connection:
        Dedicated connection owning the lock session; closed on release.
    backend:
        Dialect-specific lock operations.
    keepalive_interval:
        Seconds between keepalive round trips.
    clock:
        Time source for the keepalive loop.
    """

    def __init__(
        self,
        name: str,
        key: int,
        connection: AsyncConnection,
        backend: _LockBackend,
        keepalive_interval: float,
        clock: Clock,
    ) -> None:
        self.name = name
        self.key = key
        self._conn = connection
        self._backend = backend
        self._keepalive_interval = keepalive_interval
        self._clock = clock
        self._conn_lock = asyncio.Lock()
        self._lost = asyncio.Event()
        self._lost_reason: str | None = None
        self._released = False
        self._keepalive_task: asyncio.Task[None] | None = None
        self._driver_connection: Any = None

    @property
    def lost(self) -> asyncio.Event:
        """Set once the lock can no longer be assumed held."""
        return self._lost

    @property
    def is_lost(self) -> bool:
        return self._lost.is_set()

    @property
    def lost_reason(self) -> str | None:
        return self._lost_reason

    @property
    def released(self) -> bool:
        return self._released

    async def wait_lost(self) -> None:
        await self._lost.wait()

    async def _start(self) -> None:
        raw = await self._conn.get_raw_connection()
        driver = raw.driver_connection
        if hasattr(driver, "add_termination_listener"):
            driver.add_termination_listener(self._on_terminated)
            self._driver_connection = driver
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(), name=f"lock-keepalive:{self.name}")

    def _on_terminated(self, _connection: object) -> None:
        self._mark_lost("database connection terminated")

    def _mark_lost(self, reason: str) -> None:
        if self._released or self._lost.is_set():
            return
        self._lost_reason = reason
        self._lost.set()
        logger.error("Lost lock %s: %s", self.name, reason, extra={"lock": self.name})

    async def _keepalive_loop(self) -> None:
        while not self._lost.is_set():
            await self._clock.sleep(self._keepalive_interval)
            async with self._conn_lock:
                try:
                    alive = await self._backend.keepalive(self._conn, self.key)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("Keepalive for lock %s failed: %s", self.name, exc, exc_info=True)
                    alive = False
            if not alive:
                self._mark_lost("keepalive failed")

    async def release(self) -> None:
        """Release the lock and close its connection.

        Raises
        ------
        RuntimeError
            If the handle was already released.
        LockNotHeldError
            If the database reports the lock was not held by this session.
        """
        if self._released:
            raise RuntimeError(f"Lock {self.name} already released")
        self._released = True
        await self._stop_watching()

        try:
            released = await self._backend.unlock(self._conn, self.key)
        except Exception as exc:
            await self._discard_connection()
            raise LockNotHeldError(f"Lock {self.name} could not be released: {exc}") from exc
        if not released:
            await self._discard_connection()
            raise LockNotHeldError(f"Lock {self.name} was not held at release")

        await self._conn.close()
        logger.info("Released lock %s", self.name, extra={"lock": self.name})

    async def _stop_watching(self) -> None:
        async with self._conn_lock:
            if self._keepalive_task is not None:
                self._keepalive_task.cancel()
                try:
                    await self._keepalive_task
                except asyncio.CancelledError:
                    pass
                self._keepalive_task = None

        if self._driver_connection is not None:
            self._driver_connection.remove_termination_listener(self._on_terminated)
            self._driver_connection = None

    async def _discard_connection(self) -> None:
        try:
            await self._conn.invalidate()
        finally:
            await self._conn.close()

    async def _abandon(self) -> None:
        """Drop a lock whose acquisition was interrupted before the handle was returned."""
        self._released = True
        try:
            await self._stop_watching()
        finally:
            await _abandon_connection(self._backend, self._conn, self.key, self.name)

    async def __aenter__(self) -> LockHandle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class DistributedLocking:
    """Acquire named locks against the state store.

    Parameters
    ----------
    engine:
        Engine of the state store; each held lock pins one of its connections.
    clock:
        Time source for retry and keepalive intervals.
    retry_interval:
        Seconds between attempts in :meth:`acquire`.
    keepalive_interval:
        Seconds between keepalive round trips of a held lock.
    holder_id:
        Identity recorded in SQLite lease rows.  Defaults to a random id.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        clock: Clock | None = None,
        retry_interval: float = 5.0,
        keepalive_interval: float = 60.0,
        holder_id: str | None = None,
    ) -> None:
        self._engine = engine
        self._clock = clock or SystemClock()
        self._retry_interval = retry_interval
        self._keepalive_interval = keepalive_interval
        self.holder_id = holder_id or uuid.uuid4().hex

        dialect_name = engine.dialect.name
        self._backend: _LockBackend
        if dialect_name == "postgresql":
            self._backend = _AdvisoryLockBackend()
        elif dialect_name == "sqlite":
            self._backend = _LeaseLockBackend(
                self.holder_id,
                timedelta(seconds=keepalive_interval * 3),
                self._clock,
            )
        else:
            raise ValueError(f"Distributed locking is not supported on {dialect_name!r}")

    async def try_acquire(self, name: LockName | str) -> LockHandle | None:
        """Take the lock if it is free; return ``None`` when it is held elsewhere."""
        lock_name = name.value if isinstance(name, LockName) else name
        key = advisory_key(lock_name)

        conn = await self._engine.connect()
        try:
            acquired = await self._backend.try_lock(conn, key, lock_name)
        except BaseException:
            # Cancellation can land after the database granted the lock.
            await _abandon_connection(self._backend, conn, key, lock_name)
            raise
        if not acquired:
            await conn.close()
            logger.debug("Lock %s is held elsewhere", lock_name)
            return None

        handle = LockHandle(lock_name, key, conn, self._backend, self._keepalive_interval, self._clock)
        try:
            await handle._start()
        except BaseException:
            await handle._abandon()
            raise
        logger.info("Acquired lock %s (key=%d)", lock_name, key, extra={"lock": lock_name})
        return handle

    async def acquire(self, name: LockName | str) -> LockHandle:
        """Block until the lock is taken.  Cancel the calling task to give up."""
        lock_name = name.value if isinstance(name, LockName) else name
        attempts = 0
        while True:
            handle = await self.try_acquire(lock_name)
            if handle is not None:
                return handle
            attempts += 1
            if attempts == 1:
                logger.info(
                    "Waiting for lock %s; retrying every %.1fs",
                    lock_name,
                    self._retry_interval,
                    extra={"lock": lock_name},
                )
            await self._clock.sleep(self._retry_interval)
