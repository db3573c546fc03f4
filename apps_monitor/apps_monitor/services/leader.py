"""Leader election around the orchestrator and the alerter.

Only the process holding the application-wide lock runs the background
services.  Leadership ends when the process is asked to stop, when the lock
is lost, or when a service reports a fatal error.  The last two are raised
to the caller so that the process exits instead of running without
exclusivity.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Protocol

from apps_monitor.errors import FatalServiceError, LockLostError, LockNotHeldError
from apps_monitor.state.locking import DistributedLocking, LockHandle, LockName

logger = logging.getLogger(__name__)


class BackgroundService(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...


async def _first_completed(*aws: Awaitable[object]) -> asyncio.Task[object]:
    """Wait for the first of *aws*; cancel and await the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    return next(iter(done))  # type: ignore[return-value]


class LeaderElection:
    """Run *services* while holding the application-wide lock.

    Parameters
    ----------
    locking:
        Lock provider of the state store.
    services:
        Started in order once the lock is held, stopped in reverse order.
    shutdown_grace:
        Seconds each service gets to stop before it is abandoned.
    lock_name:
        The lock that designates the leader.
    """

    def __init__(
        self,
        locking: DistributedLocking,
        services: list[BackgroundService],
        *,
        shutdown_grace: float = 30.0,
        lock_name: LockName = LockName.ORCHESTRATION,
    ) -> None:
        self._locking = locking
        self._services = services
        self._shutdown_grace = shutdown_grace
        self._lock_name = lock_name
        self._is_leader = False
        self._fatal = asyncio.Event()
        self._fatal_exc: BaseException | None = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def report_fatal(self, exc: BaseException) -> None:
        """Request shutdown because a service cannot continue.  Only the first error is kept."""
        if self._fatal_exc is None:
            self._fatal_exc = exc
        self._fatal.set()

    async def run(self, stop: asyncio.Event) -> None:
        """Acquire the lock, run the services until *stop* is set, then step down.

        Raises
        ------
        LockLostError
            The lock was lost while leading.
        FatalServiceError
            A service reported a fatal error.
        LockNotHeldError
            The lock was found not held at release although no loss was
            signalled.
        """
        acquire = asyncio.ensure_future(self._locking.acquire(self._lock_name))
        await _first_completed(acquire, stop.wait())
        if acquire.cancelled():
            logger.info("Stopped before acquiring leadership")
            return
        handle = acquire.result()
        assert isinstance(handle, LockHandle)  # noqa: S101
        if stop.is_set():
            await handle.release()
            logger.info("Stopped while acquiring leadership")
            return

        self._is_leader = True
        logger.info("Acquired leadership (%s)", self._lock_name.value)
        started: list[BackgroundService] = []
        try:
            for service in self._services:
                await service.start()
                started.append(service)
            await _first_completed(stop.wait(), handle.wait_lost(), self._fatal.wait())
        finally:
            self._is_leader = False
            for service in reversed(started):
                await self._stop_service(service)
            await self._release(handle)

        if handle.is_lost:
            raise LockLostError(f"Lost lock {handle.name}: {handle.lost_reason}")
        if self._fatal_exc is not None:
            raise FatalServiceError(f"Background service failed: {self._fatal_exc}") from self._fatal_exc
        logger.info("Stepped down from leadership")

    async def _stop_service(self, service: BackgroundService) -> None:
        try:
            await asyncio.wait_for(service.stop(), timeout=self._shutdown_grace)
        except TimeoutError:
            logger.error("%s did not stop within %.0fs", type(service).__name__, self._shutdown_grace)

    async def _release(self, handle: LockHandle) -> None:
        try:
            await handle.release()
        except LockNotHeldError:
            if not handle.is_lost:
                raise
            logger.warning("Lock %s was already gone at release", handle.name)
