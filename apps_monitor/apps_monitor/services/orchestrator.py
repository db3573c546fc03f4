"""Tenant discovery and per-tenant telemetry polling.

The orchestrator runs one discovery task and one polling task per discovered
service owner.  Each polling task walks the query catalog on a fixed cadence:
read the cursor, query the adapter for the open window, persist the batch
idempotently (which also advances the cursor) and publish the result.

Workers are started lazily and never stopped while the orchestrator runs,
even if a tenant disappears from discovery.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps_monitor.adapters import ServiceOwnerDiscovery, TelemetryAdapter
from apps_monitor.catalog import QueryCatalog
from apps_monitor.clock import Clock
from apps_monitor.models.events import OrchestratorEvent
from apps_monitor.models.query import Query
from apps_monitor.models.service_owner import ServiceOwner
from apps_monitor.services.stream import DEFAULT_CAPACITY, ResultStream
from apps_monitor.state.database import get_session
from apps_monitor.state.repository import QueryCursorRepository, TelemetryRepository

logger = logging.getLogger(__name__)

FatalCallback = Callable[[BaseException], None]


class WorkerState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    CANCELLED = "cancelled"
    CRASHED = "crashed"


class Orchestrator:
    """Discovers service owners and polls their telemetry.

    Parameters
    ----------
    session_factory:
        Creates one session per cursor read and per batch insert.
    discovery:
        Lists the service owners to monitor.
    adapter:
        Runs queries against a service owner's telemetry source.
    catalog:
        Supplies the queries, loaded once at :meth:`start`.
    clock:
        Time source for windows and intervals.
    poll_interval:
        Seconds between discovery ticks and between polling ticks.
    lookback:
        How far back the first poll of a ``(tenant, query)`` pair reaches.
    safety_margin:
        Distance kept from *now* for the window's upper bound, so that
        late-arriving telemetry is still inside a future window.
    on_fatal:
        Called when a component fails in a way the orchestrator cannot
        recover from.
    stream_capacity:
        Size of the result stream.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        discovery: ServiceOwnerDiscovery,
        adapter: TelemetryAdapter,
        catalog: QueryCatalog,
        clock: Clock,
        *,
        poll_interval: timedelta = timedelta(minutes=10),
        lookback: timedelta = timedelta(days=90),
        safety_margin: timedelta = timedelta(minutes=10),
        on_fatal: FatalCallback | None = None,
        stream_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self._session_factory = session_factory
        self._discovery = discovery
        self._adapter = adapter
        self._catalog = catalog
        self._clock = clock
        self._poll_interval = poll_interval
        self._lookback = lookback
        self._safety_margin = safety_margin
        self._on_fatal = on_fatal
        self.events: ResultStream[OrchestratorEvent] = ResultStream(stream_capacity, name="orchestrator")

        self._queries: list[Query] = []
        self._discovery_task: asyncio.Task[None] | None = None
        self._workers: dict[ServiceOwner, asyncio.Task[None]] = {}
        self._states: dict[ServiceOwner, WorkerState] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queries(self) -> list[Query]:
        return list(self._queries)

    @property
    def worker_states(self) -> dict[ServiceOwner, WorkerState]:
        return dict(self._states)

    async def start(self) -> None:
        """Load the query catalog and start the discovery loop."""
        if self._running:
            logger.warning("Orchestrator already running; ignoring start()")
            return
        self._queries = await self._catalog.load()
        self._running = True
        self._discovery_task = asyncio.create_task(self._discovery_loop(), name="orchestrator-discovery")
        logger.info("Orchestrator started with %d queries", len(self._queries))

    async def stop(self) -> None:
        """Cancel discovery and every worker, then wait for all of them to finish."""
        self._running = False
        tasks = list(self._workers.values())
        if self._discovery_task is not None:
            tasks.append(self._discovery_task)
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Orchestrator task ended with %r during stop", result)
        self._discovery_task = None
        logger.info("Orchestrator stopped (%d workers)", len(self._workers))

    # -- Discovery -----------------------------------------------------------

    async def _discovery_loop(self) -> None:
        try:
            while self._running:
                await self._discover_once()
                await self._clock.sleep(self._poll_interval.total_seconds())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.critical("Orchestrator discovery loop failed: %s", exc, exc_info=True)
            self._fatal(exc)
            raise

    async def _discover_once(self) -> None:
        try:
            service_owners = await self._discovery.discover()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Service owner discovery failed; retrying next tick: %s", exc, exc_info=True)
            return

        for service_owner in service_owners:
            if service_owner in self._workers:
                continue
            self._states[service_owner] = WorkerState.NOT_STARTED
            self._workers[service_owner] = asyncio.create_task(
                self._service_owner_loop(service_owner),
                name=f"orchestrator-worker:{service_owner}",
            )
            logger.info(
                "Started polling for service owner %s",
                service_owner,
                extra={"service_owner": str(service_owner)},
            )

    # -- Workers -------------------------------------------------------------

    async def _service_owner_loop(self, service_owner: ServiceOwner) -> None:
        self._states[service_owner] = WorkerState.RUNNING
        try:
            while True:
                tick_started = self._clock.now()
                for query in self._queries:
                    await self.poll(service_owner, query)
                await self._sleep_until(tick_started + self._poll_interval)
        except asyncio.CancelledError:
            self._states[service_owner] = WorkerState.CANCELLED
            raise
        except Exception as exc:
            self._states[service_owner] = WorkerState.CRASHED
            logger.critical(
                "Polling for service owner %s crashed: %s",
                service_owner,
                exc,
                exc_info=True,
                extra={"service_owner": str(service_owner)},
            )
            self._fatal(exc)
            raise

    async def _sleep_until(self, deadline: datetime) -> None:
        remaining = (deadline - self._clock.now()).total_seconds()
        if remaining > 0:
            await self._clock.sleep(remaining)
        else:
            logger.warning("Polling tick overran the interval by %.1fs", -remaining)

    async def poll(self, service_owner: ServiceOwner, query: Query) -> OrchestratorEvent | None:
        """Poll one query for one service owner.

        Failures are logged and swallowed; the cursor does not move, so the
        same window is retried on the next tick.

        Returns
        -------
        OrchestratorEvent | None
            The published event, or ``None`` when the window was empty or
            the poll failed.
        """
        try:
            return await self._poll(service_owner, query)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Polling %s for %s failed: %s",
                query.name,
                service_owner,
                exc,
                exc_info=True,
                extra={"service_owner": str(service_owner), "query": query.name},
            )
            return None

    async def _poll(self, service_owner: ServiceOwner, query: Query) -> OrchestratorEvent | None:
        async with self._session_factory() as session:
            state = await QueryCursorRepository(session).get(service_owner, query)

        now = self._clock.now()
        search_from = state.queried_until if state is not None else now - self._lookback
        search_to = now - self._safety_margin
        if search_to <= search_from:
            logger.debug("Empty window for %s/%s; skipping", service_owner, query.name)
            return None

        tables = await self._adapter.query(service_owner, query, search_from, search_to)

        time_ingested = self._clock.now()
        batch = [item.stamped(time_ingested) for table in tables for item in table]

        async with get_session(self._session_factory) as session:
            result = await TelemetryRepository(session).insert_telemetry(service_owner, query, search_to, batch)

        event = OrchestratorEvent(
            service_owner=service_owner,
            query=query,
            search_from=search_from,
            search_to=search_to,
            telemetry=tuple(batch),
            written=result.written,
        )
        self.events.publish(event)
        logger.info(
            "Polled %s for %s: %d rows, %d new, window (%s, %s]",
            query.name,
            service_owner,
            len(batch),
            result.written,
            search_from.isoformat(),
            search_to.isoformat(),
            extra={"service_owner": str(service_owner), "query": query.name},
        )
        return event

    def _fatal(self, exc: BaseException) -> None:
        if self._on_fatal is not None:
            self._on_fatal(exc)
