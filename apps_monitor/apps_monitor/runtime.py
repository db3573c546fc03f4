"""Assemble the service graph from :class:`~apps_monitor.config.Settings`."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from apps_monitor.adapters import (
    ServiceOwnerDiscovery,
    TelemetryAdapter,
    build_discovery,
    build_telemetry_adapter,
)
from apps_monitor.catalog import QueryCatalog, StaticQueryCatalog
from apps_monitor.clock import Clock, SystemClock
from apps_monitor.config import Settings
from apps_monitor.retry import RetryConfig
from apps_monitor.services.alerter import Alerter
from apps_monitor.services.leader import BackgroundService, LeaderElection
from apps_monitor.services.orchestrator import Orchestrator
from apps_monitor.services.seeder import Seeder
from apps_monitor.slack import SlackClient
from apps_monitor.state.database import get_engine, get_session_factory
from apps_monitor.state.locking import DistributedLocking

logger = logging.getLogger(__name__)


@dataclass
class MonitorRuntime:
    """Everything a running monitor process owns."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    locking: DistributedLocking
    leader: LeaderElection
    seeder: Seeder
    orchestrator: Orchestrator | None
    alerter: Alerter | None
    slack: SlackClient | None

    async def close(self) -> None:
        if self.slack is not None:
            await self.slack.close()
        await self.engine.dispose()


def build_runtime(
    settings: Settings,
    *,
    clock: Clock | None = None,
    engine: AsyncEngine | None = None,
    discovery: ServiceOwnerDiscovery | None = None,
    adapter: TelemetryAdapter | None = None,
    catalog: QueryCatalog | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> MonitorRuntime:
    """Build the monitor from *settings*; explicit arguments override the configured parts."""
    clock = clock or SystemClock()
    engine = engine or get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
    session_factory = get_session_factory(engine)
    locking = DistributedLocking(
        engine,
        clock=clock,
        retry_interval=settings.lock_retry_interval_seconds,
        keepalive_interval=settings.lock_keepalive_seconds,
    )

    services: list[BackgroundService] = []
    leader = LeaderElection(locking, services, shutdown_grace=settings.shutdown_grace_seconds)

    orchestrator: Orchestrator | None = None
    if settings.disable_orchestrator:
        logger.info("Orchestrator disabled")
    else:
        orchestrator = Orchestrator(
            session_factory,
            discovery or build_discovery(settings),
            adapter or build_telemetry_adapter(settings),
            catalog or StaticQueryCatalog(settings.altinn_environment),
            clock,
            poll_interval=timedelta(seconds=settings.poll_interval_seconds),
            lookback=timedelta(days=settings.lookback_days),
            safety_margin=timedelta(seconds=settings.safety_margin_seconds),
            on_fatal=leader.report_fatal,
        )
        services.append(orchestrator)

    slack: SlackClient | None = None
    alerter: Alerter | None = None
    if settings.disable_alerter:
        logger.info("Alerter disabled")
    else:
        if not settings.disable_slack_alerts and settings.slack_access_token is not None:
            slack = SlackClient(
                settings.slack_host,
                settings.slack_access_token.get_secret_value(),
                http_client=http_client,
                timeout=settings.slack_timeout_seconds,
                retry_config=RetryConfig(
                    max_retries=settings.slack_max_retries,
                    base_delay=settings.slack_backoff_base_seconds,
                ),
            )
        alerter = Alerter(
            session_factory,
            slack,
            clock,
            channel=settings.slack_channel,
            interval=timedelta(seconds=settings.alerter_interval_seconds),
            disable_slack_alerts=settings.disable_slack_alerts,
            batch_size=settings.alerter_batch_size,
            offset_settle=timedelta(seconds=settings.alerter_offset_settle_seconds),
            on_fatal=leader.report_fatal,
        )
        services.append(alerter)

    seeder = Seeder(
        session_factory,
        locking,
        seed_path=settings.seed_path,
        disabled=settings.disable_seeder,
    )

    return MonitorRuntime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        locking=locking,
        leader=leader,
        seeder=seeder,
        orchestrator=orchestrator,
        alerter=alerter,
        slack=slack,
    )


async def run_monitor(runtime: MonitorRuntime, stop: asyncio.Event) -> None:
    """Seed if needed, then lead until *stop* is set."""
    await runtime.seeder.run()
    await runtime.leader.run(stop)
