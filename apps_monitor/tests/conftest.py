"""Shared fixtures for apps monitor tests.

Provides a controllable clock, a file-backed SQLite state store and sample
telemetry factories used across all test modules.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from apps_monitor.models.query import Query, QueryType
from apps_monitor.models.service_owner import ServiceOwner
from apps_monitor.models.telemetry import LogsData, TelemetryEntity, TraceData
from apps_monitor.state.database import create_tables, get_engine, get_session_factory

T0 = datetime(2025, 5, 15, 12, 0, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Clock whose time only moves through :meth:`advance`.

    ``sleep`` parks the caller until the clock has been advanced past its
    deadline, so interval-driven loops can be stepped one tick at a time.
    """

    def __init__(self, start: datetime = T0) -> None:
        self._now = start
        self._sleepers: list[tuple[datetime, asyncio.Future[None]]] = []
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        deadline = self._now + timedelta(seconds=max(seconds, 0.0))
        if deadline <= self._now:
            await asyncio.sleep(0)
            return
        entry = (deadline, asyncio.get_running_loop().create_future())
        self._sleepers.append(entry)
        try:
            await entry[1]
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    @property
    def sleeper_count(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        for deadline, future in list(self._sleepers):
            if deadline <= self._now and not future.done():
                future.set_result(None)

    async def wait_for_sleepers(self, count: int = 1, timeout: float = 5.0) -> None:
        """Wait (in real time) until *count* tasks are parked in :meth:`sleep`."""

        async def _wait() -> None:
            while self.sleeper_count < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


async def eventually(predicate: Any, timeout: float = 5.0) -> None:
    """Poll *predicate* until it returns truthy or *timeout* elapses."""

    async def _wait() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_wait(), timeout=timeout)


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'monitor.db'}"


@pytest_asyncio.fixture()
async def engine(database_url: str) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine with the schema created."""
    eng = get_engine(database_url)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


@pytest.fixture()
def skd() -> ServiceOwner:
    return ServiceOwner.parse("skd")


@pytest.fixture()
def ttd() -> ServiceOwner:
    return ServiceOwner.parse("ttd")


@pytest.fixture()
def query() -> Query:
    return Query(
        name="Failed events",
        type=QueryType.TRACES,
        template="AppDependencies | where TimeGenerated > '{search_from}' and TimeGenerated <= '{search_to}'",
    )


def make_trace(
    ext_id: str,
    *,
    service_owner: str = "skd",
    time_generated: datetime = T0,
    time_ingested: datetime | None = None,
    span_name: str = "POST /storage/api/v1/instances/1/events",
) -> TelemetryEntity:
    return TelemetryEntity(
        ext_id=ext_id,
        service_owner=service_owner,
        app_name="skd-app",
        app_version="8.0.0",
        time_generated=time_generated,
        time_ingested=time_ingested,
        data=TraceData(
            trace_id=f"op-{ext_id}",
            span_id=ext_id,
            trace_name="PUT Process/NextElement",
            span_name=span_name,
            success=False,
            result="500",
            duration=timedelta(milliseconds=125),
            instance_owner_party_id=50001337,
            instance_id="0f1e2d3c-4b5a-6978-8796-a5b4c3d2e1f0",
        ),
    )


def make_log(ext_id: str, *, service_owner: str = "skd", time_ingested: datetime | None = None) -> TelemetryEntity:
    return TelemetryEntity(
        ext_id=ext_id,
        service_owner=service_owner,
        app_name="skd-app",
        app_version="8.0.0",
        time_generated=T0,
        time_ingested=time_ingested,
        data=LogsData(trace_id=f"op-{ext_id}", message="Process next failed"),
    )


# ---------------------------------------------------------------------------
# Historical snapshot
# ---------------------------------------------------------------------------

SNAPSHOT_COLUMNS = [
    "PK",
    "ServiceOwner",
    "TimeGenerated",
    "TimeIngested",
    "InstanceOwnerPartyId",
    "InstanceId",
    "Id",
    "Target",
    "DependencyType",
    "Name",
    "Data",
    "Success",
    "ResultCode",
    "DurationMs",
    "PerformanceBucket",
    "Properties",
    "OperationName",
    "OperationId",
    "ParentId",
    "AppVersion",
    "AppRoleName",
    "ErrorNumber",
]


def snapshot_row(pk: int, **overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "PK": pk,
        "ServiceOwner": "skd",
        "TimeGenerated": "2024-11-02T10:15:00",
        "TimeIngested": "2024-11-02T10:16:30",
        "InstanceOwnerPartyId": 50001337,
        "InstanceId": "0f1e2d3c-4b5a-6978-8796-a5b4c3d2e1f0",
        "Id": f"span{pk}",
        "Target": "platform.at24.altinn.no",
        "DependencyType": "HTTP",
        "Name": "POST /storage/api/v1/instances/50001337/0f1e/events",
        "Data": "https://platform.at24.altinn.no/storage/api/v1/instances",
        "Success": 0,
        "ResultCode": "500",
        "DurationMs": 231.5,
        "PerformanceBucket": "250ms-500ms",
        "Properties": "{}",
        "OperationName": "PUT Process/NextElement",
        "OperationId": f"op{pk}",
        "ParentId": "parent",
        "AppVersion": "8.1.0",
        "AppRoleName": "skd-app",
        "ErrorNumber": pk,
    }
    row.update(overrides)
    return row


def write_snapshot(path: Path, rows: list[dict[str, Any]]) -> Path:
    conn = sqlite3.connect(path)
    try:
        columns = ", ".join(f'"{c}"' for c in SNAPSHOT_COLUMNS)
        conn.execute(f'CREATE TABLE "ErrorRecord" ({columns})')
        placeholders = ", ".join("?" for _ in SNAPSHOT_COLUMNS)
        conn.executemany(
            f'INSERT INTO "ErrorRecord" VALUES ({placeholders})',
            [[row[c] for c in SNAPSHOT_COLUMNS] for row in rows],
        )
        conn.commit()
    finally:
        conn.close()
    return path
