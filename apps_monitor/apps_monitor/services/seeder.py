"""Seed an empty state store from a historical SQLite snapshot.

The snapshot holds an ``ErrorRecord`` table of previously detected failed
dependency calls.  Seeded rows are flagged ``seeded`` and never alerted on;
they exist so that live polling recognises them as duplicates.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from apps_monitor.models.service_owner import ServiceOwner
from apps_monitor.models.telemetry import TelemetryEntity, TraceData
from apps_monitor.state.locking import DistributedLocking, LockName
from apps_monitor.state.repository import TelemetryRepository

logger = logging.getLogger(__name__)


class ErrorRecord(BaseModel):
    """One row of the snapshot's ``ErrorRecord`` table."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pk: int = Field(alias="PK")
    service_owner: str | None = Field(default=None, alias="ServiceOwner")
    time_generated: datetime = Field(alias="TimeGenerated")
    time_ingested: datetime = Field(alias="TimeIngested")
    instance_owner_party_id: int | None = Field(default=None, alias="InstanceOwnerPartyId")
    instance_id: UUID | None = Field(default=None, alias="InstanceId")
    id: str | None = Field(default=None, alias="Id")
    target: str | None = Field(default=None, alias="Target")
    dependency_type: str | None = Field(default=None, alias="DependencyType")
    name: str | None = Field(default=None, alias="Name")
    data: str | None = Field(default=None, alias="Data")
    success: bool | None = Field(default=None, alias="Success")
    result_code: str | None = Field(default=None, alias="ResultCode")
    duration_ms: float | None = Field(default=None, alias="DurationMs")
    performance_bucket: str | None = Field(default=None, alias="PerformanceBucket")
    properties: str | None = Field(default=None, alias="Properties")
    operation_name: str | None = Field(default=None, alias="OperationName")
    operation_id: str | None = Field(default=None, alias="OperationId")
    parent_id: str | None = Field(default=None, alias="ParentId")
    app_version: str | None = Field(default=None, alias="AppVersion")
    app_role_name: str | None = Field(default=None, alias="AppRoleName")
    error_number: int = Field(default=0, alias="ErrorNumber")

    @field_validator("time_generated", "time_ingested")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)


_REQUIRED_FIELDS = (
    "service_owner",
    "app_role_name",
    "app_version",
    "operation_id",
    "id",
    "operation_name",
    "name",
)


def record_to_entity(record: ErrorRecord) -> TelemetryEntity:
    """Map a snapshot row to a seeded trace entity.

    Raises
    ------
    ValueError
        If a required column is blank or the service owner is invalid.
    """
    for field_name in _REQUIRED_FIELDS:
        value = getattr(record, field_name)
        if value is None or not value.strip():
            raise ValueError(f"ErrorRecord {record.pk}: {field_name} is required for seeding traces")
    if record.duration_ms is None:
        raise ValueError(f"ErrorRecord {record.pk}: duration_ms is required for seeding traces")

    service_owner = ServiceOwner.parse(record.service_owner or "")
    return TelemetryEntity(
        ext_id=f"{record.operation_id}-{record.id}",
        service_owner=service_owner.value,
        app_name=record.app_role_name or "",
        app_version=record.app_version or "",
        time_generated=record.time_generated,
        time_ingested=record.time_ingested,
        seeded=True,
        data=TraceData(
            trace_id=record.operation_id or "",
            span_id=record.id or "",
            parent_span_id=record.parent_id,
            trace_name=record.operation_name or "",
            span_name=record.name or "",
            success=record.success,
            result=record.result_code,
            duration=timedelta(milliseconds=record.duration_ms),
            instance_owner_party_id=record.instance_owner_party_id,
            instance_id=record.instance_id,
            attributes={
                "Target": record.target,
                "DependencyType": record.dependency_type,
                "Data": record.data,
                "PerformanceBucket": record.performance_bucket,
                "Properties": record.properties,
                "ErrorNumber": str(record.error_number),
            },
        ),
    )


async def read_error_records(path: Path) -> list[ErrorRecord]:
    """Load every ``ErrorRecord`` row from the snapshot at *path*."""
    if not path.is_file():
        raise FileNotFoundError(f"Seed snapshot not found: {path}")
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text('SELECT * FROM "ErrorRecord" ORDER BY "PK"'))
            rows = result.mappings().all()
    finally:
        await engine.dispose()
    return [ErrorRecord.model_validate(dict(row)) for row in rows]


class Seeder:
    """One-shot import of a historical snapshot into an empty store.

    Parameters
    ----------
    session_factory:
        Session factory of the state store.
    locking:
        Serialises seeding across processes.
    seed_path:
        Snapshot file; seeding is skipped when ``None``.
    disabled:
        Skip seeding entirely.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locking: DistributedLocking,
        *,
        seed_path: Path | None,
        disabled: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._locking = locking
        self._seed_path = seed_path
        self._disabled = disabled

    async def run(self) -> int:
        """Seed the store if it is empty.  Returns the number of rows seeded.

        Raises
        ------
        ValueError
            If the snapshot is empty or contains invalid rows.
        RuntimeError
            If fewer rows were stored than read.
        """
        async with await self._locking.acquire(LockName.SEEDER):
            if self._disabled:
                logger.info("Seeder disabled")
                return 0
            if self._seed_path is None:
                logger.info("No seed data configured")
                return 0

            async with self._session_factory() as session:
                if await TelemetryRepository(session).has_any_telemetry():
                    logger.info("Database already has data, can only seed an empty database")
                    return 0

            records = await read_error_records(self._seed_path)
            if not records:
                raise ValueError(f"No records found in seed snapshot {self._seed_path}")
            entities = [record_to_entity(record) for record in records]

            logger.info("Seeding database with %d trace records", len(entities))
            async with self._session_factory() as session:
                repository = TelemetryRepository(session)
                await repository.seed_telemetry(entities)
                stored = await repository.count_telemetry(seeded=True)
                if stored != len(entities):
                    raise RuntimeError(f"Seeded {stored} of {len(entities)} trace records; needs investigation")
                await session.commit()
            logger.info("Seeding database with %d trace records completed", len(entities))
            return len(entities)
