"""Repository classes providing access to the apps monitor state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes flush but never commit; the
caller is responsible for calling ``session.commit()`` (or relying on the
``get_session`` context manager).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Column,
    MetaData,
    String,
    Table,
    and_,
    case,
    func,
    insert,
    or_,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession

from apps_monitor.models.alert import AlertEntity, AlertState, SlackAlertData
from apps_monitor.models.query import Query
from apps_monitor.models.service_owner import ServiceOwner
from apps_monitor.models.telemetry import (
    TELEMETRY_DATA,
    InsertTelemetryResult,
    QueryState,
    TelemetryEntity,
)
from apps_monitor.state.tables import (
    AlertTable,
    QueryCursorTable,
    TelemetrySubscriptionTable,
    TelemetryTable,
    UTCDateTime,
    _JsonType,
)

logger = logging.getLogger(__name__)


def _dialect_insert(session: AsyncSession, table: Any) -> Any:
    """Return a dialect-specific ``INSERT`` supporting ``ON CONFLICT`` for *table*."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table)

    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table)


def _greatest(new: Any, existing: Any) -> Any:
    """Portable ``GREATEST(new, existing)`` for upsert ``SET`` clauses."""
    return case((new > existing, new), else_=existing)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _telemetry_values(entity: TelemetryEntity, *, seeded: bool) -> dict[str, Any]:
    return {
        "ext_id": entity.ext_id,
        "service_owner": entity.service_owner,
        "app_name": entity.app_name,
        "app_version": entity.app_version,
        "time_generated": entity.time_generated,
        "time_ingested": entity.time_ingested,
        "dupe_count": 0,
        "seeded": seeded,
        "data": entity.data.model_dump(mode="json"),
    }


def _telemetry_entity(row: TelemetryTable) -> TelemetryEntity:
    return TelemetryEntity(
        id=row.id,
        ext_id=row.ext_id,
        service_owner=row.service_owner,
        app_name=row.app_name,
        app_version=row.app_version,
        time_generated=row.time_generated,
        time_ingested=row.time_ingested,
        dupe_count=row.dupe_count,
        seeded=row.seeded,
        data=TELEMETRY_DATA.validate_python(row.data),
    )


def _alert_entity(row: AlertTable) -> AlertEntity:
    return AlertEntity(
        id=row.id,
        state=AlertState(row.state),
        telemetry_id=row.telemetry_id,
        ext_id=row.ext_id,
        data=SlackAlertData.model_validate(row.data),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _query_state(row: QueryCursorTable) -> QueryState:
    return QueryState(
        id=row.id,
        service_owner=row.service_owner,
        name=row.name,
        hash=row.hash,
        queried_until=row.queried_until,
    )


# Staging table for batch inserts.  Kept out of ``Base.metadata`` so that
# ``create_all`` never materialises it; it lives for one transaction only.
_staging_metadata = MetaData()

_TELEMETRY_IMPORT = Table(
    "telemetry_import",
    _staging_metadata,
    Column("ext_id", String(256), nullable=False),
    Column("service_owner", String(64), nullable=False),
    Column("app_name", String(256), nullable=False),
    Column("app_version", String(128), nullable=False),
    Column("time_generated", UTCDateTime, nullable=False),
    Column("time_ingested", UTCDateTime, nullable=False),
    Column("data", _JsonType, nullable=False),
    prefixes=["TEMPORARY"],
    postgresql_on_commit="DROP",
)

_IMPORT_COLUMNS = ["ext_id", "service_owner", "app_name", "app_version", "time_generated", "time_ingested", "data"]


# ---------------------------------------------------------------------------
# TelemetryRepository
# ---------------------------------------------------------------------------


class TelemetryRepository:
    """Idempotent ingestion and reads of the ``telemetry`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_telemetry(
        self,
        service_owner: ServiceOwner,
        query: Query,
        search_to: datetime,
        batch: Sequence[TelemetryEntity],
    ) -> InsertTelemetryResult:
        """Insert one polled batch and advance the query cursor.

        The batch is loaded into a temporary staging table and moved into
        ``telemetry`` with ``ON CONFLICT (service_owner, ext_id) DO UPDATE``
        that only bumps ``dupe_count``.  A returned row whose
        ``time_ingested`` differs from the batch timestamp already existed.

        The cursor moves to the newest ``time_generated`` among newly
        written rows, or to *search_to* when nothing new was written.  It
        never moves backwards.

        Parameters
        ----------
        service_owner:
            Tenant the batch belongs to.
        query:
            Query that produced the batch; its hash keys the cursor.
        search_to:
            Upper bound of the polled window.
        batch:
            Rows stamped with one shared ``time_ingested``.

        Returns
        -------
        InsertTelemetryResult
            Written count, touched ids and the ext ids that were duplicates.

        Raises
        ------
        ValueError
            If the batch rows do not share one non-null ``time_ingested``.
        """
        written = 0
        ids: list[int] = []
        dupe_ext_ids: list[str] = []
        queried_until = search_to

        if batch:
            time_ingested = batch[0].time_ingested
            if time_ingested is None or any(row.time_ingested != time_ingested for row in batch):
                raise ValueError("All telemetry in a batch must share one non-null time_ingested")

            rows = _dedupe_batch(batch)
            returned = await self._merge_via_staging(rows)
            for row in returned:
                ids.append(row.id)
                if row.time_ingested != time_ingested:
                    dupe_ext_ids.append(row.ext_id)
            written = len(returned) - len(dupe_ext_ids)

            if written > 0:
                dupes = set(dupe_ext_ids)
                queried_until = max(row.time_generated for row in rows if row.ext_id not in dupes)

        await QueryCursorRepository(self._session).advance(service_owner, query, queried_until)
        await self._session.flush()

        if dupe_ext_ids:
            logger.info(
                "Skipped %d duplicate telemetry rows for %s/%s",
                len(dupe_ext_ids),
                service_owner,
                query.name,
            )
        return InsertTelemetryResult(written=written, ids=ids, dupe_ext_ids=dupe_ext_ids)

    async def _merge_via_staging(self, rows: Sequence[TelemetryEntity]) -> list[Any]:
        conn = await self._session.connection()
        await conn.run_sync(_TELEMETRY_IMPORT.drop, checkfirst=True)
        await conn.run_sync(_TELEMETRY_IMPORT.create)

        await self._session.execute(
            insert(_TELEMETRY_IMPORT),
            [{k: v for k, v in _telemetry_values(row, seeded=False).items() if k in _IMPORT_COLUMNS} for row in rows],
        )

        telemetry = TelemetryTable.__table__
        staged = select(*(_TELEMETRY_IMPORT.c[name] for name in _IMPORT_COLUMNS)).where(
            # SQLite needs a WHERE clause to parse INSERT ... SELECT ... ON CONFLICT.
            _TELEMETRY_IMPORT.c.ext_id.is_not(None)
        )
        stmt = _dialect_insert(self._session, telemetry).from_select(_IMPORT_COLUMNS, staged)
        stmt = stmt.on_conflict_do_update(
            index_elements=["service_owner", "ext_id"],
            set_={"dupe_count": telemetry.c.dupe_count + 1},
        ).returning(telemetry.c.id, telemetry.c.ext_id, telemetry.c.time_ingested)

        result = await self._session.execute(stmt)
        returned = list(result.all())

        await conn.run_sync(_TELEMETRY_IMPORT.drop)
        return returned

    async def seed_telemetry(self, batch: Sequence[TelemetryEntity]) -> int:
        """Bulk insert historical rows flagged ``seeded``.  Returns the number inserted."""
        if not batch:
            return 0
        for entity in batch:
            if entity.time_ingested is None:
                raise ValueError(f"Seeded telemetry {entity.ext_id!r} has no time_ingested")
        await self._session.execute(
            insert(TelemetryTable.__table__),
            [_telemetry_values(entity, seeded=True) for entity in batch],
        )
        await self._session.flush()
        return len(batch)

    async def list_telemetry(self, service_owner: ServiceOwner | None = None) -> list[TelemetryEntity]:
        """Return stored telemetry ordered by id, optionally for one tenant."""
        stmt = select(TelemetryTable).order_by(TelemetryTable.id)
        if service_owner is not None:
            stmt = stmt.where(TelemetryTable.service_owner == service_owner.value)
        result = await self._session.execute(stmt)
        return [_telemetry_entity(row) for row in result.scalars().all()]

    async def has_any_telemetry(self) -> bool:
        result = await self._session.execute(select(TelemetryTable.id).limit(1))
        return result.scalar_one_or_none() is not None

    async def count_telemetry(self, *, seeded: bool | None = None) -> int:
        stmt = select(func.count()).select_from(TelemetryTable)
        if seeded is not None:
            stmt = stmt.where(TelemetryTable.seeded.is_(seeded))
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_alerter_work_items(
        self,
        kind: str,
        *,
        after_offset: int = 0,
        limit: int = 500,
    ) -> list[tuple[TelemetryEntity, AlertEntity | None]]:
        """Return non-seeded telemetry still lacking a delivered alert of *kind*.

        Rows with an alert of another kind are not returned.  Results are
        ordered by telemetry id and start after *after_offset*.
        """
        stmt = (
            select(TelemetryTable, AlertTable)
            .outerjoin(AlertTable, AlertTable.telemetry_id == TelemetryTable.id)
            .where(
                TelemetryTable.seeded.is_(False),
                TelemetryTable.id > after_offset,
                or_(
                    AlertTable.id.is_(None),
                    and_(AlertTable.kind == kind, AlertTable.state < int(AlertState.ALERTED)),
                ),
            )
            .order_by(TelemetryTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [
            (_telemetry_entity(item), _alert_entity(alert) if alert is not None else None)
            for item, alert in result.all()
        ]


def _dedupe_batch(batch: Sequence[TelemetryEntity]) -> list[TelemetryEntity]:
    """Collapse rows repeating an ``(service_owner, ext_id)`` to the first occurrence."""
    seen: set[tuple[str, str]] = set()
    rows: list[TelemetryEntity] = []
    for entity in batch:
        key = (entity.service_owner, entity.ext_id)
        if key in seen:
            continue
        seen.add(key)
        rows.append(entity)
    if len(rows) != len(batch):
        logger.warning("Collapsed %d repeated ext_ids within one batch", len(batch) - len(rows))
    return rows


# ---------------------------------------------------------------------------
# QueryCursorRepository
# ---------------------------------------------------------------------------


class QueryCursorRepository:
    """Monotonic polling cursors in the ``query_cursors`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, service_owner: ServiceOwner, query: Query) -> QueryState | None:
        stmt = select(QueryCursorTable).where(
            QueryCursorTable.service_owner == service_owner.value,
            QueryCursorTable.hash == query.hash,
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return _query_state(row) if row is not None else None

    async def list_query_states(
        self,
        service_owner: ServiceOwner | None = None,
        query: Query | None = None,
    ) -> list[QueryState]:
        """Return cursors, optionally narrowed to a tenant and then a query.

        Raises
        ------
        ValueError
            If *query* is given without *service_owner*.
        """
        if query is not None and service_owner is None:
            raise ValueError("A query filter requires a service owner filter")
        stmt = select(QueryCursorTable).order_by(QueryCursorTable.service_owner, QueryCursorTable.name)
        if service_owner is not None:
            stmt = stmt.where(QueryCursorTable.service_owner == service_owner.value)
        if query is not None:
            stmt = stmt.where(QueryCursorTable.hash == query.hash)
        result = await self._session.execute(stmt)
        return [_query_state(row) for row in result.scalars().all()]

    async def advance(self, service_owner: ServiceOwner, query: Query, queried_until: datetime) -> None:
        """Upsert the cursor keyed on ``(service_owner, hash)``; never moves it backwards."""
        cursors = QueryCursorTable.__table__
        stmt = _dialect_insert(self._session, cursors).values(
            service_owner=service_owner.value,
            name=query.name,
            hash=query.hash,
            queried_until=queried_until,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["service_owner", "hash"],
            set_={
                "name": stmt.excluded.name,
                "queried_until": _greatest(stmt.excluded.queried_until, cursors.c.queried_until),
            },
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# AlertRepository
# ---------------------------------------------------------------------------


class AlertRepository:
    """Persistence for the ``alerts`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(self, alert: AlertEntity) -> AlertEntity:
        """Upsert *alert* keyed on ``telemetry_id`` and return the stored row.

        The stored state never regresses: when *alert* is behind the stored
        row, the stored row is left untouched and returned.
        """
        alerts = AlertTable.__table__
        stmt = _dialect_insert(self._session, alerts).values(
            state=int(alert.state),
            kind=alert.data.kind,
            telemetry_id=alert.telemetry_id,
            ext_id=alert.ext_id,
            data=alert.data.model_dump(mode="json"),
            created_at=alert.created_at,
            updated_at=alert.updated_at,
        )
        forward = stmt.excluded.state >= alerts.c.state
        stmt = stmt.on_conflict_do_update(
            index_elements=["telemetry_id"],
            set_={
                "state": _greatest(stmt.excluded.state, alerts.c.state),
                "ext_id": case((forward, func.coalesce(stmt.excluded.ext_id, alerts.c.ext_id)), else_=alerts.c.ext_id),
                "data": case((forward, stmt.excluded.data), else_=alerts.c.data),
                "updated_at": case((forward, stmt.excluded.updated_at), else_=alerts.c.updated_at),
            },
        )
        await self._session.execute(stmt)
        await self._session.flush()

        stored = await self.get_for_telemetry(alert.telemetry_id)
        if stored is None:
            raise RuntimeError(f"Alert for telemetry {alert.telemetry_id} vanished after upsert")
        if stored.state > alert.state:
            logger.warning(
                "Ignored alert regression for telemetry %d: stored=%s attempted=%s",
                alert.telemetry_id,
                stored.state.name,
                alert.state.name,
            )
        return stored

    async def get_for_telemetry(self, telemetry_id: int) -> AlertEntity | None:
        stmt = (
            select(AlertTable)
            .where(AlertTable.telemetry_id == telemetry_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return _alert_entity(row) if row is not None else None

    async def list_alerts(self) -> list[AlertEntity]:
        result = await self._session.execute(select(AlertTable).order_by(AlertTable.id))
        return [_alert_entity(row) for row in result.scalars().all()]


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Telemetry id high-water marks per named consumer."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_offset(self, subscriber: str) -> int:
        stmt = select(TelemetrySubscriptionTable.telemetry_offset).where(
            TelemetrySubscriptionTable.subscriber == subscriber
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one_or_none() or 0)

    async def advance_offset(self, subscriber: str, offset: int, now: datetime) -> None:
        """Move the offset of *subscriber* to *offset*; lower values are ignored."""
        subscriptions = TelemetrySubscriptionTable.__table__
        stmt = _dialect_insert(self._session, subscriptions).values(
            subscriber=subscriber,
            telemetry_offset=offset,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["subscriber"],
            set_={
                "telemetry_offset": _greatest(stmt.excluded.telemetry_offset, subscriptions.c.telemetry_offset),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self._session.execute(stmt)
        await self._session.flush()
