"""SQLAlchemy 2.0 ORM table definitions for the apps monitor state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` and the repository
layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# SQLite only auto-increments ``INTEGER PRIMARY KEY`` columns.
_IdType = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite has no timezone support and returns naive values; those are
    interpreted as UTC.  Values are normalised to UTC before binding so that
    string comparison on SQLite orders correctly.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime {value!r} cannot be stored; attach a timezone")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all apps monitor tables."""


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class TelemetryTable(Base):
    """Ingested telemetry rows, unique per ``(service_owner, ext_id)``."""

    __tablename__ = "telemetry"

    id: Mapped[int] = mapped_column(_IdType, primary_key=True, autoincrement=True)
    ext_id: Mapped[str] = mapped_column(String(256), nullable=False)
    service_owner: Mapped[str] = mapped_column(String(64), nullable=False)
    app_name: Mapped[str] = mapped_column(String(256), nullable=False)
    app_version: Mapped[str] = mapped_column(String(128), nullable=False)
    time_generated: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    time_ingested: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    dupe_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    seeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)

    __table_args__ = (
        UniqueConstraint("service_owner", "ext_id", name="uq_telemetry_service_owner_ext_id"),
        Index("ix_telemetry_time_generated", "time_generated"),
        Index("ix_telemetry_seeded_id", "seeded", "id"),
    )


class QueryCursorTable(Base):
    """Polling high-water mark per ``(service_owner, query hash)``."""

    __tablename__ = "query_cursors"

    id: Mapped[int] = mapped_column(_IdType, primary_key=True, autoincrement=True)
    service_owner: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    queried_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (UniqueConstraint("service_owner", "hash", name="uq_query_cursors_service_owner_hash"),)


# ---------------------------------------------------------------------------
# Alerting
# ---------------------------------------------------------------------------


class AlertTable(Base):
    """At most one alert per telemetry row; ``state`` only moves forward."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(_IdType, primary_key=True, autoincrement=True)
    state: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    telemetry_id: Mapped[int] = mapped_column(_IdType, ForeignKey("telemetry.id"), nullable=False)
    ext_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("telemetry_id", name="uq_alerts_telemetry_id"),
        CheckConstraint("state IN (0, 1, 2)", name="ck_alerts_state"),
    )


class TelemetrySubscriptionTable(Base):
    """Telemetry id high-water mark per named consumer."""

    __tablename__ = "telemetry_subscriptions"

    subscriber: Mapped[str] = mapped_column(String(64), primary_key=True)
    telemetry_offset: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Leases (SQLite mode only; PostgreSQL uses advisory locks)
# ---------------------------------------------------------------------------


class LeaderLockTable(Base):
    """Lease rows standing in for advisory locks on SQLite."""

    __tablename__ = "leader_locks"

    lock_key: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    lock_name: Mapped[str] = mapped_column(String(128), nullable=False)
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    renewed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
