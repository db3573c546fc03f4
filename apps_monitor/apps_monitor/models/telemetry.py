"""Telemetry entities, payload variants and cursor state.

``TelemetryEntity.data`` is a tagged union discriminated by ``kind``.  The
payload is persisted as JSON and parsed back through :data:`TELEMETRY_DATA`,
which dispatches on the tag.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class TraceData(BaseModel):
    """A failed (or otherwise interesting) span from distributed tracing."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["trace"] = "trace"
    trace_id: str = Field(..., min_length=1, description="Operation/trace identifier.")
    span_id: str = Field(..., min_length=1, description="Identifier of the span.")
    parent_span_id: str | None = Field(default=None, description="Parent span, if any.")
    trace_name: str = Field(..., description="Name of the root operation.")
    span_name: str = Field(..., description="Name of the span that produced the error.")
    success: bool | None = Field(default=None, description="Whether the span succeeded.")
    result: str | None = Field(default=None, description="Result code, e.g. an HTTP status.")
    duration: timedelta = Field(..., description="Span duration.")
    instance_owner_party_id: int | None = Field(default=None)
    instance_id: UUID | None = Field(default=None)
    attributes: dict[str, str | None] | None = Field(default=None)


class LogsData(BaseModel):
    """A log record."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["logs"] = "logs"
    trace_id: str | None = None
    span_id: str | None = None
    message: str
    attributes: dict[str, str | None] | None = None


class MetricData(BaseModel):
    """A metric sample."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["metric"] = "metric"
    name: str
    value: float
    attributes: dict[str, str | None] | None = None


TelemetryData = Annotated[TraceData | LogsData | MetricData, Field(discriminator="kind")]

TELEMETRY_DATA: TypeAdapter[TraceData | LogsData | MetricData] = TypeAdapter(TelemetryData)


class TelemetryEntity(BaseModel):
    """A single telemetry row as produced by an adapter or read from the store.

    ``id`` is ``0`` and ``time_ingested`` is ``None`` until the orchestrator
    stamps the batch and the repository persists it.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(default=0, ge=0, description="Store-assigned row id (0 before insert).")
    ext_id: str = Field(..., min_length=1, description="Idempotency key from the telemetry source.")
    service_owner: str = Field(..., min_length=1)
    app_name: str = Field(..., min_length=1)
    app_version: str = Field(..., min_length=1)
    time_generated: datetime = Field(..., description="When the source produced the event.")
    time_ingested: datetime | None = Field(
        default=None,
        description="Batch ingestion timestamp; identical for every row of one insert.",
    )
    dupe_count: int = Field(default=0, ge=0, description="Redundant ingestion attempts observed.")
    seeded: bool = Field(default=False, description="Imported from a historical snapshot.")
    data: TelemetryData

    def stamped(self, time_ingested: datetime) -> TelemetryEntity:
        """Return a copy carrying the batch ingestion timestamp."""
        return self.model_copy(update={"time_ingested": time_ingested})


class QueryState(BaseModel):
    """Durable polling cursor for one ``(service_owner, query hash)`` pair."""

    model_config = ConfigDict(frozen=True)

    id: int
    service_owner: str
    name: str
    hash: str
    queried_until: datetime


class InsertTelemetryResult(BaseModel):
    """Outcome of one idempotent batch insert."""

    model_config = ConfigDict(frozen=True)

    written: int = Field(..., ge=0, description="Rows newly inserted by this call.")
    ids: list[int] = Field(default_factory=list, description="Ids of every row touched, new or duplicate.")
    dupe_ext_ids: list[str] = Field(default_factory=list, description="Ext ids that were already stored.")
