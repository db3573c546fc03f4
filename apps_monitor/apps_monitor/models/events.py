"""Events published on the orchestrator and alerter result streams."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from apps_monitor.models.alert import AlertEntity
from apps_monitor.models.query import Query
from apps_monitor.models.service_owner import ServiceOwner
from apps_monitor.models.telemetry import TelemetryEntity


@dataclass(frozen=True)
class OrchestratorEvent:
    """One completed poll of one query for one tenant."""

    service_owner: ServiceOwner
    query: Query
    search_from: datetime
    search_to: datetime
    telemetry: tuple[TelemetryEntity, ...]
    written: int


@dataclass(frozen=True)
class AlerterEvent:
    """One step of the alert state machine.  ``alert_after`` is ``None`` when the step made no progress."""

    item: TelemetryEntity
    alert_before: AlertEntity
    alert_after: AlertEntity | None
