"""Domain models for the apps monitor."""

from apps_monitor.models.alert import AlertEntity, AlertState, SlackAlertData
from apps_monitor.models.events import AlerterEvent, OrchestratorEvent
from apps_monitor.models.query import Query, QueryType
from apps_monitor.models.service_owner import ServiceOwner
from apps_monitor.models.telemetry import (
    TELEMETRY_DATA,
    InsertTelemetryResult,
    LogsData,
    MetricData,
    QueryState,
    TelemetryData,
    TelemetryEntity,
    TraceData,
)

__all__ = [
    "TELEMETRY_DATA",
    "AlertEntity",
    "AlertState",
    "AlerterEvent",
    "InsertTelemetryResult",
    "LogsData",
    "MetricData",
    "OrchestratorEvent",
    "Query",
    "QueryState",
    "QueryType",
    "ServiceOwner",
    "SlackAlertData",
    "TelemetryData",
    "TelemetryEntity",
    "TraceData",
]
