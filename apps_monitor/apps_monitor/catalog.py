"""Built-in catalog of telemetry queries.

Each query selects failed dependency calls from application telemetry whose
parent request is a process transition.  The target host depends on which
Altinn environment is monitored.
"""

from __future__ import annotations

import logging
from typing import Protocol

from apps_monitor.models.query import Query, QueryType

logger = logging.getLogger(__name__)


class QueryCatalog(Protocol):
    async def load(self) -> list[Query]: ...


def platform_target(altinn_environment: str) -> str:
    """Return the platform host for *altinn_environment*."""
    if altinn_environment == "prod":
        return "platform.altinn.no"
    return f"platform.{altinn_environment}.altinn.no"


class StaticQueryCatalog:
    """The fixed set of trace queries, rendered for one environment."""

    def __init__(self, altinn_environment: str) -> None:
        self._target = platform_target(altinn_environment)

    async def load(self) -> list[Query]:
        logger.info("Loading queries for target: %s", self._target)
        target = self._target
        return [
            Query(
                name="Failed Storage instance events",
                type=QueryType.TRACES,
                # The failed event call must also have failed the root process/next request.
                template=f"""AppDependencies
| where TimeGenerated > todatetime('{{search_from}}') and TimeGenerated <= todatetime('{{search_to}}')
| where Success == false
| where Target startswith "{target}"
| where Name startswith "POST /storage/api/v1/instances/" and Name endswith "/events"
| join kind=inner AppRequests on OperationId
| where OperationName1 startswith "PUT Process/NextElement" or OperationName1 endswith "/process/next"
| where Success1 == false;""",
            ),
            Query(
                name="Failed Altinn events",
                type=QueryType.TRACES,
                # Errors on app.process.completed do not fail the root request.
                template=f"""AppDependencies
| where TimeGenerated > todatetime('{{search_from}}') and TimeGenerated <= todatetime('{{search_to}}')
| where Success == false
| where Target startswith "{target}"
| where Name == "POST /events/api/v1/app"
| join kind=inner AppRequests on OperationId
| where OperationName1 startswith "PUT Process/NextElement" or OperationName1 endswith "/process/next";""",
            ),
        ]
