"""Named telemetry query templates."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class QueryType(str, Enum):
    TRACES = "traces"
    LOGS = "logs"
    METRICS = "metrics"


def template_hash(template: str) -> str:
    """Return the SHA-256 hex digest of *template*."""
    return hashlib.sha256(template.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class Query:
    """A named query template run against a tenant's telemetry source.

    ``hash`` is derived from ``template`` once at construction.  Cursors are
    keyed by the hash, so renaming a query keeps its polling progress while
    editing the template starts a fresh progression.

    Templates use ``{search_from}`` and ``{search_to}`` placeholders.
    """

    name: str
    type: QueryType
    template: str
    hash: str = field(init=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Query name must not be empty")
        object.__setattr__(self, "hash", template_hash(self.template))

    def format(self, search_from: datetime, search_to: datetime) -> str:
        """Render the template for the ``(search_from, search_to]`` window."""
        return self.template.format(
            search_from=search_from.isoformat(),
            search_to=search_to.isoformat(),
        )
