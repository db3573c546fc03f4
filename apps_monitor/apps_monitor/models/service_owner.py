"""Validated tenant identifier.

A service owner is the organisation whose applications are monitored.  The
identifier is a lowercase alphanumeric token (``skd``, ``ttd``, ``digdir``)
and is used as the partition key for telemetry, cursors and workers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_SERVICE_OWNER_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True, slots=True)
class ServiceOwner:
    """Immutable tenant identifier.

    Equality and hashing use ``value`` only.  ``ext_id`` is the id of the
    tenant in the external control plane (for example a cloud subscription)
    and is informational.
    """

    value: str
    ext_id: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not _SERVICE_OWNER_RE.fullmatch(self.value):
            raise ValueError(f"Invalid service owner {self.value!r}: must match {_SERVICE_OWNER_RE.pattern!r}")

    @classmethod
    def parse(cls, value: str, ext_id: str | None = None) -> ServiceOwner:
        """Validate *value* and return a :class:`ServiceOwner`.

        Raises
        ------
        ValueError
            If *value* is empty or contains anything other than lowercase
            letters and digits.
        """
        return cls(value=value, ext_id=ext_id)

    def __str__(self) -> str:
        return self.value
