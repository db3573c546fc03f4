"""Alert entities and the forward-only alert state machine."""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AlertState(IntEnum):
    """Alert lifecycle.  Values are persisted; ordering is the state order."""

    PENDING = 0
    ALERTED = 1
    MITIGATED = 2


class SlackAlertData(BaseModel):
    """Slack delivery details for an alert."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["slack"] = "slack"
    channel: str | None = None
    message: str | None = None
    thread_ts: str | None = None


class AlertEntity(BaseModel):
    """The alert attached to one telemetry row."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(default=0, ge=0)
    state: AlertState = AlertState.PENDING
    telemetry_id: int = Field(..., gt=0)
    ext_id: str | None = Field(default=None, description="Notification id, set once delivery succeeds.")
    data: SlackAlertData = Field(default_factory=SlackAlertData)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def pending(cls, telemetry_id: int, now: datetime) -> AlertEntity:
        return cls(telemetry_id=telemetry_id, created_at=now, updated_at=now)

    def advance(
        self,
        state: AlertState,
        now: datetime,
        *,
        ext_id: str | None = None,
        data: SlackAlertData | None = None,
    ) -> AlertEntity:
        """Return a copy moved forward to *state*.

        Raises
        ------
        ValueError
            If *state* is not strictly after the current state.
        """
        if state <= self.state:
            raise ValueError(f"Alert {self.id} cannot move from {self.state.name} to {state.name}")
        update: dict[str, object] = {"state": state, "updated_at": now}
        if ext_id is not None:
            update["ext_id"] = ext_id
        if data is not None:
            update["data"] = data
        return self.model_copy(update=update)
