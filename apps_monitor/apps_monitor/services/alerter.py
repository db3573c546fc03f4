"""Slack alerting for ingested telemetry.

Each sweep loads telemetry without a delivered Slack alert and drives every
item through the alert state machine::

    pending --(Slack post ok)--> alerted --(reserved)--> mitigated

A step that cannot make progress (Slack rate limit, Slack error, transport
failure) leaves the alert as it is; the next sweep retries it.  Every step is
published on :attr:`Alerter.events`.

INVARIANT: delivery is at-least-once.  If the process dies after Slack
accepted a message but before the ``alerted`` state is committed, the next
sweep posts the message again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps_monitor.clock import Clock
from apps_monitor.errors import NotificationError, SlackRateLimitedError
from apps_monitor.models.alert import AlertEntity, AlertState, SlackAlertData
from apps_monitor.models.events import AlerterEvent
from apps_monitor.models.telemetry import LogsData, MetricData, TelemetryEntity, TraceData
from apps_monitor.services.stream import DEFAULT_CAPACITY, ResultStream
from apps_monitor.slack import SlackClient, SlackErrorResponse
from apps_monitor.state.database import get_session
from apps_monitor.state.repository import AlertRepository, SubscriptionRepository, TelemetryRepository

logger = logging.getLogger(__name__)

SUBSCRIBER = "alerter"

_SLACK_KIND = "slack"


def format_alert_text(item: TelemetryEntity) -> str:
    """Render the Slack message for *item* (Slack ``mrkdwn``)."""
    header = (
        f"*ALERT* `{item.time_generated.isoformat()}`:\n"
        f"- App: *{item.service_owner}*/*{item.app_name}*/*{item.app_version}*\n"
    )
    data = item.data
    if isinstance(data, TraceData):
        duration_ms = data.duration.total_seconds() * 1000
        return header + (
            f"- Error: *{data.span_name}* (status *{data.result}*, *{duration_ms:.2f}ms*)\n"
            f"- Instance: *{data.instance_owner_party_id}*/*{data.instance_id}*\n"
            f"- Operation ID: *{data.trace_id}*"
        )
    if isinstance(data, LogsData):
        return header + f"- Log: *{data.message}*\n- Operation ID: *{data.trace_id}*"
    if isinstance(data, MetricData):
        return header + f"- Metric: *{data.name}* = *{data.value}*"
    raise ValueError(f"Unknown telemetry data: {data!r}")


class Alerter:
    """Background sweep delivering Slack alerts.

    Parameters
    ----------
    session_factory:
        Creates sessions for work item reads and alert writes.
    slack:
        Slack client; may be ``None`` only when *disable_slack_alerts* is set.
    clock:
        Time source for timestamps and the sweep interval.
    channel:
        Slack channel receiving alerts.
    interval:
        Time between sweeps.
    disable_slack_alerts:
        Mark alerts as delivered without calling Slack.
    batch_size:
        Work items read per page within one sweep.
    offset_settle:
        Minimum age of a delivered item before the subscriber offset may
        move past it.
    on_fatal:
        Called when the sweep loop fails unrecoverably.
    stream_capacity:
        Size of the event stream.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        slack: SlackClient | None,
        clock: Clock,
        *,
        channel: str | None,
        interval: timedelta = timedelta(minutes=5),
        disable_slack_alerts: bool = False,
        batch_size: int = 500,
        offset_settle: timedelta = timedelta(hours=1),
        on_fatal: Callable[[BaseException], None] | None = None,
        stream_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        if slack is None and not disable_slack_alerts:
            raise ValueError("A Slack client is required unless Slack alerts are disabled")
        self._session_factory = session_factory
        self._slack = slack
        self._clock = clock
        self._channel = channel
        self._interval = interval
        self._disable_slack_alerts = disable_slack_alerts
        self._batch_size = batch_size
        self._offset_settle = offset_settle
        self._on_fatal = on_fatal
        self.events: ResultStream[AlerterEvent] = ResultStream(stream_capacity, name="alerter")
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the sweep loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the sweep background task."""
        if self._running:
            logger.warning("Alerter already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="alerter")
        logger.info("Alerter started (interval=%.0fs)", self._interval.total_seconds())

    async def stop(self) -> None:
        """Stop the sweep loop and wait for it to finish."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning("Alerter task ended with %r during stop", exc)
            self._task = None
        logger.info("Alerter stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("Alerter database error; retrying next tick: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("Alerter sweep failed: %s", exc, exc_info=True)
                if self._on_fatal is not None:
                    self._on_fatal(exc)
                raise
            await self._clock.sleep(self._interval.total_seconds())

    async def sweep(self) -> int:
        """Process every work item past the subscriber offset.  Returns the number of items seen.

        Work items are read in pages of ``batch_size``; each page starts after
        the last item of the previous one, so items that stay pending never
        hide newer telemetry from the sweep.
        """
        async with self._session_factory() as session:
            offset = await SubscriptionRepository(session).get_offset(SUBSCRIBER)

        seen = 0
        after_id = offset
        settled_through = offset
        contiguous = True
        while True:
            async with self._session_factory() as session:
                work_items = await TelemetryRepository(session).list_alerter_work_items(
                    _SLACK_KIND,
                    after_offset=after_id,
                    limit=self._batch_size,
                )
            for item, alert in work_items:
                final = await self._process(item, alert)
                if contiguous and final is not None and final.state >= AlertState.ALERTED and self._is_settled(item):
                    settled_through = item.id
                else:
                    contiguous = False
                after_id = item.id
            seen += len(work_items)
            if len(work_items) < self._batch_size:
                break

        if settled_through > offset:
            async with get_session(self._session_factory) as session:
                await SubscriptionRepository(session).advance_offset(SUBSCRIBER, settled_through, self._clock.now())
            logger.debug("Alerter offset advanced %d -> %d", offset, settled_through)
        return seen

    def _is_settled(self, item: TelemetryEntity) -> bool:
        if item.time_ingested is None:
            return False
        return item.time_ingested <= self._clock.now() - self._offset_settle

    async def _process(self, item: TelemetryEntity, alert: AlertEntity | None) -> AlertEntity | None:
        """Drive one item as far as it goes.  Returns the last stored alert, or ``None`` on failure."""
        try:
            if alert is None:
                alert = AlertEntity.pending(item.id, self._clock.now())

            while alert.state < AlertState.MITIGATED:
                updated = await self.progress(item, alert)
                self.events.publish(AlerterEvent(item=item, alert_before=alert, alert_after=updated))
                if updated is None:
                    break
                async with get_session(self._session_factory) as session:
                    alert = await AlertRepository(session).save(updated)
            return alert
        except (OperationalError, InterfaceError):
            raise
        except Exception as exc:
            logger.error(
                "Failed to process alerter work item telemetry_id=%d alert_id=%s: %s",
                item.id,
                alert.id if alert is not None else None,
                exc,
                exc_info=True,
                extra={"telemetry_id": item.id},
            )
            return None

    async def progress(self, item: TelemetryEntity, alert: AlertEntity) -> AlertEntity | None:
        """Attempt one transition; ``None`` means no progress this time."""
        if alert.state == AlertState.PENDING:
            return await self._handle_pending(item, alert)
        if alert.state == AlertState.ALERTED:
            if alert.data.thread_ts is None:
                raise ValueError(f"Alerted alert {alert.id} has no Slack thread timestamp")
            # Mitigation tracking is not implemented; alerted is a terminal hold.
            return None
        return None

    async def _handle_pending(self, item: TelemetryEntity, alert: AlertEntity) -> AlertEntity | None:
        if alert.data.thread_ts is not None:
            raise ValueError(f"Pending alert {alert.id} already has a Slack thread timestamp")

        text = format_alert_text(item)
        channel = self._channel

        if self._disable_slack_alerts:
            logger.info("Would have sent alert to Slack for telemetry %d", item.id, extra={"telemetry_id": item.id})
            return alert.advance(
                AlertState.ALERTED,
                self._clock.now(),
                ext_id="none",
                data=SlackAlertData(channel=channel, message=text, thread_ts="none"),
            )

        assert self._slack is not None  # noqa: S101
        assert channel is not None  # noqa: S101
        try:
            response = await self._slack.post_message(channel, text)
        except SlackRateLimitedError:
            logger.warning("Slack rate limit exceeded, will try again later")
            return None
        except NotificationError as exc:
            logger.error("Failed to send alert to Slack: %s", exc)
            return None
        except Exception as exc:
            logger.error("Unexpected error sending alert to Slack: %s", exc, exc_info=True)
            return None

        if isinstance(response, SlackErrorResponse):
            logger.error("Failed to send alert to Slack: %s", response.error)
            return None

        logger.info(
            "Alert sent to Slack: ts=%s telemetry_id=%d",
            response.ts,
            item.id,
            extra={"telemetry_id": item.id},
        )
        return alert.advance(
            AlertState.ALERTED,
            self._clock.now(),
            ext_id=response.ts,
            data=SlackAlertData(channel=channel, message=text, thread_ts=response.ts),
        )
