"""Slack Web API client for alert notifications.

Only ``chat.postMessage`` is used.  Transient failures (HTTP 429, 5xx and
transport errors) are retried with exponential backoff, honouring
``Retry-After`` on 429.  Other non-success statuses fail immediately.

Slack reports most application errors with HTTP 200 and ``{"ok": false}``;
those are returned as :class:`SlackErrorResponse`, not raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ValidationError

from apps_monitor.errors import (
    NotificationError,
    SlackHTTPError,
    SlackRateLimitedError,
    SlackServerError,
)
from apps_monitor.retry import RetryConfig, Sleep, async_retry_with_backoff

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10.0
_MAX_RETRIES = 3
_BACKOFF_BASE = 1.0  # seconds: 1, 2, 4


class SlackOkResponse(BaseModel):
    ok: Literal[True]
    ts: str
    channel: str | None = None


class SlackErrorResponse(BaseModel):
    ok: Literal[False]
    error: str
    warning: str | None = None


SlackResponse = SlackOkResponse | SlackErrorResponse


def parse_slack_response(payload: Any) -> SlackResponse:
    """Dispatch a Web API response body on its ``ok`` flag.

    Raises
    ------
    ValueError
        If *payload* is not an object with a boolean ``ok`` field.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("ok"), bool):
        raise ValueError(f"Unexpected Slack response: {payload!r}")
    if payload["ok"]:
        return SlackOkResponse.model_validate(payload)
    return SlackErrorResponse.model_validate(payload)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class SlackClient:
    """Post messages to Slack.

    Parameters
    ----------
    host:
        Slack API host, e.g. ``https://slack.com``.
    access_token:
        Bot token sent as a bearer credential.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    timeout:
        Per-request timeout for the default client.
    retry_config:
        Backoff parameters for transient failures.
    sleep:
        Awaitable used between retries.
    """

    def __init__(
        self,
        host: str,
        access_token: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = _TIMEOUT_SECONDS,
        retry_config: RetryConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._url = f"{host.rstrip('/')}/api/chat.postMessage"
        self._token = access_token
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._retry_config = retry_config or RetryConfig(max_retries=_MAX_RETRIES, base_delay=_BACKOFF_BASE)
        self._sleep = sleep

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def post_message(self, channel: str, text: str) -> SlackResponse:
        """Post *text* to *channel*.

        Returns
        -------
        SlackResponse
            The parsed response; check ``ok`` to tell success from a
            structured Slack error.

        Raises
        ------
        SlackRateLimitedError
            Still rate limited after all retries.
        SlackServerError
            Still failing with 5xx after all retries.
        SlackHTTPError
            Any other non-success HTTP status.
        NotificationError
            Transport failure after all retries, or an unparseable body.
        """
        body = {"channel": channel, "text": text, "mrkdwn": True}
        headers = {"Authorization": f"Bearer {self._token}"}

        async def _attempt() -> SlackResponse:
            response = await self._client.post(self._url, json=body, headers=headers)
            if response.status_code == 429:
                raise SlackRateLimitedError(_retry_after(response), response.text)
            if response.status_code >= 500:
                raise SlackServerError(response.status_code, response.text)
            if not 200 <= response.status_code < 300:
                raise SlackHTTPError(response.status_code, response.text)
            try:
                return parse_slack_response(response.json())
            except (ValueError, ValidationError) as exc:
                raise NotificationError(f"Unparseable Slack response: {exc}") from exc

        try:
            return await async_retry_with_backoff(
                _attempt,
                self._retry_config,
                (SlackRateLimitedError, SlackServerError, httpx.TransportError),
                sleep=self._sleep,
            )
        except httpx.TransportError as exc:
            raise NotificationError(f"Slack request failed: {exc}") from exc
