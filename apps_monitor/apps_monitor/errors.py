"""Exception hierarchy for the apps monitor."""

from __future__ import annotations


class MonitorError(Exception):
    """Base exception for all apps monitor errors."""


class LockLostError(MonitorError):
    """The session holding a distributed lock is gone; exclusivity can no longer be assumed."""


class LockNotHeldError(MonitorError):
    """Releasing a distributed lock found it was not held by this process."""


class FatalServiceError(MonitorError):
    """A background component failed in a way that requires shutting the process down."""


class NotificationError(MonitorError):
    """A notification could not be delivered."""


class SlackHTTPError(NotificationError):
    """Slack answered with a non-success HTTP status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Slack returned HTTP {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


class SlackRateLimitedError(SlackHTTPError):
    """Slack kept answering 429 after all retries."""

    def __init__(self, retry_after: float | None = None, body: str = "") -> None:
        super().__init__(429, body)
        self.retry_after = retry_after


class SlackServerError(SlackHTTPError):
    """Slack kept answering 5xx after all retries."""
