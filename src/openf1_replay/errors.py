"""Exception types raised by the replay engine."""
from typing import Optional


class ReplayError(Exception):
    """Base class for every error raised by openf1_replay."""


class NetworkError(ReplayError):
    """A request to the telemetry API failed or timed out."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status

    def __str__(self):
        base = super().__str__()
        if self.status is not None:
            return f"{base} (HTTP {self.status}, {self.url})"
        if self.url:
            return f"{base} ({self.url})"
        return base


class RecordError(ReplayError, ValueError):
    """A payload row could not be turned into a telemetry record."""


class SessionMismatchError(ReplayError):
    """A result arrived for a session that is no longer active."""

    def __init__(self, expected_epoch: int, actual_epoch: int):
        super().__init__(f"result for epoch {actual_epoch} discarded, current epoch is {expected_epoch}")
        self.expected_epoch = expected_epoch
        self.actual_epoch = actual_epoch


class ConfigError(ReplayError, ValueError):
    """Invalid configuration value or a caller breaking an engine invariant."""
