"""
Exception taxonomy for the monitoring pipeline.

Fatal (aborts the run):       SessionUnavailable
Term-level (skips the term):  NavigationError, BlockedError
Listing-level (logged only):  ClassificationError, ClassificationTimeout, PersistenceError
Control:                      AlreadyRunning
"""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for every error raised by the monitor."""


class SessionUnavailable(MonitorError):
    """No browser could be launched or attached."""


class NavigationError(MonitorError):
    """Page load timed out, host unreachable, or the hourly page cap is spent."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"navigation to {url} failed: {reason}")
        self.url = url
        self.reason = reason


class BlockedError(MonitorError):
    """The marketplace served a login wall, captcha, or rate-limit page."""


class ClassificationError(MonitorError):
    """The classifier service was unreachable or returned an unusable reply."""


class ClassificationTimeout(ClassificationError):
    """The classifier did not answer within the bounded wait."""


class PersistenceError(MonitorError):
    """The sink rejected or failed to store a record."""


class AlreadyRunning(MonitorError):
    """A monitoring run is already in flight."""
