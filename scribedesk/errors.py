"""Domain errors shared by every scribedesk component."""

from __future__ import annotations

from typing import Optional


class MarketError(Exception):
    """Base class for errors reported to callers of the marketplace."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(MarketError):
    """Referenced record does not exist or is not visible to the caller's role."""

    status_code = 404


class Conflict(MarketError):
    """A state-guarded precondition no longer holds. Never retried by the core."""

    status_code = 409

    def __init__(self, message: str, current_state: Optional[str] = None) -> None:
        super().__init__(message)
        self.current_state = current_state


class InvalidInput(MarketError):
    status_code = 400


class UpstreamUnavailable(MarketError):
    """A dependency (store, notifier, rate lookup) failed; the caller may retry."""

    status_code = 503
