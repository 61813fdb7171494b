from __future__ import annotations

from typing import Optional


class RelayError(RuntimeError):
    """Base class for errors raised by the relay."""


class AuthError(RelayError):
    """
    Authentication could not be completed (challenge, login or token extraction).

    Only recoverable by re-running the session manager or by operator intervention (manual login, cookie
    injection).
    """


class TransportError(RelayError):
    """A single portal request failed (network error, timeout, unexpected HTTP status)."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SessionExpiredError(TransportError):
    """
    The portal rejected the session mid-scrape (HTTP 401 / 403 / 419).

    Invalidates the current session and is escalated to the supervising loop.
    """
