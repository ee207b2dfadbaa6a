"""Exception hierarchy for pihole-sync.

Every failure raised by the client, session and sync layers derives from
``PiHoleSyncError`` so callers can isolate one secondary's failures
without swallowing programming errors.

- ``ConfigurationError``: configuration file missing, unparsable or invalid.
- ``AuthenticationError``: credential rejected (fatal for the endpoint's
  current operation, not for the process).
- ``TransportError``: network or HTTP failure; ``status_code`` is set when
  the server answered.
- ``SessionExpiredError``: an authenticated call came back 401.
- ``ReadinessTimeout``: an instance did not become ready within budget.
- ``SerializationError``: a value could not be encoded for hashing or JSON.

``UnresolvedReferenceWarning`` is a warning category, not an error: a list
membership that could not be mapped onto the secondary degrades to the
default group.
"""

from __future__ import annotations

import warnings


class PiHoleSyncError(Exception):
    """Base exception for all pihole-sync errors."""

    def __init__(self, message: str, host: str | None = None):
        super().__init__(message)
        self.message = message
        self.host = host

    def __str__(self) -> str:
        if self.host:
            return f"[{self.host}] {self.message}"
        return self.message


class ConfigurationError(PiHoleSyncError):
    """Raised when configuration cannot be loaded or fails validation."""


class AuthenticationError(PiHoleSyncError):
    """Raised when an endpoint refuses the configured credential."""


class TransportError(PiHoleSyncError):
    """Raised for connection failures and unexpected HTTP responses."""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, host)
        self.status_code = status_code


class SessionExpiredError(TransportError):
    """Raised when an authenticated request is answered with 401."""


class ReadinessTimeout(PiHoleSyncError):
    """Raised when an endpoint is not ready before the deadline."""

    def __init__(self, message: str, host: str | None = None, elapsed: float = 0.0):
        super().__init__(message, host)
        self.elapsed = elapsed


class SerializationError(PiHoleSyncError):
    """Raised when a value cannot be serialised for hashing or upload."""


class UnresolvedReferenceWarning(UserWarning):
    """A group membership could not be mapped onto the secondary."""


# Report every fallback, not just the first one per call site
warnings.simplefilter("always", UnresolvedReferenceWarning)
