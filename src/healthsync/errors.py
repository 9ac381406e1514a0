"""Error taxonomy for the health sync engine.

Each class maps to one recovery policy:

    ProviderUnavailable — platform/capability mismatch. Terminal, never retried.
    PermissionDenied    — user declined access. Terminal until access is re-granted.
    SyncTimeout         — a deadline expired. Reads recover via a fallback value;
                          a day left unsubmitted is retried next sync.
    NetworkFailure      — scoring backend unreachable. Logged; next sync retries.
    AuthExpired         — session token stale. One refresh-and-retry, then skipped.
    BackendRejected     — validation/conflict from the scoring service. Day stays
                          unsynced; next sync retries.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all engine errors.

    Attributes:
        reason: Short human-readable string suitable for ``last_sync_error``.
    """

    default_reason = "Sync failed"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class ProviderUnavailable(SyncError):
    default_reason = "This provider is not available on your device"


class PermissionDenied(SyncError):
    default_reason = "Health data access was not granted"


class SyncTimeout(SyncError):
    default_reason = "Timed out waiting for health data"


class NetworkFailure(SyncError):
    default_reason = "Could not reach the scoring service"


class AuthExpired(SyncError):
    default_reason = "Session expired"


class BackendRejected(SyncError):
    """The scoring service refused a payload.

    Attributes:
        status_code: HTTP status returned by the backend, if any.
    """

    default_reason = "The scoring service rejected the update"

    def __init__(self, reason: str | None = None, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.status_code = status_code
