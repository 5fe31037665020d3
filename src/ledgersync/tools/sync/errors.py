from __future__ import annotations

from ledgersync.models.sync import OutcomeStatus


class SyncError(Exception):
    """Base error for failures while syncing one account."""

    kind = "unexpected"


class AuthError(SyncError):
    """Upstream credentials or token are invalid; the user must re-link."""

    kind = "auth"


class RateLimited(SyncError):
    """Upstream rejected the call with a rate limit; retry next pass."""

    kind = "rate_limited"


class TransientError(SyncError):
    """Network failure, timeout or upstream 5xx."""

    kind = "transient"


class DataError(SyncError):
    """Upstream payload was malformed or had an unexpected shape."""

    kind = "data"


class PlatformClientError(Exception):
    """Transport-level failure raised by a platform client."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AccountLoadError(Exception):
    """The list of due accounts could not be loaded. Fatal for a run."""


def to_sync_error(exc: BaseException) -> SyncError:
    """Map a client or parsing exception onto the sync error taxonomy."""
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, PlatformClientError):
        code = exc.status_code
        if code in (401, 403):
            return AuthError(str(exc))
        if code == 429:
            return RateLimited(str(exc))
        if code is not None and 400 <= code < 500:
            return DataError(str(exc))
        return TransientError(str(exc))
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return TransientError(str(exc) or type(exc).__name__)
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return DataError(f"{type(exc).__name__}: {exc}")
    return SyncError(f"{type(exc).__name__}: {exc}")


def outcome_status_for(error: SyncError) -> OutcomeStatus:
    if isinstance(error, AuthError):
        return OutcomeStatus.AUTH_ERROR
    if isinstance(error, RateLimited):
        return OutcomeStatus.RATE_LIMITED
    return OutcomeStatus.ERROR
