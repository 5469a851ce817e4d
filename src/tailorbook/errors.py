"""Exception hierarchy for ledger, persistence and backup operations."""

from __future__ import annotations


class LedgerError(Exception):
    """Base exception. ``reason`` is the human-readable rule that failed."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationError(LedgerError):
    """User input fails a precondition (blank field, deposit > total, ...)."""


class PreconditionViolation(LedgerError):
    """Deletion attempted on an entity with open orders, balance or debt."""


class PersistenceFailure(LedgerError):
    """The key-value store failed to read or write."""


class MalformedBackupError(LedgerError):
    """A backup envelope failed structural validation."""


# ---------------------------------------------------------------------------
# Remote sync
# ---------------------------------------------------------------------------


class RemoteSyncFailure(LedgerError):
    """Base exception for backup upload/download and remote lookups."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.status_code = status_code


class RemoteAuthError(RemoteSyncFailure):
    """401/403: bad or expired credentials."""


class RemoteNotFoundError(RemoteSyncFailure):
    """404, or no backup row exists for the user."""


class RemoteServerError(RemoteSyncFailure):
    """5xx: server-side error (retryable)."""


class RemoteConnectionError(RemoteSyncFailure):
    """Network/DNS failure (retryable)."""


class RemoteTimeoutError(RemoteSyncFailure):
    """Request timeout (retryable)."""
