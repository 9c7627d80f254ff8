# ABOUTME: Custom exception hierarchy for ledgersync
# ABOUTME: Separates caller validation, store failures, and background sync failures


class LedgerSyncError(Exception):
    """Base exception for all ledgersync errors."""


class AuthenticationError(LedgerSyncError):
    """Failed to authenticate with the ledger store."""


class SessionExpiredError(AuthenticationError):
    """Session token expired, re-auth needed."""


class CredentialsNotFoundError(AuthenticationError):
    """Credentials not found in environment."""


class ValidationError(LedgerSyncError):
    """Invalid input rejected before any store call."""


class StoreError(LedgerSyncError):
    """A ledger store call failed (network, auth, or constraint violation)."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        table: str | None = None,
        record_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.table = table
        self.record_id = record_id
        self.status_code = status_code

    def context(self) -> dict:
        """Operation context for log records and tool responses."""
        return {
            "operation": self.operation,
            "table": self.table,
            "record_id": self.record_id,
            "status_code": self.status_code,
        }


class SyncError(LedgerSyncError):
    """A background refresh failed; the cache keeps its previous contents."""


def error_result(exc: LedgerSyncError) -> dict:
    """Tool response body for a failed call."""
    result: dict = {"error": str(exc)}
    if isinstance(exc, StoreError):
        result.update({k: v for k, v in exc.context().items() if v is not None})
    return result
