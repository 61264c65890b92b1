from __future__ import annotations

from typing import Any, Optional


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class TodoLedgerError(Exception):
    """Base exception carrying the HTTP status and error code it maps to."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, detail: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class TodoNotFoundError(TodoLedgerError):
    """404: todo missing, soft-deleted, or owned by someone else."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Todo not found", detail: Optional[Any] = None) -> None:
        super().__init__(message, detail)


class TodoNotSyncedError(TodoLedgerError):
    """400: verification requested before any successful ledger sync."""

    status_code = 400
    code = "NOT_SYNCED"


# ---------------------------------------------------------------------------
# Ledger errors (one per contract revert reason, plus transport failure)
# ---------------------------------------------------------------------------


class LedgerError(TodoLedgerError):
    """Base exception for ledger operations."""

    status_code = 502
    code = "LEDGER_ERROR"


class LedgerRecordExistsError(LedgerError):
    """409: a record for this id is already on the ledger."""

    status_code = 409
    code = "CONFLICT"


class LedgerRecordNotFoundError(LedgerError):
    status_code = 404
    code = "LEDGER_NOT_FOUND"


class LedgerNotOwnerError(LedgerError):
    """403: signing identity differs from the record's creator."""

    status_code = 403
    code = "NOT_OWNER"


class LedgerRecordDeletedError(LedgerError):
    status_code = 409
    code = "ALREADY_DELETED"


class LedgerRecordNotDeletedError(LedgerError):
    status_code = 409
    code = "NOT_DELETED"


class LedgerInvalidArgumentError(LedgerError):
    status_code = 400
    code = "INVALID_ARGUMENT"


class LedgerUnavailableError(LedgerError):
    """503: network, timeout or gas failure (retryable)."""

    status_code = 503
    code = "LEDGER_UNAVAILABLE"
