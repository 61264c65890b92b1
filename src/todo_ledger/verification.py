from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import TodoNotFoundError, TodoNotSyncedError
from .hashing import compute_hash
from .ledger import Ledger
from .models import LedgerRecord, SyncStatus
from .repositories import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    is_valid: bool
    primary_hash: str
    ledger_hash: str
    ledger_meta: LedgerRecord


# PUBLIC_INTERFACE
class VerificationService:
    """
    Compares a todo's current content hash against the ledger on demand.

    Read-only: never touches the sync envelope.
    """

    def __init__(self, repository: Repository, ledger: Ledger) -> None:
        self._repo = repository
        self._ledger = ledger

    def verify(self, todo_id: str, owner_id: str) -> VerificationResult:
        todo = self._repo.find_by_id(todo_id, owner_id)
        if todo is None:
            raise TodoNotFoundError()
        if todo["sync_status"] != SyncStatus.SYNCED.value:
            raise TodoNotSyncedError(
                "Todo has not been synced to the ledger yet; retry once sync_status is 'synced'",
                detail={"sync_status": todo["sync_status"], "last_sync_error": todo["last_sync_error"]},
            )

        primary_hash = compute_hash(todo)
        record = self._ledger.get(todo_id)
        is_valid = self._ledger.verify(todo_id, primary_hash)
        if not is_valid:
            logger.warning(
                "Verification mismatch for %s: primary=%s ledger=%s", todo_id, primary_hash, record.todo_hash
            )
        return VerificationResult(
            is_valid=is_valid,
            primary_hash=primary_hash,
            ledger_hash=record.todo_hash,
            ledger_meta=record,
        )
