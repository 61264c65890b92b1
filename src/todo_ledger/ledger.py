from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Dict, Optional

from .errors import (
    LedgerInvalidArgumentError,
    LedgerNotOwnerError,
    LedgerRecordDeletedError,
    LedgerRecordExistsError,
    LedgerRecordNotDeletedError,
    LedgerRecordNotFoundError,
)
from .hashing import bytes32_to_hex, hex_to_bytes32
from .models import LedgerRecord
from .settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_SIGNER = "0x" + "f39fd6e51aad88f6f4ce6ab8827279cfffb92266"


# PUBLIC_INTERFACE
class Ledger(ABC):
    """
    Gateway to the TodoRegistry contract. Write operations block until the
    transaction is confirmed and return its reference; expect seconds, so
    never call them on a request path.
    """

    @property
    @abstractmethod
    def signer_address(self) -> str:
        """Address that signs write transactions."""

    @abstractmethod
    def create(self, todo_id: str, todo_hash: str) -> str:
        """Register a new record. Raises LedgerRecordExistsError if present."""

    @abstractmethod
    def update(self, todo_id: str, new_hash: str) -> str:
        """Replace the stored hash of a live record owned by the signer."""

    @abstractmethod
    def delete(self, todo_id: str) -> str:
        """Flag a record owned by the signer as deleted."""

    @abstractmethod
    def restore(self, todo_id: str) -> str:
        """Clear the deletion flag of a record owned by the signer."""

    @abstractmethod
    def verify(self, todo_id: str, expected_hash: str) -> bool:
        """Return whether the stored hash equals ``expected_hash``."""

    @abstractmethod
    def get(self, todo_id: str) -> LedgerRecord:
        """Return the record. Raises LedgerRecordNotFoundError if absent."""

    @abstractmethod
    def exists(self, todo_id: str) -> bool:
        """Return whether a record is registered for ``todo_id``."""


def to_digest_bytes(value: Optional[str], message: str) -> bytes:
    """Convert a hex digest to bytes32, rejecting malformed and zero digests."""
    try:
        raw = hex_to_bytes32(value or "")
    except ValueError as exc:
        raise LedgerInvalidArgumentError(message) from exc
    if not any(raw):
        raise LedgerInvalidArgumentError(message)
    return raw


@dataclass
class _Record:
    todo_hash: bytes
    owner: str
    timestamp: int
    deleted: bool = False


class _RecordTable:
    """Contract storage shared by every signer view of one in-memory chain."""

    def __init__(self) -> None:
        self.lock = RLock()
        self.records: Dict[str, _Record] = {}
        self.block_number = 0


class InMemoryLedger(Ledger):
    """
    Thread-safe simulation of the TodoRegistry contract.

    Checks run in the contract's order: arguments, existence, ownership,
    deletion flag. ``with_signer`` returns a client over the same records
    acting as a different address.
    """

    def __init__(self, signer: str = DEFAULT_SIGNER, table: Optional[_RecordTable] = None) -> None:
        self._signer = signer.lower()
        self._table = table or _RecordTable()

    @property
    def signer_address(self) -> str:
        return self._signer

    def with_signer(self, signer: str) -> "InMemoryLedger":
        return InMemoryLedger(signer=signer, table=self._table)

    def _now(self) -> int:
        return int(datetime.now(timezone.utc).timestamp())

    def _confirm(self, action: str, todo_id: str) -> str:
        self._table.block_number += 1
        tx_ref = "0x" + secrets.token_hex(32)
        logger.info(
            "Ledger %s confirmed for %s (tx=%s, block=%d)",
            action, todo_id, tx_ref, self._table.block_number,
        )
        return tx_ref

    def _owned(self, todo_id: str) -> _Record:
        record = self._table.records.get(todo_id)
        if record is None:
            raise LedgerRecordNotFoundError("Todo does not exist")
        if record.owner != self._signer:
            raise LedgerNotOwnerError("Not authorized: caller is not the todo owner")
        return record

    def create(self, todo_id: str, todo_hash: str) -> str:
        if not todo_id:
            raise LedgerInvalidArgumentError("Todo ID cannot be empty")
        raw = to_digest_bytes(todo_hash, "Todo hash cannot be empty")
        with self._table.lock:
            if todo_id in self._table.records:
                raise LedgerRecordExistsError("Todo already exists")
            self._table.records[todo_id] = _Record(todo_hash=raw, owner=self._signer, timestamp=self._now())
            return self._confirm("create", todo_id)

    def update(self, todo_id: str, new_hash: str) -> str:
        raw = to_digest_bytes(new_hash, "New hash cannot be empty")
        with self._table.lock:
            record = self._owned(todo_id)
            if record.deleted:
                raise LedgerRecordDeletedError("Cannot update deleted todo")
            record.todo_hash = raw
            record.timestamp = self._now()
            return self._confirm("update", todo_id)

    def delete(self, todo_id: str) -> str:
        with self._table.lock:
            record = self._owned(todo_id)
            if record.deleted:
                raise LedgerRecordDeletedError("Todo is already deleted")
            record.deleted = True
            return self._confirm("delete", todo_id)

    def restore(self, todo_id: str) -> str:
        with self._table.lock:
            record = self._owned(todo_id)
            if not record.deleted:
                raise LedgerRecordNotDeletedError("Todo is not deleted")
            record.deleted = False
            return self._confirm("restore", todo_id)

    def verify(self, todo_id: str, expected_hash: str) -> bool:
        with self._table.lock:
            record = self._table.records.get(todo_id)
            if record is None:
                raise LedgerRecordNotFoundError("Todo does not exist")
            try:
                expected = hex_to_bytes32(expected_hash)
            except ValueError:
                return False
            return record.todo_hash == expected

    def get(self, todo_id: str) -> LedgerRecord:
        with self._table.lock:
            record = self._table.records.get(todo_id)
            if record is None:
                raise LedgerRecordNotFoundError("Todo does not exist")
            return LedgerRecord(
                todo_id=todo_id,
                todo_hash=bytes32_to_hex(record.todo_hash),
                owner=record.owner,
                timestamp=datetime.fromtimestamp(record.timestamp, tz=timezone.utc),
                deleted=record.deleted,
            )

    def exists(self, todo_id: str) -> bool:
        with self._table.lock:
            return todo_id in self._table.records


# PUBLIC_INTERFACE
def get_ledger(settings: Settings) -> Ledger:
    """
    Build the configured ledger client.
    - memory: InMemoryLedger signing as LEDGER_SIGNER_ADDRESS
    - web3: Web3Ledger bound to the configured network and contract
    """
    if settings.ledger_backend == "web3":
        from .ledger_web3 import Web3Ledger

        return Web3Ledger.from_settings(settings)
    return InMemoryLedger(signer=settings.ledger_signer_address)
