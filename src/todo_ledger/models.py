from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, TypedDict


class TodoPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SyncStatus(str, Enum):
    """Ledger synchronization state persisted on each todo."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class SyncOperation(str, Enum):
    """Ledger write performed for a todo."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"


class AuditStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


# PUBLIC_INTERFACE
class TodoEntity(TypedDict):
    """
    A lightweight domain model representing a Todo item for non-ORM storage
    backends.

    Semantic fields (covered by the content hash):
    - owner_id, title, description, completed, priority, due_date, created_at

    Bookkeeping fields:
    - id: uuid4 hex; doubles as the ledger record key
    - completed_at: set when completed flips to True, cleared otherwise
    - is_deleted / deleted_at / deleted_by: soft-delete triple
    - updated_at: last mutation of any kind
    - revision: bumped on every semantic mutation, soft delete and restore

    Sync envelope:
    - sync_status, ledger_hash, ledger_tx_ref, last_synced_at,
      last_sync_attempt_at, sync_retry_count, last_sync_error
    """

    id: str
    owner_id: str
    title: str
    description: Optional[str]
    priority: str
    completed: bool
    completed_at: Optional[datetime]
    due_date: Optional[datetime]
    is_deleted: bool
    deleted_at: Optional[datetime]
    deleted_by: Optional[str]
    created_at: datetime
    updated_at: datetime
    revision: int
    sync_status: str
    ledger_hash: Optional[str]
    ledger_tx_ref: Optional[str]
    last_synced_at: Optional[datetime]
    last_sync_attempt_at: Optional[datetime]
    sync_retry_count: int
    last_sync_error: Optional[str]


# PUBLIC_INTERFACE
class SyncAuditEntry(TypedDict):
    """
    Append-only record of one ledger write attempt. The only permitted
    mutation is completing a pending entry as confirmed or failed.
    """

    id: int
    todo_id: str
    owner_id: str
    operation: str
    todo_hash: str
    status: str
    tx_ref: Optional[str]
    error_message: Optional[str]
    created_at: datetime
    confirmed_at: Optional[datetime]


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class LedgerRecord:
    """On-chain view of a todo as returned by the registry contract."""

    todo_id: str
    todo_hash: str
    owner: str
    timestamp: datetime
    deleted: bool


@dataclass(frozen=True)
class SyncEnvelopePatch:
    """
    Envelope-only update. ``error`` set means a failed attempt and increments
    the retry counter by exactly one.
    """

    status: SyncStatus
    ledger_hash: Optional[str] = None
    tx_ref: Optional[str] = None
    error: Optional[str] = None
