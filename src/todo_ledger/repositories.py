from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    AuditStatus,
    SyncAuditEntry,
    SyncEnvelopePatch,
    SyncOperation,
    SyncStatus,
    TodoEntity,
    TodoPriority,
)
from .schemas import TodoCreate, TodoUpdate
from .settings import Settings

SEMANTIC_FIELDS = ("title", "description", "priority", "completed", "due_date")
SORT_FIELDS = {"created_at", "updated_at"}


@dataclass(frozen=True)
class ListQuery:
    """
    Query parameters for listing todos.
    """
    limit: int = 50
    offset: int = 0
    completed: Optional[bool] = None
    priority: Optional[str] = None
    sync_status: Optional[str] = None
    search: Optional[str] = None
    due_from: Optional[datetime] = None
    due_to: Optional[datetime] = None
    sort: str = "-created_at"  # allowed: created_at, -created_at, updated_at, -updated_at


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def retry_due(todo: TodoEntity, retry_cutoffs: Sequence[datetime]) -> bool:
    """
    Whether a failed todo's backoff has elapsed.

    ``retry_cutoffs[i]`` is the latest ``last_sync_attempt_at`` that is due at
    retry count ``i``; the last entry covers every higher count.
    """
    last_attempt = todo["last_sync_attempt_at"]
    if not retry_cutoffs or last_attempt is None:
        return True
    index = min(max(todo["sync_retry_count"], 0), len(retry_cutoffs) - 1)
    return as_aware(last_attempt) <= retry_cutoffs[index]


def semantic_patch(data: TodoUpdate) -> Dict[str, Any]:
    """Fields explicitly present in the update payload, enums flattened to values."""
    values: Dict[str, Any] = {}
    for name in SEMANTIC_FIELDS:
        if name not in data.model_fields_set:
            continue
        value = getattr(data, name)
        if name in {"title", "priority", "completed"} and value is None:
            # title/priority/completed are not nullable; explicit null means "leave as is"
            continue
        if isinstance(value, TodoPriority):
            value = value.value
        elif isinstance(value, datetime):
            value = as_aware(value)
        values[name] = value
    return values


# PUBLIC_INTERFACE
class Repository(ABC):
    """
    Abstract primary-store contract for todos.

    Every owner-facing lookup takes ``owner_id`` and filters on it inside the
    lookup itself. Methods touching only the sync envelope are keyed by id and
    are reserved for the sync core.
    """

    @abstractmethod
    def create(self, owner_id: str, data: TodoCreate) -> TodoEntity:
        """Create and return a new TodoEntity with sync_status=pending."""

    @abstractmethod
    def find_by_id(self, todo_id: str, owner_id: str, include_deleted: bool = False) -> Optional[TodoEntity]:
        """Return the owner's todo, or None. Soft-deleted todos only when asked."""

    @abstractmethod
    def update_fields(self, todo_id: str, owner_id: str, data: TodoUpdate) -> Optional[TodoEntity]:
        """Apply semantic fields, bump revision and reset sync_status to pending."""

    @abstractmethod
    def toggle_complete(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        """Flip the completion flag in one atomic step."""

    @abstractmethod
    def soft_delete(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        """Flag a live todo as deleted. None if missing or already deleted."""

    @abstractmethod
    def restore(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        """Clear the deletion flag. None if missing or not deleted."""

    @abstractmethod
    def list(self, owner_id: str, query: Optional[ListQuery] = None) -> Tuple[List[TodoEntity], int]:
        """
        Return a slice of the owner's live todos and the total count matching filters.
        - Supports limit/offset
        - Filter by completed, priority, sync_status and due date range
        - Substring search across title and description (case-insensitive)
        - Sorting by created_at/updated_at (asc/desc)
        """

    @abstractmethod
    def stats(self, owner_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Return total/completed/pending/overdue counts of live todos."""

    @abstractmethod
    def get_for_sync(self, todo_id: str) -> Optional[TodoEntity]:
        """Owner-agnostic read including soft-deleted todos."""

    @abstractmethod
    def mark_sync_attempt(self, todo_id: str) -> Optional[TodoEntity]:
        """Set sync_status=pending and stamp last_sync_attempt_at."""

    @abstractmethod
    def update_sync_envelope(
        self, todo_id: str, patch: SyncEnvelopePatch, expected_revision: Optional[int] = None
    ) -> Optional[TodoEntity]:
        """
        Atomically update only the sync envelope.
        - error supplied: last_sync_error set and sync_retry_count incremented by one
        - status synced: ledger hash/tx stored, last_synced_at stamped, retry count and error cleared
        - expected_revision supplied: applied only while the revision still matches
        Returns the updated entity, or None when missing or the revision moved on.
        """

    @abstractmethod
    def list_failed_syncs(
        self,
        max_retries: int,
        limit: int,
        retry_cutoffs: Sequence[datetime] = (),
        owner_id: Optional[str] = None,
    ) -> List[TodoEntity]:
        """
        Failed todos with sync_retry_count < max_retries, oldest updated_at first.

        With ``retry_cutoffs`` only todos whose backoff has elapsed are
        returned (see ``retry_due``), so todos still waiting never take up
        the ``limit``.
        """

    @abstractmethod
    def list_stale_pending(
        self, older_than: datetime, limit: int, owner_id: Optional[str] = None
    ) -> List[TodoEntity]:
        """Pending todos whose last attempt (or update, if never attempted) precedes older_than."""

    @abstractmethod
    def list_exhausted_syncs(
        self, max_retries: int, limit: int, owner_id: Optional[str] = None
    ) -> List[TodoEntity]:
        """Failed todos that reached the retry cap; all owners when ``owner_id`` is None."""

    @abstractmethod
    def record_sync_attempt(self, todo_id: str, owner_id: str, operation: SyncOperation, todo_hash: str) -> int:
        """Append a pending audit entry and return its id."""

    @abstractmethod
    def complete_sync_attempt(
        self, entry_id: int, status: AuditStatus, tx_ref: Optional[str] = None, error: Optional[str] = None
    ) -> None:
        """Mark a pending audit entry as confirmed or failed."""

    @abstractmethod
    def list_sync_audit(self, todo_id: str, owner_id: str) -> List[SyncAuditEntry]:
        """Audit entries of the owner's todo, newest first."""


def new_entity(owner_id: str, data: TodoCreate, now: datetime) -> TodoEntity:
    return {
        "id": uuid.uuid4().hex,
        "owner_id": owner_id,
        "title": data.title,
        "description": data.description,
        "priority": TodoPriority(data.priority).value,
        "completed": data.completed,
        "completed_at": now if data.completed else None,
        "due_date": as_aware(data.due_date) if data.due_date else None,
        "is_deleted": False,
        "deleted_at": None,
        "deleted_by": None,
        "created_at": now,
        "updated_at": now,
        "revision": 1,
        "sync_status": SyncStatus.PENDING.value,
        "ledger_hash": None,
        "ledger_tx_ref": None,
        "last_synced_at": None,
        "last_sync_attempt_at": None,
        "sync_retry_count": 0,
        "last_sync_error": None,
    }


class InMemoryRepository(Repository):
    """
    Thread-safe in-memory repository suitable for testing and default runtime.
    Every method runs under one lock, so each call is a single atomic step.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: dict[str, TodoEntity] = {}
        self._audit: List[SyncAuditEntry] = []

    def _now(self) -> datetime:
        return utcnow()

    def _owned(self, todo_id: str, owner_id: str, deleted: Optional[bool] = False) -> Optional[TodoEntity]:
        item = self._items.get(todo_id)
        if item is None or item["owner_id"] != owner_id:
            return None
        if deleted is not None and item["is_deleted"] != deleted:
            return None
        return item

    def _bump(self, item: TodoEntity, now: datetime) -> None:
        item["revision"] += 1
        item["updated_at"] = now
        item["sync_status"] = SyncStatus.PENDING.value

    def create(self, owner_id: str, data: TodoCreate) -> TodoEntity:
        entity = new_entity(owner_id, data, self._now())
        with self._lock:
            self._items[entity["id"]] = entity
            return entity.copy()

    def find_by_id(self, todo_id: str, owner_id: str, include_deleted: bool = False) -> Optional[TodoEntity]:
        with self._lock:
            item = self._owned(todo_id, owner_id, None if include_deleted else False)
            return None if item is None else item.copy()

    def update_fields(self, todo_id: str, owner_id: str, data: TodoUpdate) -> Optional[TodoEntity]:
        with self._lock:
            item = self._owned(todo_id, owner_id)
            if item is None:
                return None
            now = self._now()
            values = semantic_patch(data)
            if "completed" in values and values["completed"] != item["completed"]:
                item["completed_at"] = now if values["completed"] else None
            item.update(values)  # type: ignore[typeddict-item]
            self._bump(item, now)
            return item.copy()

    def toggle_complete(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        with self._lock:
            item = self._owned(todo_id, owner_id)
            if item is None:
                return None
            now = self._now()
            item["completed"] = not item["completed"]
            item["completed_at"] = now if item["completed"] else None
            self._bump(item, now)
            return item.copy()

    def soft_delete(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        with self._lock:
            item = self._owned(todo_id, owner_id, deleted=False)
            if item is None:
                return None
            now = self._now()
            item["is_deleted"] = True
            item["deleted_at"] = now
            item["deleted_by"] = owner_id
            self._bump(item, now)
            return item.copy()

    def restore(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        with self._lock:
            item = self._owned(todo_id, owner_id, deleted=True)
            if item is None:
                return None
            item["is_deleted"] = False
            item["deleted_at"] = None
            item["deleted_by"] = None
            self._bump(item, self._now())
            return item.copy()

    def list(self, owner_id: str, query: Optional[ListQuery] = None) -> Tuple[List[TodoEntity], int]:
        q = query or ListQuery()
        with self._lock:
            items: Iterable[TodoEntity] = [
                t for t in self._items.values() if t["owner_id"] == owner_id and not t["is_deleted"]
            ]

            # Filtering
            if q.completed is not None:
                items = [t for t in items if t["completed"] == q.completed]
            if q.priority:
                items = [t for t in items if t["priority"] == q.priority]
            if q.sync_status:
                items = [t for t in items if t["sync_status"] == q.sync_status]
            if q.due_from is not None:
                lo = as_aware(q.due_from)
                items = [t for t in items if t["due_date"] is not None and as_aware(t["due_date"]) >= lo]
            if q.due_to is not None:
                hi = as_aware(q.due_to)
                items = [t for t in items if t["due_date"] is not None and as_aware(t["due_date"]) <= hi]

            if q.search:
                s = q.search.lower()
                def matches(t: TodoEntity) -> bool:
                    title_ok = s in (t["title"] or "").lower()
                    desc_ok = s in (t["description"] or "").lower() if t["description"] else False
                    return title_ok or desc_ok
                items = [t for t in items if matches(t)]

            items = list(items)
            total = len(items)

            # Sorting
            sort_key = q.sort.strip().lower() if q.sort else "-created_at"
            reverse = sort_key.startswith("-")
            field = sort_key[1:] if reverse else sort_key
            if field not in SORT_FIELDS:
                field = "created_at"
            items_sorted = sorted(items, key=lambda t: t[field], reverse=reverse)

            # Pagination
            start = max(q.offset, 0)
            end = start + max(q.limit, 0)
            page = items_sorted[start:end]

            # Return copies to avoid external mutation
            return [t.copy() for t in page], total

    def stats(self, owner_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self._now()
        with self._lock:
            live = [t for t in self._items.values() if t["owner_id"] == owner_id and not t["is_deleted"]]
            completed = sum(1 for t in live if t["completed"])
            overdue = sum(
                1 for t in live
                if not t["completed"] and t["due_date"] is not None and as_aware(t["due_date"]) < now
            )
            return {"total": len(live), "completed": completed, "pending": len(live) - completed, "overdue": overdue}

    def get_for_sync(self, todo_id: str) -> Optional[TodoEntity]:
        with self._lock:
            item = self._items.get(todo_id)
            return None if item is None else item.copy()

    def mark_sync_attempt(self, todo_id: str) -> Optional[TodoEntity]:
        with self._lock:
            item = self._items.get(todo_id)
            if item is None:
                return None
            now = self._now()
            item["sync_status"] = SyncStatus.PENDING.value
            item["last_sync_attempt_at"] = now
            item["updated_at"] = now
            return item.copy()

    def update_sync_envelope(
        self, todo_id: str, patch: SyncEnvelopePatch, expected_revision: Optional[int] = None
    ) -> Optional[TodoEntity]:
        with self._lock:
            item = self._items.get(todo_id)
            if item is None:
                return None
            if expected_revision is not None and item["revision"] != expected_revision:
                return None
            now = self._now()
            item["sync_status"] = SyncStatus(patch.status).value
            item["updated_at"] = now
            if patch.ledger_hash is not None:
                item["ledger_hash"] = patch.ledger_hash
            if patch.tx_ref is not None:
                item["ledger_tx_ref"] = patch.tx_ref
            if patch.error is not None:
                item["last_sync_error"] = patch.error
                item["sync_retry_count"] += 1
            if patch.status == SyncStatus.SYNCED:
                item["last_synced_at"] = now
                item["last_sync_error"] = None
                item["sync_retry_count"] = 0
            return item.copy()

    def _select(
        self, matches: Callable[[TodoEntity], bool], limit: int, owner_id: Optional[str]
    ) -> List[TodoEntity]:
        with self._lock:
            selected = [
                t for t in self._items.values()
                if (owner_id is None or t["owner_id"] == owner_id) and matches(t)
            ]
            selected.sort(key=lambda t: t["updated_at"])
            return [t.copy() for t in selected[: max(limit, 0)]]

    def list_failed_syncs(
        self,
        max_retries: int,
        limit: int,
        retry_cutoffs: Sequence[datetime] = (),
        owner_id: Optional[str] = None,
    ) -> List[TodoEntity]:
        return self._select(
            lambda t: t["sync_status"] == SyncStatus.FAILED.value
            and t["sync_retry_count"] < max_retries
            and retry_due(t, retry_cutoffs),
            limit,
            owner_id,
        )

    def list_stale_pending(
        self, older_than: datetime, limit: int, owner_id: Optional[str] = None
    ) -> List[TodoEntity]:
        return self._select(
            lambda t: t["sync_status"] == SyncStatus.PENDING.value
            and (t["last_sync_attempt_at"] or t["updated_at"]) < older_than,
            limit,
            owner_id,
        )

    def list_exhausted_syncs(
        self, max_retries: int, limit: int, owner_id: Optional[str] = None
    ) -> List[TodoEntity]:
        return self._select(
            lambda t: t["sync_status"] == SyncStatus.FAILED.value and t["sync_retry_count"] >= max_retries,
            limit,
            owner_id,
        )

    def record_sync_attempt(self, todo_id: str, owner_id: str, operation: SyncOperation, todo_hash: str) -> int:
        with self._lock:
            entry: SyncAuditEntry = {
                "id": len(self._audit) + 1,
                "todo_id": todo_id,
                "owner_id": owner_id,
                "operation": SyncOperation(operation).value,
                "todo_hash": todo_hash,
                "status": AuditStatus.PENDING.value,
                "tx_ref": None,
                "error_message": None,
                "created_at": self._now(),
                "confirmed_at": None,
            }
            self._audit.append(entry)
            return entry["id"]

    def complete_sync_attempt(
        self, entry_id: int, status: AuditStatus, tx_ref: Optional[str] = None, error: Optional[str] = None
    ) -> None:
        with self._lock:
            if not (1 <= entry_id <= len(self._audit)):
                return
            entry = self._audit[entry_id - 1]
            if entry["status"] != AuditStatus.PENDING.value:
                return
            entry["status"] = AuditStatus(status).value
            entry["tx_ref"] = tx_ref
            entry["error_message"] = error
            if status == AuditStatus.CONFIRMED:
                entry["confirmed_at"] = self._now()

    def list_sync_audit(self, todo_id: str, owner_id: str) -> List[SyncAuditEntry]:
        with self._lock:
            entries = [e for e in self._audit if e["todo_id"] == todo_id and e["owner_id"] == owner_id]
            return [e.copy() for e in reversed(entries)]


# PUBLIC_INTERFACE
def get_repository(settings: Settings) -> Repository:
    """
    Factory to return the configured repository based on settings.
    - memory: InMemoryRepository
    - sqlite: SQLiteRepository (standard library sqlite3)
    """
    if settings.persistence_backend == "sqlite":
        from .db import SQLiteRepository

        return SQLiteRepository(settings.sqlite_db_path)
    return InMemoryRepository()
