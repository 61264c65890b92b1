from __future__ import annotations

import os
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple

from .models import (
    AuditStatus,
    SyncAuditEntry,
    SyncEnvelopePatch,
    SyncOperation,
    SyncStatus,
    TodoEntity,
    TodoPriority,
)
from .repositories import SORT_FIELDS, ListQuery, Repository, as_aware, semantic_patch, utcnow
from .schemas import TodoCreate, TodoUpdate


@dataclass(frozen=True)
class _Tables:
    todos: str = "todos"
    audit: str = "sync_audit"


_T = _Tables()

_DATETIME_COLUMNS = (
    "completed_at",
    "due_date",
    "deleted_at",
    "created_at",
    "updated_at",
    "last_synced_at",
    "last_sync_attempt_at",
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so text comparison orders chronologically."""
    if value is None:
        return None
    return as_aware(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    if s is None:
        return None
    return datetime.fromisoformat(s)


class SQLiteRepository(Repository):
    """
    Lightweight SQLite repository implementing the Repository interface.

    Each mutation is one conditional UPDATE, so concurrent writers (request
    threads, sync workers, the sweeper) never lose each other's changes.
    """

    def __init__(self, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        self._init_db()

    @contextmanager
    def _conn(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_T.todos} (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NULL,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    completed INTEGER NOT NULL DEFAULT 0,
                    completed_at TEXT NULL,
                    due_date TEXT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    deleted_at TEXT NULL,
                    deleted_by TEXT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 1,
                    sync_status TEXT NOT NULL DEFAULT 'pending',
                    ledger_hash TEXT NULL,
                    ledger_tx_ref TEXT NULL,
                    last_synced_at TEXT NULL,
                    last_sync_attempt_at TEXT NULL,
                    sync_retry_count INTEGER NOT NULL DEFAULT 0,
                    last_sync_error TEXT NULL
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_T.audit} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    todo_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    todo_hash TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    tx_ref TEXT NULL,
                    error_message TEXT NULL,
                    created_at TEXT NOT NULL,
                    confirmed_at TEXT NULL
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_T.todos}_owner ON {_T.todos}(owner_id, is_deleted, completed)"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_T.todos}_sync ON {_T.todos}(sync_status, sync_retry_count)"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_T.todos}_created_at ON {_T.todos}(owner_id, created_at)"
            )
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{_T.audit}_todo ON {_T.audit}(todo_id, created_at)")

    def _row_to_entity(self, row: sqlite3.Row) -> TodoEntity:
        entity: Dict[str, Any] = dict(row)
        for name in _DATETIME_COLUMNS:
            entity[name] = _parse_dt(entity[name])
        entity["completed"] = bool(entity["completed"])
        entity["is_deleted"] = bool(entity["is_deleted"])
        return entity  # type: ignore[return-value]

    def _row_to_audit(self, row: sqlite3.Row) -> SyncAuditEntry:
        entry: Dict[str, Any] = dict(row)
        entry["created_at"] = _parse_dt(entry["created_at"])
        entry["confirmed_at"] = _parse_dt(entry["confirmed_at"])
        return entry  # type: ignore[return-value]

    def _fetch(self, conn: sqlite3.Connection, todo_id: str) -> Optional[TodoEntity]:
        row = conn.execute(f"SELECT * FROM {_T.todos} WHERE id = ?", (todo_id,)).fetchone()
        return self._row_to_entity(row) if row else None

    def _update_owned(
        self, todo_id: str, owner_id: str, sets: List[str], params: List[Any], deleted: bool
    ) -> Optional[TodoEntity]:
        now = _ts(utcnow())
        sets = [*sets, "revision = revision + 1", "sync_status = ?", "updated_at = ?"]
        params = [*params, SyncStatus.PENDING.value, now]
        with self._conn() as conn:
            cur = conn.execute(
                f"UPDATE {_T.todos} SET {', '.join(sets)} WHERE id = ? AND owner_id = ? AND is_deleted = ?",
                [*params, todo_id, owner_id, 1 if deleted else 0],
            )
            if cur.rowcount == 0:
                return None
            return self._fetch(conn, todo_id)

    def create(self, owner_id: str, data: TodoCreate) -> TodoEntity:
        now = _ts(utcnow())
        todo_id = uuid.uuid4().hex
        with self._conn() as conn:
            conn.execute(
                f"""
                INSERT INTO {_T.todos} (id, owner_id, title, description, priority, completed,
                    completed_at, due_date, created_at, updated_at, sync_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    todo_id,
                    owner_id,
                    data.title,
                    data.description,
                    TodoPriority(data.priority).value,
                    1 if data.completed else 0,
                    now if data.completed else None,
                    _ts(data.due_date),
                    now,
                    now,
                    SyncStatus.PENDING.value,
                ),
            )
            entity = self._fetch(conn, todo_id)
            assert entity is not None
            return entity

    def find_by_id(self, todo_id: str, owner_id: str, include_deleted: bool = False) -> Optional[TodoEntity]:
        sql = f"SELECT * FROM {_T.todos} WHERE id = ? AND owner_id = ?"
        if not include_deleted:
            sql += " AND is_deleted = 0"
        with self._conn() as conn:
            row = conn.execute(sql, (todo_id, owner_id)).fetchone()
            return self._row_to_entity(row) if row else None

    def update_fields(self, todo_id: str, owner_id: str, data: TodoUpdate) -> Optional[TodoEntity]:
        values = semantic_patch(data)
        sets: List[str] = []
        params: List[Any] = []
        for name, value in values.items():
            if name == "completed":
                # completed_at follows the flag only when it actually changes
                sets.append("completed_at = CASE WHEN completed = ? THEN completed_at WHEN ? = 1 THEN ? ELSE NULL END")
                flag = 1 if value else 0
                params.extend([flag, flag, _ts(utcnow())])
                value = flag
            elif name == "due_date":
                value = _ts(value)
            sets.append(f"{name} = ?")
            params.append(value)
        return self._update_owned(todo_id, owner_id, sets, params, deleted=False)

    def toggle_complete(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        return self._update_owned(
            todo_id,
            owner_id,
            ["completed_at = CASE WHEN completed = 0 THEN ? ELSE NULL END", "completed = 1 - completed"],
            [_ts(utcnow())],
            deleted=False,
        )

    def soft_delete(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        return self._update_owned(
            todo_id,
            owner_id,
            ["is_deleted = 1", "deleted_at = ?", "deleted_by = ?"],
            [_ts(utcnow()), owner_id],
            deleted=False,
        )

    def restore(self, todo_id: str, owner_id: str) -> Optional[TodoEntity]:
        return self._update_owned(
            todo_id,
            owner_id,
            ["is_deleted = 0", "deleted_at = NULL", "deleted_by = NULL"],
            [],
            deleted=True,
        )

    def list(self, owner_id: str, query: Optional[ListQuery] = None) -> Tuple[List[TodoEntity], int]:
        q = query or ListQuery()
        clauses = ["owner_id = ?", "is_deleted = 0"]
        params: list = [owner_id]

        if q.completed is not None:
            clauses.append("completed = ?")
            params.append(1 if q.completed else 0)
        if q.priority:
            clauses.append("priority = ?")
            params.append(q.priority)
        if q.sync_status:
            clauses.append("sync_status = ?")
            params.append(q.sync_status)
        if q.due_from is not None:
            clauses.append("due_date >= ?")
            params.append(_ts(q.due_from))
        if q.due_to is not None:
            clauses.append("due_date <= ?")
            params.append(_ts(q.due_to))

        if q.search:
            # Substring search on title and description
            clauses.append("(title LIKE ? OR description LIKE ?)")
            like = f"%{q.search}%"
            params.extend([like, like])

        where_sql = f"WHERE {' AND '.join(clauses)}"

        sort = q.sort.strip().lower() if q.sort else "-created_at"
        reverse = sort.startswith("-")
        field = sort[1:] if reverse else sort
        if field not in SORT_FIELDS:
            field = "created_at"
        order_sql = f"ORDER BY {field} {'DESC' if reverse else 'ASC'}"

        limit = max(q.limit, 0)
        offset = max(q.offset, 0)

        with self._conn() as conn:
            count_row = conn.execute(
                f"SELECT COUNT(*) as cnt FROM {_T.todos} {where_sql}", params
            ).fetchone()
            total = int(count_row["cnt"]) if count_row else 0

            rows = conn.execute(
                f"SELECT * FROM {_T.todos} {where_sql} {order_sql} LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
            return [self._row_to_entity(r) for r in rows], total

    def stats(self, owner_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        now_s = _ts(now or utcnow())
        with self._conn() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(completed), 0) AS completed,
                       COALESCE(SUM(CASE WHEN completed = 0 AND due_date IS NOT NULL AND due_date < ?
                                    THEN 1 ELSE 0 END), 0) AS overdue
                FROM {_T.todos} WHERE owner_id = ? AND is_deleted = 0
                """,
                (now_s, owner_id),
            ).fetchone()
        total, completed = int(row["total"]), int(row["completed"])
        return {"total": total, "completed": completed, "pending": total - completed, "overdue": int(row["overdue"])}

    def get_for_sync(self, todo_id: str) -> Optional[TodoEntity]:
        with self._conn() as conn:
            return self._fetch(conn, todo_id)

    def mark_sync_attempt(self, todo_id: str) -> Optional[TodoEntity]:
        now = _ts(utcnow())
        with self._conn() as conn:
            cur = conn.execute(
                f"UPDATE {_T.todos} SET sync_status = ?, last_sync_attempt_at = ?, updated_at = ? WHERE id = ?",
                (SyncStatus.PENDING.value, now, now, todo_id),
            )
            if cur.rowcount == 0:
                return None
            return self._fetch(conn, todo_id)

    def update_sync_envelope(
        self, todo_id: str, patch: SyncEnvelopePatch, expected_revision: Optional[int] = None
    ) -> Optional[TodoEntity]:
        now = _ts(utcnow())
        sets = ["sync_status = ?", "updated_at = ?"]
        params: List[Any] = [SyncStatus(patch.status).value, now]
        if patch.ledger_hash is not None:
            sets.append("ledger_hash = ?")
            params.append(patch.ledger_hash)
        if patch.tx_ref is not None:
            sets.append("ledger_tx_ref = ?")
            params.append(patch.tx_ref)
        if patch.status == SyncStatus.SYNCED:
            sets.extend(["last_synced_at = ?", "last_sync_error = NULL", "sync_retry_count = 0"])
            params.append(now)
        elif patch.error is not None:
            sets.extend(["last_sync_error = ?", "sync_retry_count = sync_retry_count + 1"])
            params.append(patch.error)

        where = "id = ?"
        params.append(todo_id)
        if expected_revision is not None:
            where += " AND revision = ?"
            params.append(expected_revision)

        with self._conn() as conn:
            cur = conn.execute(f"UPDATE {_T.todos} SET {', '.join(sets)} WHERE {where}", params)
            if cur.rowcount == 0:
                return None
            return self._fetch(conn, todo_id)

    def _select_many(
        self, where: str, params: List[Any], limit: int, owner_id: Optional[str] = None
    ) -> List[TodoEntity]:
        if owner_id is not None:
            where += " AND owner_id = ?"
            params = [*params, owner_id]
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_T.todos} WHERE {where} ORDER BY updated_at ASC LIMIT ?",
                [*params, max(limit, 0)],
            ).fetchall()
            return [self._row_to_entity(r) for r in rows]

    def list_failed_syncs(
        self,
        max_retries: int,
        limit: int,
        retry_cutoffs: Sequence[datetime] = (),
        owner_id: Optional[str] = None,
    ) -> List[TodoEntity]:
        where = "sync_status = ? AND sync_retry_count < ?"
        params: List[Any] = [SyncStatus.FAILED.value, max_retries]
        if retry_cutoffs:
            cutoffs = [_ts(c) for c in retry_cutoffs]
            if len(cutoffs) == 1:
                bound = "?"
            else:
                # Cutoff for the row's retry count; counts past the end use the last one.
                whens = " ".join("WHEN sync_retry_count <= ? THEN ?" for _ in cutoffs[:-1])
                bound = f"CASE {whens} ELSE ? END"
                for index, cutoff in enumerate(cutoffs[:-1]):
                    params.extend([index, cutoff])
            params.append(cutoffs[-1])
            where += f" AND (last_sync_attempt_at IS NULL OR last_sync_attempt_at <= {bound})"
        return self._select_many(where, params, limit, owner_id)

    def list_stale_pending(
        self, older_than: datetime, limit: int, owner_id: Optional[str] = None
    ) -> List[TodoEntity]:
        return self._select_many(
            "sync_status = ? AND COALESCE(last_sync_attempt_at, updated_at) < ?",
            [SyncStatus.PENDING.value, _ts(older_than)],
            limit,
            owner_id,
        )

    def list_exhausted_syncs(
        self, max_retries: int, limit: int, owner_id: Optional[str] = None
    ) -> List[TodoEntity]:
        return self._select_many(
            "sync_status = ? AND sync_retry_count >= ?", [SyncStatus.FAILED.value, max_retries], limit, owner_id
        )

    def record_sync_attempt(self, todo_id: str, owner_id: str, operation: SyncOperation, todo_hash: str) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                f"""
                INSERT INTO {_T.audit} (todo_id, owner_id, operation, todo_hash, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    todo_id,
                    owner_id,
                    SyncOperation(operation).value,
                    todo_hash,
                    AuditStatus.PENDING.value,
                    _ts(utcnow()),
                ),
            )
            return int(cur.lastrowid)

    def complete_sync_attempt(
        self, entry_id: int, status: AuditStatus, tx_ref: Optional[str] = None, error: Optional[str] = None
    ) -> None:
        confirmed_at = _ts(utcnow()) if status == AuditStatus.CONFIRMED else None
        with self._conn() as conn:
            conn.execute(
                f"""
                UPDATE {_T.audit} SET status = ?, tx_ref = ?, error_message = ?, confirmed_at = ?
                WHERE id = ? AND status = ?
                """,
                (AuditStatus(status).value, tx_ref, error, confirmed_at, entry_id, AuditStatus.PENDING.value),
            )

    def list_sync_audit(self, todo_id: str, owner_id: str) -> List[SyncAuditEntry]:
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_T.audit} WHERE todo_id = ? AND owner_id = ? ORDER BY id DESC",
                (todo_id, owner_id),
            ).fetchall()
            return [self._row_to_audit(r) for r in rows]
