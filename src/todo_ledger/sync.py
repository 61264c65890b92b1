"""Ledger sync orchestrator.

Primary-store commits happen on the request thread; the ledger write that
mirrors them runs here, on a worker pool the request never waits for.

Every attempt, whether dispatched after a mutation or retried by the
sweeper, goes through ``_attempt``:

1. read the todo (including soft-deleted ones) and stamp the attempt,
2. hash its semantic fields,
3. push the ledger towards that state (create / restore / update / delete),
4. write the outcome into the sync envelope.

Ledger failures end the attempt as ``failed`` on the envelope. They are
never raised to whoever triggered the sync.
"""

from __future__ import annotations

import logging
import time

from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from .errors import LedgerRecordExistsError, LedgerRecordNotFoundError
from .hashing import compute_hash
from .ledger import Ledger
from .models import AuditStatus, LedgerRecord, SyncEnvelopePatch, SyncOperation, SyncStatus, TodoEntity
from .repositories import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one sync attempt."""

    todo_id: str
    status: Optional[SyncStatus]
    operations: Tuple[SyncOperation, ...] = ()
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    applied: bool = False


class _IdLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = Lock()
        self.users = 0


class SyncOrchestrator:
    """Runs ledger syncs in the background, one at a time per todo.

    - ``dispatch()`` queues a sync and returns at once. A todo that already
      has a queued, not yet started job shares it: the job reads the store
      when it starts, so it carries every commit made before then.
    - ``sync()`` runs an attempt on the calling thread (used by the sweeper).
    - A per-todo lock keeps at most one ledger write in flight per todo while
      unrelated todos sync concurrently.
    """

    def __init__(self, repository: Repository, ledger: Ledger, max_workers: int = 4) -> None:
        self._repo = repository
        self._ledger = ledger
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ledger-sync")
        self._registry_lock = Lock()
        self._id_locks: Dict[str, _IdLock] = {}
        self._queued: Dict[str, Tuple[object, Future]] = {}
        self._futures: Set[Future] = set()
        self._closed = False

    @contextmanager
    def _locked(self, todo_id: str) -> Iterator[None]:
        """Hold the per-todo lock; the entry is dropped when its last user leaves."""
        with self._registry_lock:
            entry = self._id_locks.get(todo_id)
            if entry is None:
                entry = self._id_locks[todo_id] = _IdLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._id_locks[todo_id]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def dispatch(self, todo_id: str, operation: SyncOperation) -> Optional[Future]:
        """Queue a background sync. Returns None once the orchestrator is shut down."""
        with self._registry_lock:
            if self._closed:
                logger.warning("Sync of %s (%s) not dispatched: orchestrator is shut down", todo_id, operation.value)
                return None
            queued = self._queued.get(todo_id)
            if queued is not None:
                logger.debug("Sync of %s (%s) joined an already queued job", todo_id, operation.value)
                return queued[1]
            token = object()
            future = self._executor.submit(self._run_queued, todo_id, operation, token)
            self._queued[todo_id] = (token, future)
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._registry_lock:
            self._futures.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Background ledger sync crashed", exc_info=future.exception())

    def _run_queued(self, todo_id: str, operation: SyncOperation, token: object) -> SyncOutcome:
        with self._locked(todo_id):
            with self._registry_lock:
                queued = self._queued.get(todo_id)
                if queued is not None and queued[0] is token:
                    del self._queued[todo_id]
            return self._attempt(todo_id, operation)

    def sync(self, todo_id: str, operation: Optional[SyncOperation] = None) -> SyncOutcome:
        """Run one attempt on the calling thread, serialized with background jobs."""
        with self._locked(todo_id):
            return self._attempt(todo_id, operation)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no sync job is queued or running. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._registry_lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                return True
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            _, not_done = wait(pending, timeout=remaining)
            if not_done:
                return False

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        """Stop accepting work; interrupted todos stay pending for the sweeper."""
        with self._registry_lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_jobs)

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    def _attempt(self, todo_id: str, requested: Optional[SyncOperation]) -> SyncOutcome:
        todo = self._repo.mark_sync_attempt(todo_id)
        if todo is None:
            logger.warning("Sync skipped: todo %s no longer exists", todo_id)
            return SyncOutcome(todo_id=todo_id, status=None)

        revision = todo["revision"]
        todo_hash = compute_hash(todo)
        performed: List[SyncOperation] = []
        logger.info(
            "Syncing todo %s to ledger (requested=%s, revision=%d, hash=%s)",
            todo_id, requested.value if requested else "retry", revision, todo_hash,
        )

        try:
            tx_ref = self._push(todo, todo_hash, performed)
        except Exception as exc:  # recorded on the envelope for the sweeper
            error = str(exc) or exc.__class__.__name__
            logger.error(
                "Ledger sync failed for %s after %s: %s",
                todo_id, [op.value for op in performed] or "no writes", error,
            )
            self._repo.update_sync_envelope(todo_id, SyncEnvelopePatch(status=SyncStatus.FAILED, error=error))
            return SyncOutcome(
                todo_id=todo_id, status=SyncStatus.FAILED, operations=tuple(performed), error=error, applied=True
            )

        updated = self._repo.update_sync_envelope(
            todo_id,
            SyncEnvelopePatch(status=SyncStatus.SYNCED, ledger_hash=todo_hash, tx_ref=tx_ref),
            expected_revision=revision,
        )
        if updated is None:
            # The todo changed while the ledger write was in flight; the sync
            # dispatched for that change will push the newer content.
            logger.info("Ledger sync of %s superseded by a newer revision", todo_id)
            return SyncOutcome(
                todo_id=todo_id, status=SyncStatus.PENDING, operations=tuple(performed), tx_ref=tx_ref
            )

        logger.info(
            "Todo %s synced to ledger (ops=%s, tx=%s)", todo_id, [op.value for op in performed], tx_ref
        )
        return SyncOutcome(
            todo_id=todo_id, status=SyncStatus.SYNCED, operations=tuple(performed), tx_ref=tx_ref, applied=True
        )

    def _push(self, todo: TodoEntity, todo_hash: str, performed: List[SyncOperation]) -> Optional[str]:
        """Bring the ledger record in line with ``todo``; return the last tx reference."""
        todo_id = todo["id"]
        tx_ref: Optional[str] = None

        record: Optional[LedgerRecord] = None
        if todo["ledger_hash"] is not None:
            record = self._lookup(todo_id)

        if record is None:
            # Never synced: create. A record that already exists means an
            # earlier create confirmed but its envelope write was lost.
            try:
                tx_ref = self._write(todo, SyncOperation.CREATE, todo_hash, performed, self._ledger.create, todo_hash)
                record = LedgerRecord(
                    todo_id=todo_id,
                    todo_hash=todo_hash,
                    owner=self._ledger.signer_address,
                    timestamp=datetime.now(timezone.utc),
                    deleted=False,
                )
            except LedgerRecordExistsError:
                logger.info("Ledger already holds %s; reconciling instead of creating", todo_id)
                record = self._ledger.get(todo_id)

        hash_differs = record.todo_hash.lower() != todo_hash.lower()
        ledger_deleted = record.deleted

        if ledger_deleted and (not todo["is_deleted"] or hash_differs):
            tx_ref = self._write(todo, SyncOperation.RESTORE, todo_hash, performed, self._ledger.restore)
            ledger_deleted = False
        if hash_differs:
            tx_ref = self._write(todo, SyncOperation.UPDATE, todo_hash, performed, self._ledger.update, todo_hash)
        if todo["is_deleted"] and not ledger_deleted:
            tx_ref = self._write(todo, SyncOperation.DELETE, todo_hash, performed, self._ledger.delete)
        return tx_ref

    def _lookup(self, todo_id: str) -> Optional[LedgerRecord]:
        try:
            return self._ledger.get(todo_id)
        except LedgerRecordNotFoundError:
            logger.warning("Todo %s has a recorded ledger hash but no ledger record", todo_id)
            return None

    def _write(
        self,
        todo: TodoEntity,
        operation: SyncOperation,
        todo_hash: str,
        performed: List[SyncOperation],
        call: Callable[..., str],
        *args: Any,
    ) -> str:
        """Run one ledger write bracketed by an audit entry."""
        entry_id = self._repo.record_sync_attempt(todo["id"], todo["owner_id"], operation, todo_hash)
        try:
            tx_ref = call(todo["id"], *args)
        except Exception as exc:
            self._repo.complete_sync_attempt(entry_id, AuditStatus.FAILED, error=str(exc) or exc.__class__.__name__)
            raise
        self._repo.complete_sync_attempt(entry_id, AuditStatus.CONFIRMED, tx_ref=tx_ref)
        performed.append(operation)
        return tx_ref
