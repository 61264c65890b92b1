"""Background retry of failed and lost ledger syncs."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from .models import SyncStatus, TodoEntity
from .repositories import Repository, utcnow
from .settings import DEFAULT_BACKOFF_SCHEDULE
from .sync import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    scanned: int = 0
    retried: int = 0
    synced: int = 0
    failed: int = 0


def backoff_delay(retry_count: int, schedule: Sequence[int] = DEFAULT_BACKOFF_SCHEDULE) -> timedelta:
    """Wait before the next attempt; the schedule's last entry caps it."""
    if not schedule:
        return timedelta(0)
    index = min(max(retry_count, 0), len(schedule) - 1)
    return timedelta(seconds=schedule[index])


# PUBLIC_INTERFACE
class SyncSweeper:
    """
    Periodically retries todos whose ledger sync failed or was lost.

    - failed todos under the retry cap, once their backoff has elapsed
    - pending todos with no attempt for ``stale_pending_seconds`` (the
      process exited before their background sync ran)

    Retries go through ``SyncOrchestrator.sync`` so they share the per-todo
    lock with request-triggered syncs.
    """

    def __init__(
        self,
        repository: Repository,
        orchestrator: SyncOrchestrator,
        interval_seconds: float = 300.0,
        batch_size: int = 10,
        max_retries: int = 10,
        backoff_schedule: Sequence[int] = DEFAULT_BACKOFF_SCHEDULE,
        stale_pending_seconds: float = 900.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff_schedule = tuple(backoff_schedule)
        self.stale_pending_seconds = stale_pending_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._run_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def retry_cutoffs(self, now: datetime) -> List[datetime]:
        """Latest attempt time that is due at each retry count."""
        return [now - backoff_delay(i, self.backoff_schedule) for i in range(len(self.backoff_schedule))]

    def _retry(self, todo: TodoEntity, result: SweepResult) -> None:
        result.retried += 1
        outcome = self._orchestrator.sync(todo["id"])
        if outcome.status == SyncStatus.SYNCED:
            result.synced += 1
        elif outcome.status == SyncStatus.FAILED:
            result.failed += 1

    def run_once(self, owner_id: Optional[str] = None) -> SweepResult:
        """
        Run one sweep and return its counts. Overlapping calls run one after another.

        ``owner_id`` limits the sweep to one owner's todos (manual sweeps from
        the API); the background loop sweeps everyone.
        """
        with self._run_lock:
            result = SweepResult()
            now = self._clock()

            failed = self._repo.list_failed_syncs(
                self.max_retries, self.batch_size, self.retry_cutoffs(now), owner_id
            )
            result.scanned += len(failed)
            for todo in failed:
                self._retry(todo, result)

            cutoff = now - timedelta(seconds=self.stale_pending_seconds)
            stale = self._repo.list_stale_pending(cutoff, self.batch_size, owner_id)
            result.scanned += len(stale)
            for todo in stale:
                logger.info("Retrying sync of %s: pending since %s", todo["id"], todo["last_sync_attempt_at"] or todo["updated_at"])
                self._retry(todo, result)

            for todo in self.exhausted(self.batch_size, owner_id):
                logger.warning(
                    "Todo %s exceeded %d sync retries; last error: %s",
                    todo["id"], self.max_retries, todo["last_sync_error"],
                )

            logger.info(
                "Sync sweep finished: scanned=%d retried=%d synced=%d failed=%d",
                result.scanned, result.retried, result.synced, result.failed,
            )
            return result

    def exhausted(self, limit: int = 50, owner_id: Optional[str] = None) -> List[TodoEntity]:
        """Todos that failed ``max_retries`` times in a row and are no longer retried."""
        return self._repo.list_exhausted_syncs(self.max_retries, limit, owner_id)

    def start(self) -> None:
        """Start the sweep loop on a daemon thread (first sweep runs immediately)."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="sync-sweeper", daemon=True)
        self._thread.start()
        logger.info("Sync sweeper started (interval=%ss)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Sync sweeper stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                # A store outage must not kill the loop; the next tick retries.
                logger.exception("Sync sweep failed")
            self._stop_event.wait(self.interval_seconds)
