from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .ledger import Ledger, get_ledger
from .repositories import Repository, get_repository
from .service import TodoService
from .settings import Settings
from .sweeper import SyncSweeper
from .sync import SyncOrchestrator
from .verification import VerificationService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Process-wide components shared by the HTTP layer."""

    settings: Settings
    repository: Repository
    ledger: Ledger
    orchestrator: SyncOrchestrator
    verifier: VerificationService
    sweeper: SyncSweeper
    service: TodoService

    def start(self) -> None:
        if self.settings.sync_sweeper_enabled:
            self.sweeper.start()

    def close(self) -> None:
        self.sweeper.stop()
        self.orchestrator.shutdown()


# PUBLIC_INTERFACE
def build_context(
    settings: Settings,
    repository: Optional[Repository] = None,
    ledger: Optional[Ledger] = None,
) -> AppContext:
    """
    Assemble the components in dependency order: store, ledger client,
    orchestrator, verifier, sweeper, service. Explicit ``repository`` and
    ``ledger`` instances replace the configured backends.
    """
    repository = repository or get_repository(settings)
    ledger = ledger or get_ledger(settings)
    orchestrator = SyncOrchestrator(repository, ledger, max_workers=settings.sync_workers)
    verifier = VerificationService(repository, ledger)
    sweeper = SyncSweeper(
        repository,
        orchestrator,
        interval_seconds=settings.sync_sweep_interval_seconds,
        batch_size=settings.sync_sweep_batch_size,
        max_retries=settings.sync_max_retries,
        backoff_schedule=settings.sync_backoff_schedule,
        stale_pending_seconds=settings.sync_stale_pending_seconds,
    )
    service = TodoService(repository, orchestrator, verifier)
    logger.info(
        "Context ready: store=%s ledger=%s signer=%s",
        settings.persistence_backend, settings.ledger_backend, ledger.signer_address,
    )
    return AppContext(
        settings=settings,
        repository=repository,
        ledger=ledger,
        orchestrator=orchestrator,
        verifier=verifier,
        sweeper=sweeper,
        service=service,
    )
