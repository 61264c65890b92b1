from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request

from ..auth import get_current_owner
from ..schemas import SweepResultOut, SyncStatusOut, TodoOut
from ..sweeper import SyncSweeper

router = APIRouter(
    prefix="/api/v1/sync",
    tags=["sync"],
)


def get_sweeper(request: Request) -> SyncSweeper:
    return request.app.state.context.sweeper


# PUBLIC_INTERFACE
@router.get(
    "/status",
    response_model=SyncStatusOut,
    summary="Sync Status",
    description="Sweeper configuration and the caller's todos whose ledger sync exhausted its retries.",
)
def sync_status(
    limit: int = Query(50, ge=0, le=1000, description="Maximum number of exhausted todos to return"),
    owner_id: str = Depends(get_current_owner),
    sweeper: SyncSweeper = Depends(get_sweeper),
) -> SyncStatusOut:
    return SyncStatusOut(
        sweeper_running=sweeper.running,
        interval_seconds=sweeper.interval_seconds,
        max_retries=sweeper.max_retries,
        batch_size=sweeper.batch_size,
        exhausted=[TodoOut(**t) for t in sweeper.exhausted(limit, owner_id)],  # type: ignore[arg-type]
    )


# PUBLIC_INTERFACE
@router.post(
    "/sweep",
    response_model=SweepResultOut,
    summary="Run Sweep",
    description=(
        "Retry the caller's failed and stale pending syncs now instead of waiting for the "
        "next interval. Other owners' todos are left to the background sweeper."
    ),
)
def run_sweep(
    owner_id: str = Depends(get_current_owner),
    sweeper: SyncSweeper = Depends(get_sweeper),
) -> SweepResultOut:
    return SweepResultOut(**asdict(sweeper.run_once(owner_id)))
