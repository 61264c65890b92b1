from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..auth import get_current_owner
from ..models import SyncStatus, TodoPriority
from ..repositories import SORT_FIELDS, ListQuery
from ..schemas import (
    LedgerMetaOut,
    SyncAuditOut,
    TodoCreate,
    TodoOut,
    TodoStatsOut,
    TodoUpdate,
    VerificationOut,
)
from ..service import TodoService

router = APIRouter(
    prefix="/api/v1/todos",
    tags=["todos"],
)


class PaginationEnvelope(BaseModel):
    """
    Envelope for paginated list responses.
    """
    items: List[TodoOut] = Field(..., description="List of Todo items")
    total: int = Field(..., description="Total number of items matching the query")
    limit: int = Field(..., description="Limit applied to the query")
    offset: int = Field(..., description="Offset applied to the query")


def get_service(request: Request) -> TodoService:
    """
    Dependency returning the process-wide TodoService.
    """
    return request.app.state.context.service


def _normalize_sort(sort: Optional[str], order: Optional[str]) -> str:
    normalized_sort = (sort or "-created_at").strip().lower()
    field = normalized_sort.lstrip("-")
    if field not in SORT_FIELDS:
        field = "created_at"
        normalized_sort = "-created_at"
    # If order is set, override the direction on normalized_sort
    if order:
        ord_norm = order.strip().lower()
        if ord_norm not in {"asc", "desc"}:
            raise HTTPException(status_code=400, detail="order must be 'asc' or 'desc'")
        normalized_sort = f"-{field}" if ord_norm == "desc" else field
    return normalized_sort


# PUBLIC_INTERFACE
@router.post(
    "/",
    response_model=TodoOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create Todo",
    description=(
        "Create a new Todo item. The todo is committed immediately and returned with "
        "sync_status=pending; its ledger record is written in the background."
    ),
    responses={
        201: {"description": "Todo created successfully"},
        422: {"description": "Validation error"},
    },
)
def create_todo(
    payload: TodoCreate,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> TodoOut:
    created = service.create_todo(owner_id, payload)
    return TodoOut(**created)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.get(
    "/",
    response_model=PaginationEnvelope,
    summary="List Todos",
    description=(
        "List the caller's todos with optional filters and pagination.\n\n"
        "Query parameters:\n"
        "- limit: max number of items to return (0..1000)\n"
        "- offset: number of items to skip (>=0)\n"
        "- completed: filter by completion status\n"
        "- priority: filter by priority\n"
        "- sync_status: filter by ledger sync status\n"
        "- q: search query for title/description (substring match)\n"
        "- due_from / due_to: due date range (inclusive)\n"
        "- sort: one of created_at, -created_at, updated_at, -updated_at\n"
        "- order: asc or desc (if provided, it overrides the direction in sort)\n\n"
        "Returns a pagination envelope with items and total count."
    ),
    responses={
        200: {"description": "List retrieved successfully"},
        400: {"description": "Invalid query parameters"},
    },
)
def list_todos(
    limit: int = Query(50, ge=0, le=1000, description="Maximum number of items to return"),
    offset: int = Query(0, ge=0, description="Number of items to skip"),
    completed: Optional[bool] = Query(None, description="Filter by completion status"),
    priority: Optional[TodoPriority] = Query(None, description="Filter by priority"),
    sync_status: Optional[SyncStatus] = Query(None, description="Filter by ledger sync status"),
    q: Optional[str] = Query(None, description="Search text for title/description"),
    due_from: Optional[datetime] = Query(None, description="Earliest due date"),
    due_to: Optional[datetime] = Query(None, description="Latest due date"),
    sort: Optional[str] = Query(
        "-created_at",
        description="Sort by field: created_at, -created_at, updated_at, -updated_at",
    ),
    order: Optional[str] = Query(
        None, description="Override sort direction: 'asc' or 'desc'"
    ),
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> PaginationEnvelope:
    query = ListQuery(
        limit=limit,
        offset=offset,
        completed=completed,
        priority=priority.value if priority else None,
        sync_status=sync_status.value if sync_status else None,
        search=q.strip() if q else None,
        due_from=due_from,
        due_to=due_to,
        sort=_normalize_sort(sort, order),
    )
    items, total = service.list_todos(owner_id, query)
    return PaginationEnvelope(
        items=[TodoOut(**it) for it in items],  # type: ignore[arg-type]
        total=total,
        limit=limit,
        offset=offset,
    )


# PUBLIC_INTERFACE
@router.get(
    "/stats",
    response_model=TodoStatsOut,
    summary="Todo Statistics",
    description="Counts of the caller's live todos: total, completed, pending and overdue.",
)
def get_stats(
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> TodoStatsOut:
    return TodoStatsOut(**service.get_stats(owner_id))


# PUBLIC_INTERFACE
@router.get(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Get Todo",
    description="Get a single Todo item by ID, including its ledger sync envelope.",
    responses={
        200: {"description": "Todo found"},
        404: {"description": "Todo not found"},
    },
)
def get_todo(
    todo_id: str,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> TodoOut:
    return TodoOut(**service.get_todo(todo_id, owner_id))  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.put(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Replace Todo",
    description=(
        "Replace an existing Todo item. Any fields omitted will be set to their default/null "
        "equivalent as per the schema."
    ),
    responses={
        200: {"description": "Todo updated"},
        404: {"description": "Todo not found"},
    },
)
def put_todo(
    todo_id: str,
    payload: TodoCreate,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> TodoOut:
    updated = service.replace_todo(todo_id, owner_id, payload)
    return TodoOut(**updated)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.patch(
    "/{todo_id}",
    response_model=TodoOut,
    summary="Update Todo",
    description="Partially update fields of a Todo item. The ledger hash is refreshed in the background.",
    responses={
        200: {"description": "Todo updated"},
        404: {"description": "Todo not found"},
    },
)
def patch_todo(
    todo_id: str,
    payload: TodoUpdate,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> TodoOut:
    updated = service.update_todo(todo_id, owner_id, payload)
    return TodoOut(**updated)  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.patch(
    "/{todo_id}/toggle",
    response_model=TodoOut,
    summary="Toggle Completion",
    description="Flip the completion flag of a Todo item.",
    responses={
        200: {"description": "Todo toggled"},
        404: {"description": "Todo not found"},
    },
)
def toggle_todo(
    todo_id: str,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> TodoOut:
    return TodoOut(**service.toggle_complete(todo_id, owner_id))  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.delete(
    "/{todo_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Todo",
    description="Soft-delete a Todo item. The ledger record is flagged deleted in the background.",
    responses={
        204: {"description": "Todo deleted"},
        404: {"description": "Todo not found"},
    },
)
def delete_todo(
    todo_id: str,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> None:
    service.delete_todo(todo_id, owner_id)
    return None


# PUBLIC_INTERFACE
@router.post(
    "/{todo_id}/restore",
    response_model=TodoOut,
    summary="Restore Todo",
    description="Restore a soft-deleted Todo item.",
    responses={
        200: {"description": "Todo restored"},
        404: {"description": "Todo not found or not deleted"},
    },
)
def restore_todo(
    todo_id: str,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> TodoOut:
    return TodoOut(**service.restore_todo(todo_id, owner_id))  # type: ignore[arg-type]


# PUBLIC_INTERFACE
@router.get(
    "/{todo_id}/verify",
    response_model=VerificationOut,
    summary="Verify Todo",
    description=(
        "Recompute the todo's content hash and compare it with the hash held by the ledger. "
        "is_valid=false means the stored content changed without a matching ledger write."
    ),
    responses={
        200: {"description": "Verification result"},
        400: {"description": "Todo not yet synced to the ledger"},
        404: {"description": "Todo not found"},
        503: {"description": "Ledger unavailable"},
    },
)
def verify_todo(
    todo_id: str,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> VerificationOut:
    result = service.verify_todo(todo_id, owner_id)
    meta = result.ledger_meta
    return VerificationOut(
        is_valid=result.is_valid,
        primary_hash=result.primary_hash,
        ledger_hash=result.ledger_hash,
        ledger_meta=LedgerMetaOut(owner=meta.owner, timestamp=meta.timestamp, deleted=meta.deleted),
    )


# PUBLIC_INTERFACE
@router.get(
    "/{todo_id}/sync-history",
    response_model=List[SyncAuditOut],
    summary="Sync History",
    description="Ledger write attempts for a Todo item, newest first.",
    responses={
        200: {"description": "Audit entries"},
        404: {"description": "Todo not found"},
    },
)
def sync_history(
    todo_id: str,
    owner_id: str = Depends(get_current_owner),
    service: TodoService = Depends(get_service),
) -> List[SyncAuditOut]:
    return [SyncAuditOut(**entry) for entry in service.sync_history(todo_id, owner_id)]  # type: ignore[arg-type]
