from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import AuditStatus, SyncOperation, SyncStatus, TodoPriority

# Shared type for incoming due_date which can be a date, datetime, or ISO8601 string
DueDateInput = Union[date, datetime, str]

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000


def _parse_due_date(value: Optional[DueDateInput]) -> Optional[datetime]:
    """
    Internal helper to normalize due_date input into a datetime (naive allowed).
    - If value is a string, attempt to parse via datetime.fromisoformat; if time is missing, set to 00:00.
    - If value is a date (not datetime), convert to datetime at 00:00.
    - If value is a datetime, return as-is.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return value

    if isinstance(value, date):
        # Promote a date to a datetime at midnight
        return datetime(value.year, value.month, value.day, 0, 0, 0)

    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(s)
        except ValueError:
            # If only a date is provided, convert to midnight
            try:
                d = date.fromisoformat(s)
                return datetime(d.year, d.month, d.day, 0, 0, 0)
            except ValueError as e:
                raise ValueError(
                    "Invalid due_date format. Use ISO8601 date or datetime string (e.g., '2025-01-31' or '2025-01-31T13:45:00')."
                ) from e

    raise ValueError("Invalid type for due_date; expected date, datetime, or ISO8601 string.")


def _clean_title(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    s = v.strip()
    if not (1 <= len(s) <= MAX_TITLE_LENGTH):
        raise ValueError("title length must be between 1 and 200 characters")
    return s


def _clean_description(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    s = v.strip()
    if len(s) > MAX_DESCRIPTION_LENGTH:
        raise ValueError("description must be at most 2000 characters")
    return s


# PUBLIC_INTERFACE
class TodoCreate(BaseModel):
    """
    Schema for creating a new Todo item.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Deploy contract",
                "description": "Push TodoRegistry to Sepolia",
                "priority": "high",
                "due_date": "2025-02-01",
            }
        }
    )

    title: str = Field(..., description="Short title for the todo item", min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, description="Optional detailed description")
    priority: TodoPriority = Field(default=TodoPriority.MEDIUM, description="low, medium, high or urgent")
    completed: bool = Field(default=False, description="Completion status flag")
    due_date: Optional[datetime] = Field(
        default=None,
        description="Due date/time of the todo item. Accepts ISO8601 date or datetime; dates are set to 00:00",
    )

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """
        Strip whitespace and enforce 1..200 length.
        """
        if v is None:
            raise ValueError("title is required")
        return _clean_title(v)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> Optional[str]:
        return _clean_description(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v: Optional[DueDateInput]) -> Optional[datetime]:
        """
        Normalize due_date from str/date/datetime to datetime.
        """
        return _parse_due_date(v)


# PUBLIC_INTERFACE
class TodoUpdate(BaseModel):
    """
    Schema for updating an existing Todo item.
    All fields are optional; only provided fields will be updated.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Deploy contract to mainnet",
                "priority": "urgent",
                "completed": True,
                "due_date": "2025-02-02T09:30:00",
            }
        }
    )

    title: Optional[str] = Field(default=None, description="Short title for the todo item", min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, description="Optional detailed description")
    priority: Optional[TodoPriority] = Field(default=None, description="low, medium, high or urgent")
    completed: Optional[bool] = Field(default=None, description="Completion status flag")
    due_date: Optional[datetime] = Field(
        default=None,
        description="Due date/time of the todo item. Accepts ISO8601 date or datetime; dates are set to 00:00",
    )

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        """
        If title is provided, strip whitespace and enforce 1..200 length.
        """
        return _clean_title(v)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> Optional[str]:
        return _clean_description(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v: Optional[DueDateInput]) -> Optional[datetime]:
        return _parse_due_date(v)


# PUBLIC_INTERFACE
class TodoOut(BaseModel):
    """
    Schema returned by the API for a Todo item, including its sync envelope.
    """

    id: str = Field(..., description="Unique identifier of the todo item (also the ledger key)")
    owner_id: str = Field(..., description="Owner identifier")
    title: str = Field(..., description="Short title for the todo item")
    description: Optional[str] = Field(default=None, description="Optional detailed description")
    priority: TodoPriority = Field(..., description="Priority level")
    completed: bool = Field(..., description="Completion status flag")
    completed_at: Optional[datetime] = Field(default=None, description="When the todo was completed")
    due_date: Optional[datetime] = Field(default=None, description="Due date/time as an ISO8601 datetime")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
    sync_status: SyncStatus = Field(..., description="Ledger sync status: pending, synced or failed")
    ledger_hash: Optional[str] = Field(default=None, description="Hash recorded on the ledger at the last sync")
    ledger_tx_ref: Optional[str] = Field(default=None, description="Transaction reference of the last sync")
    last_synced_at: Optional[datetime] = Field(default=None, description="Time of the last successful sync")
    last_sync_attempt_at: Optional[datetime] = Field(default=None, description="Time of the last sync attempt")
    sync_retry_count: int = Field(..., description="Consecutive failed sync attempts")
    last_sync_error: Optional[str] = Field(default=None, description="Error of the last failed attempt")


class LedgerMetaOut(BaseModel):
    owner: str = Field(..., description="Address that registered the record")
    timestamp: datetime = Field(..., description="Block time of the last write")
    deleted: bool = Field(..., description="Ledger-side deletion flag")


# PUBLIC_INTERFACE
class VerificationOut(BaseModel):
    """
    Result of comparing a todo's current content against its ledger record.
    """

    is_valid: bool = Field(..., description="True when the ledger holds the current content hash")
    primary_hash: str = Field(..., description="Hash recomputed from the stored todo")
    ledger_hash: str = Field(..., description="Hash held by the ledger")
    ledger_meta: LedgerMetaOut


class SyncAuditOut(BaseModel):
    id: int
    todo_id: str
    operation: SyncOperation
    todo_hash: str
    status: AuditStatus
    tx_ref: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None


class TodoStatsOut(BaseModel):
    total: int = Field(..., description="Live todos")
    completed: int = Field(..., description="Completed todos")
    pending: int = Field(..., description="Todos not yet completed")
    overdue: int = Field(..., description="Incomplete todos past their due date")


class SweepResultOut(BaseModel):
    scanned: int = Field(..., description="Candidates returned by the selection queries")
    retried: int = Field(..., description="Sync attempts made")
    synced: int = Field(..., description="Attempts that ended synced")
    failed: int = Field(..., description="Attempts that ended failed")


class SyncStatusOut(BaseModel):
    sweeper_running: bool
    interval_seconds: float
    max_retries: int
    batch_size: int
    exhausted: List[TodoOut] = Field(default_factory=list, description="Caller's todos past the retry cap")
