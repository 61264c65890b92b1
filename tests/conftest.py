from datetime import datetime, timezone

import pytest

from todo_ledger.db import SQLiteRepository
from todo_ledger.ledger import InMemoryLedger
from todo_ledger.repositories import InMemoryRepository
from todo_ledger.settings import Settings
from todo_ledger.sync import SyncOrchestrator


def make_settings(**overrides) -> Settings:
    values = dict(
        persistence_backend="memory",
        sqlite_db_path=":memory:",
        cors_allow_origins=["*"],
        enable_basic_auth=False,
        basic_auth_username=None,
        basic_auth_password=None,
        sync_sweeper_enabled=False,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


def make_todo(**overrides) -> dict:
    todo = {
        "id": "todo-1",
        "owner_id": "alice",
        "title": "Write report",
        "description": "Quarterly numbers",
        "priority": "high",
        "completed": False,
        "due_date": datetime(2025, 3, 1, 17, 0, tzinfo=timezone.utc),
        "created_at": datetime(2025, 1, 15, 9, 30, 12, 345678, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 1, 15, 9, 30, 12, 345678, tzinfo=timezone.utc),
        "sync_status": "pending",
    }
    todo.update(overrides)
    return todo


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteRepository(str(tmp_path / "todos.db"))
    return InMemoryRepository()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def orchestrator(repo, ledger):
    orch = SyncOrchestrator(repo, ledger, max_workers=2)
    yield orch
    orch.shutdown()
