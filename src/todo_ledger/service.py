from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .errors import TodoNotFoundError
from .models import SyncAuditEntry, SyncOperation, TodoEntity
from .repositories import ListQuery, Repository
from .schemas import TodoCreate, TodoUpdate
from .sync import SyncOrchestrator
from .verification import VerificationResult, VerificationService

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
class TodoService:
    """
    Entry points for todo operations.

    Mutations commit to the primary store, hand the ledger write to the
    orchestrator and return the committed todo (``sync_status=pending``)
    without waiting for the ledger.
    """

    def __init__(self, repository: Repository, orchestrator: SyncOrchestrator, verifier: VerificationService) -> None:
        self._repo = repository
        self._orchestrator = orchestrator
        self._verifier = verifier

    def _committed(self, todo: Optional[TodoEntity], operation: SyncOperation) -> TodoEntity:
        if todo is None:
            raise TodoNotFoundError()
        logger.info("Todo %s committed (%s, revision %d); ledger sync queued", todo["id"], operation.value, todo["revision"])
        self._orchestrator.dispatch(todo["id"], operation)
        return todo

    def create_todo(self, owner_id: str, data: TodoCreate) -> TodoEntity:
        return self._committed(self._repo.create(owner_id, data), SyncOperation.CREATE)

    def update_todo(self, todo_id: str, owner_id: str, data: TodoUpdate) -> TodoEntity:
        return self._committed(self._repo.update_fields(todo_id, owner_id, data), SyncOperation.UPDATE)

    def replace_todo(self, todo_id: str, owner_id: str, data: TodoCreate) -> TodoEntity:
        """Overwrite every semantic field; omitted optional fields become null."""
        return self.update_todo(todo_id, owner_id, TodoUpdate(**data.model_dump()))

    def toggle_complete(self, todo_id: str, owner_id: str) -> TodoEntity:
        return self._committed(self._repo.toggle_complete(todo_id, owner_id), SyncOperation.UPDATE)

    def delete_todo(self, todo_id: str, owner_id: str) -> TodoEntity:
        return self._committed(self._repo.soft_delete(todo_id, owner_id), SyncOperation.DELETE)

    def restore_todo(self, todo_id: str, owner_id: str) -> TodoEntity:
        return self._committed(self._repo.restore(todo_id, owner_id), SyncOperation.RESTORE)

    def verify_todo(self, todo_id: str, owner_id: str) -> VerificationResult:
        return self._verifier.verify(todo_id, owner_id)

    def get_todo(self, todo_id: str, owner_id: str) -> TodoEntity:
        todo = self._repo.find_by_id(todo_id, owner_id)
        if todo is None:
            raise TodoNotFoundError()
        return todo

    def list_todos(self, owner_id: str, query: Optional[ListQuery] = None) -> Tuple[List[TodoEntity], int]:
        return self._repo.list(owner_id, query)

    def get_stats(self, owner_id: str) -> Dict[str, int]:
        return self._repo.stats(owner_id)

    def sync_history(self, todo_id: str, owner_id: str) -> List[SyncAuditEntry]:
        # Soft-deleted todos keep their history readable.
        if self._repo.find_by_id(todo_id, owner_id, include_deleted=True) is None:
            raise TodoNotFoundError()
        return self._repo.list_sync_audit(todo_id, owner_id)
