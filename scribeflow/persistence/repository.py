"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from ..contracts import WorkflowStatus
from .models import ChatMessage, StepInstance, WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    async def create_workflow(self, instance: WorkflowInstance) -> None:
        """Persist a new instance and its steps.

        Raises:
            ActiveWorkflowExistsError: The thread already has an active instance.
        """

    async def save_step(self, step: StepInstance) -> None:
        """Persist the current state of one step."""

    async def update_workflow(self, instance: WorkflowInstance) -> bool:
        """Persist status, current step pointer and timestamps of ``instance``.

        Only an instance that is still active in the store is written, so a
        concurrent abandon or completion is never undone. Returns whether the
        write happened.
        """

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowInstance]:
        """Retrieve the workflow instance by id."""

    async def get_active_workflow(self, thread_id: str) -> Optional[WorkflowInstance]:
        """Return the thread's active instance, if any."""

    async def get_workflow_status(self, workflow_id: str) -> Optional[WorkflowStatus]:
        """Return only the status column of an instance."""

    async def list_workflows(self, thread_id: Optional[str] = None) -> list[WorkflowInstance]:
        """Return persisted workflows (without steps), oldest first."""

    async def append_messages(self, messages: Sequence[ChatMessage]) -> None:
        """Append entries to their threads' message logs."""

    async def recent_messages(self, thread_id: str, limit: int) -> list[ChatMessage]:
        """Return the last ``limit`` log entries of a thread, oldest first."""
