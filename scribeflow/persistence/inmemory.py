"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from ..contracts import WorkflowStatus
from ..errors import ActiveWorkflowExistsError
from .models import ChatMessage, StepInstance, WorkflowInstance
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Instances are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._messages: Dict[str, List[ChatMessage]] = defaultdict(list)

    # ------------------------------------------------------------------
    async def create_workflow(self, instance: WorkflowInstance) -> None:
        if instance.status == WorkflowStatus.ACTIVE:
            for wf in self._workflows.values():
                if wf.thread_id == instance.thread_id and wf.status == WorkflowStatus.ACTIVE:
                    raise ActiveWorkflowExistsError(instance.thread_id)
        self._workflows[instance.id] = instance.model_copy(deep=True)

    async def save_step(self, step: StepInstance) -> None:
        wf = self._workflows.get(step.workflow_id)
        if not wf:
            return
        for index, existing in enumerate(wf.steps):
            if existing.id == step.id:
                wf.steps[index] = step.model_copy(deep=True)
                return
        wf.steps.append(step.model_copy(deep=True))
        wf.steps.sort(key=lambda s: s.order)

    async def update_workflow(self, instance: WorkflowInstance) -> bool:
        wf = self._workflows.get(instance.id)
        if not wf or wf.status != WorkflowStatus.ACTIVE:
            return False
        wf.status = instance.status
        wf.current_step_id = instance.current_step_id
        wf.updated_at = instance.updated_at
        return True

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowInstance]:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def get_active_workflow(self, thread_id: str) -> Optional[WorkflowInstance]:
        for wf in self._workflows.values():
            if wf.thread_id == thread_id and wf.status == WorkflowStatus.ACTIVE:
                return wf.model_copy(deep=True)
        return None

    async def get_workflow_status(self, workflow_id: str) -> Optional[WorkflowStatus]:
        wf = self._workflows.get(workflow_id)
        return wf.status if wf else None

    async def list_workflows(self, thread_id: Optional[str] = None) -> list[WorkflowInstance]:
        return [
            wf.model_copy(update={"steps": []})
            for wf in sorted(self._workflows.values(), key=lambda w: w.created_at)
            if thread_id is None or wf.thread_id == thread_id
        ]

    async def append_messages(self, messages: Sequence[ChatMessage]) -> None:
        for message in messages:
            self._messages[message.thread_id].append(message.model_copy())

    async def recent_messages(self, thread_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        return [m.model_copy() for m in self._messages.get(thread_id, [])[-limit:]]
