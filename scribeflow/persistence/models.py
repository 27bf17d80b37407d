"""Data models for persisted workflow state and the thread message log."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import StepInstructions, StepStatus, StepType, WorkflowStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class StepMetadata(BaseModel):
    """Engine bookkeeping for one step."""

    prompt_sent: bool = False
    collected: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0


class StepInstance(BaseModel):
    """Runtime state of one template step inside a workflow instance."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    name: str
    order: int
    type: StepType
    prompt: str = ""
    status: StepStatus = StepStatus.PENDING
    dependencies: set[str] = Field(default_factory=set)
    instructions: StepInstructions = Field(default_factory=StepInstructions)
    metadata: StepMetadata = Field(default_factory=StepMetadata)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETE, StepStatus.FAILED)


class WorkflowInstance(BaseModel):
    """Persisted workflow instance bound to a chat thread."""

    id: str = Field(default_factory=_new_id)
    thread_id: str
    template_id: str
    template_name: str
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    current_step_id: Optional[str] = None
    steps: list[StepInstance] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def step(self, name: str) -> Optional[StepInstance]:
        return next((s for s in self.steps if s.name == name), None)

    def step_by_id(self, step_id: str) -> Optional[StepInstance]:
        return next((s for s in self.steps if s.id == step_id), None)

    @property
    def current_step(self) -> Optional[StepInstance]:
        return self.step_by_id(self.current_step_id) if self.current_step_id else None


class ChatMessage(BaseModel):
    """One entry of a thread's message log."""

    id: str = Field(default_factory=_new_id)
    thread_id: str
    role: Literal["user", "assistant"]
    content: str
    message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
