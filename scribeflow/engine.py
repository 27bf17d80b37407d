"""Workflow state machine and step scheduler."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_STALLED_MESSAGE
from .contracts import (
    StepOutcome,
    StepResult,
    StepStatus,
    StepType,
    WorkflowStatus,
    WorkflowTemplate,
)
from .errors import StalledWorkflowError
from .persistence.models import StepInstance, StepMetadata, WorkflowInstance
from .persistence.repository import WorkflowRepository
from .protocol import StepResponseProtocol
from .retrieval.service import RetrievalService
from .security.context import RequesterContext

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TurnResult(BaseModel):
    """What one engine turn did to a workflow instance."""

    workflow_id: str
    status: WorkflowStatus
    messages: List[str] = Field(default_factory=list)
    current_step: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    final_outcome: Optional[StepOutcome] = None
    stalled: bool = False
    discarded: bool = False
    degraded: bool = False

    @property
    def text(self) -> str:
        return "\n\n".join(m for m in self.messages if m)


def select_step(instance: WorkflowInstance) -> Optional[StepInstance]:
    """Return the lowest-ordered unfinished step whose dependencies are all complete."""
    status_by_name = {s.name: s.status for s in instance.steps}
    candidates = [
        s
        for s in instance.steps
        if s.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS)
        and all(status_by_name.get(dep) == StepStatus.COMPLETE for dep in s.dependencies)
    ]
    return min(candidates, key=lambda s: s.order) if candidates else None


def dependency_state(instance: WorkflowInstance, step: StepInstance) -> Dict[str, Any]:
    """Merge the collected information of ``step``'s transitive dependencies.

    Earlier steps are merged first so later ones win on key conflicts.
    """
    by_name = {s.name: s for s in instance.steps}
    seen: set[str] = set()
    pending = list(step.dependencies)
    while pending:
        name = pending.pop()
        if name in seen or name not in by_name:
            continue
        seen.add(name)
        pending.extend(by_name[name].dependencies)

    state: Dict[str, Any] = {}
    for dep in sorted((by_name[n] for n in seen), key=lambda s: s.order):
        if dep.status == StepStatus.COMPLETE:
            state.update(dep.metadata.collected)
    return state


def _emitted_content(step: StepInstance, baseline: Dict[str, Any]) -> Optional[str]:
    """Return the step's emit field when the step produced a new value for it."""
    field = step.instructions.emit_field
    if not field:
        return None
    value = step.metadata.collected.get(field)
    if isinstance(value, str) and value.strip() and value != baseline.get(field):
        return value
    return None


def workflow_state(instance: WorkflowInstance) -> Dict[str, Any]:
    """Collected information of every step, in step order."""
    state: Dict[str, Any] = {}
    for step in sorted(instance.steps, key=lambda s: s.order):
        state.update(step.metadata.collected)
    return state


class WorkflowEngine:
    """Advances workflow instances one user turn at a time."""

    def __init__(
        self,
        repository: WorkflowRepository,
        protocol: StepResponseProtocol,
        retrieval: Optional[RetrievalService] = None,
        stalled_message: str = DEFAULT_STALLED_MESSAGE,
    ) -> None:
        self.repository = repository
        self.protocol = protocol
        self.retrieval = retrieval
        self.stalled_message = stalled_message

    async def create_instance(
        self,
        thread_id: str,
        template: WorkflowTemplate,
        seed: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Create and persist an active instance of ``template`` on ``thread_id``.

        ``seed`` pre-fills the collected information of the first step.
        """
        instance = WorkflowInstance(
            thread_id=thread_id,
            template_id=template.id,
            template_name=template.name,
        )
        for order, definition in enumerate(template.steps):
            instance.steps.append(
                StepInstance(
                    workflow_id=instance.id,
                    name=definition.name,
                    order=order,
                    type=definition.type,
                    prompt=definition.prompt,
                    dependencies=set(definition.dependencies),
                    instructions=definition.metadata,
                    metadata=StepMetadata(collected=dict(seed or {}) if order == 0 else {}),
                )
            )
        first = select_step(instance)
        instance.current_step_id = first.id if first else None
        await self.repository.create_workflow(instance)
        logger.info(
            f"Created workflow {instance.id} ({template.name}) on thread {thread_id}"
        )
        return instance

    async def start(
        self, instance: WorkflowInstance, requester: Optional[RequesterContext] = None
    ) -> TurnResult:
        """Advance a fresh instance without user input."""
        return await self._advance(instance, None, requester)

    async def process_message(
        self,
        instance: WorkflowInstance,
        user_input: str,
        requester: Optional[RequesterContext] = None,
    ) -> TurnResult:
        """Apply one user message to ``instance`` and run any automated steps it unlocks."""
        return await self._advance(instance, user_input, requester)

    async def abandon(self, workflow_id: str) -> Optional[WorkflowInstance]:
        """Move an active instance to ``abandoned``; in-progress steps fail."""
        instance = await self.repository.get_workflow(workflow_id)
        if instance is None:
            return None
        if instance.status != WorkflowStatus.ACTIVE:
            return instance
        for step in instance.steps:
            if step.status == StepStatus.IN_PROGRESS:
                step.status = StepStatus.FAILED
                step.updated_at = _now()
                await self.repository.save_step(step)
        instance.status = WorkflowStatus.ABANDONED
        instance.updated_at = _now()
        if not await self._commit(instance):
            return instance
        logger.info(f"Abandoned workflow {workflow_id}")
        return instance

    # ------------------------------------------------------------------
    async def _commit(self, instance: WorkflowInstance) -> bool:
        """Persist ``instance`` unless it stopped being active in the store.

        On a lost race ``instance.status`` is refreshed from the store.
        """
        if await self.repository.update_workflow(instance):
            return True
        status = await self.repository.get_workflow_status(instance.id)
        if status is not None:
            instance.status = status
        return False

    def _result(self, instance: WorkflowInstance, messages: List[str], **kwargs) -> TurnResult:
        current = instance.current_step
        return TurnResult(
            workflow_id=instance.id,
            status=instance.status,
            messages=messages,
            current_step=current.name if current else None,
            **kwargs,
        )

    def _discarded(
        self, instance: WorkflowInstance, messages: List[str], completed: List[str]
    ) -> TurnResult:
        logger.info(f"Workflow {instance.id} was abandoned mid-turn; result discarded")
        return self._result(instance, messages, completed_steps=completed, discarded=True)

    async def _advance(
        self,
        instance: WorkflowInstance,
        user_input: Optional[str],
        requester: Optional[RequesterContext],
    ) -> TurnResult:
        if instance.status != WorkflowStatus.ACTIVE:
            raise ValueError(f"Workflow {instance.id} is {instance.status.value}, not active")

        messages: List[str] = []
        completed: List[str] = []
        final_outcome = None
        degraded = False
        user_text = user_input

        step = select_step(instance)
        while step is not None:
            automated = step.type == StepType.AUTOMATED_ACTION
            if automated:
                if step.prompt and not step.metadata.prompt_sent:
                    messages.append(step.prompt)
                    step.metadata.prompt_sent = True
                input_text = None
            elif user_text is None:
                if not await self._await_user(instance, step, messages):
                    return self._discarded(instance, messages, completed)
                break
            else:
                input_text = user_text

            # Input is consumed by the first step that runs this turn.
            user_text = None
            running = {**dependency_state(instance, step), **step.metadata.collected}
            result = await self._run_step(instance, step, input_text, requester, running)
            if result is None:
                return self._discarded(instance, messages, completed)
            degraded = degraded or result.degraded
            emitted = _emitted_content(step, running)
            if emitted:
                messages.append(emitted)

            if step.status != StepStatus.COMPLETE:
                messages.append(result.outcome.next_question)
                break

            completed.append(step.name)
            final_outcome = result.outcome
            logger.info(f"Step {step.name!r} of workflow {instance.id} completed")
            step = select_step(instance)
        else:
            return await self._settle(instance, messages, completed, final_outcome, degraded)

        return self._result(
            instance,
            messages,
            completed_steps=completed,
            final_outcome=final_outcome,
            degraded=degraded,
        )

    async def _await_user(
        self, instance: WorkflowInstance, step: StepInstance, messages: List[str]
    ) -> bool:
        changed = instance.current_step_id != step.id
        instance.current_step_id = step.id
        if not step.metadata.prompt_sent:
            if step.prompt:
                messages.append(step.prompt)
            step.metadata.prompt_sent = True
            step.status = StepStatus.IN_PROGRESS
            step.updated_at = _now()
            await self.repository.save_step(step)
            changed = True
        if changed:
            instance.updated_at = _now()
            return await self._commit(instance)
        return True

    async def _settle(
        self,
        instance: WorkflowInstance,
        messages: List[str],
        completed: List[str],
        final_outcome: Optional[StepOutcome],
        degraded: bool,
    ) -> TurnResult:
        unfinished = [s.name for s in instance.steps if s.status != StepStatus.COMPLETE]
        if not unfinished:
            instance.status = WorkflowStatus.COMPLETED
            instance.updated_at = _now()
            if not await self._commit(instance):
                return self._discarded(instance, messages, completed)
            logger.info(f"Workflow {instance.id} ({instance.template_name}) completed")
            return self._result(
                instance,
                messages,
                completed_steps=completed,
                final_outcome=final_outcome,
                degraded=degraded,
            )

        error = StalledWorkflowError(instance.id, unfinished)
        logger.error(str(error))
        await self.abandon(instance.id)
        instance.status = WorkflowStatus.ABANDONED
        messages.append(self.stalled_message)
        return self._result(
            instance, messages, completed_steps=completed, stalled=True, degraded=degraded
        )

    async def _run_step(
        self,
        instance: WorkflowInstance,
        step: StepInstance,
        user_input: Optional[str],
        requester: Optional[RequesterContext],
        running: Dict[str, Any],
    ) -> Optional[StepResult]:
        """Run the protocol for ``step`` and commit the result.

        Returns ``None`` when the instance was abandoned while the step ran.
        """
        previous = dict(step.metadata.collected)
        step.status = StepStatus.IN_PROGRESS
        step.updated_at = _now()
        instance.current_step_id = step.id
        instance.updated_at = step.updated_at
        await self.repository.save_step(step)
        if not await self._commit(instance):
            return None

        bundle = None
        if self.retrieval is not None and requester is not None:
            bundle = await self.retrieval.get_context(
                requester, instance.template_name, step.name, user_input or ""
            )

        result = await self.protocol.process(
            step, user_input, bundle, running, workflow_name=instance.template_name
        )

        status = await self.repository.get_workflow_status(instance.id)
        if status != WorkflowStatus.ACTIVE:
            if status is not None:
                instance.status = status
            return None

        response = result.response
        step.metadata.attempts += result.attempts
        step.metadata.collected = {**previous, **response.collected_information}
        step.status = StepStatus.COMPLETE if response.is_complete else StepStatus.IN_PROGRESS
        step.updated_at = _now()
        await self.repository.save_step(step)
        instance.updated_at = step.updated_at
        if not await self._commit(instance):
            return None

        return result
