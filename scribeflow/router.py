"""Completion and cross-workflow handoff routing."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .constants import DEFAULT_COMPLETION_MESSAGE, MAX_HANDOFF_CHAIN
from .contracts import HandoffOutcome, WorkflowStatus, WorkflowTemplate
from .engine import TurnResult, WorkflowEngine, workflow_state
from .errors import ActiveWorkflowExistsError, UnknownTemplateError
from .persistence.models import WorkflowInstance
from .registry import TemplateRegistry
from .security.context import RequesterContext

logger = logging.getLogger(__name__)

GENERATED_CONTENT_KEY = "generatedAsset"


class HandoffResult(BaseModel):
    """Outward messages produced once a workflow completed."""

    messages: List[str] = Field(default_factory=list)
    handed_off: bool = False
    target_template: Optional[str] = None
    new_workflow: Optional[WorkflowInstance] = None
    stalled: bool = False


def build_carryover(
    source: WorkflowInstance, target: WorkflowTemplate, keys: Sequence[str]
) -> Dict[str, Any]:
    """Information seeded into the first step of the workflow a handoff starts."""
    state = workflow_state(source)
    seed: Dict[str, Any] = {key: state[key] for key in keys if key in state}
    previous = state.get(GENERATED_CONTENT_KEY)
    if previous:
        seed["previousContent"] = previous
    seed["assetType"] = target.name
    seed["carriedOverFrom"] = source.template_name
    return seed


class HandoffRouter:
    """Decides what happens after a workflow instance reaches ``completed``."""

    def __init__(
        self,
        registry: TemplateRegistry,
        engine: WorkflowEngine,
        carryover_keys: Sequence[str] = (),
        default_message: str = DEFAULT_COMPLETION_MESSAGE,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.carryover_keys = list(carryover_keys)
        self.default_message = default_message

    def _completion(self, instance: WorkflowInstance) -> HandoffResult:
        template = self.registry.get_template(instance.template_id)
        message = (template.completion_message if template else None) or self.default_message
        return HandoffResult(messages=[message])

    async def on_completed(
        self,
        instance: WorkflowInstance,
        turn: TurnResult,
        requester: Optional[RequesterContext] = None,
        depth: int = 0,
    ) -> HandoffResult:
        """Completion message, or the opening of the workflow ``turn`` hands off to.

        A target that completes while starting is routed in turn, at most
        ``MAX_HANDOFF_CHAIN`` times; one that stalls reports the stalled message.
        """
        if instance.status != WorkflowStatus.COMPLETED:
            raise ValueError(f"Workflow {instance.id} has not completed")

        outcome = turn.final_outcome
        if not isinstance(outcome, HandoffOutcome):
            return self._completion(instance)

        source = self.registry.get_template(instance.template_id)
        if source is not None and not source.handoff_enabled:
            logger.info(
                f"Template {source.name!r} does not allow handoffs; ignoring request "
                f"for {outcome.target_template!r}"
            )
            return self._completion(instance)

        target = self.registry.resolve(outcome.target_template)
        if target is None:
            logger.warning(str(UnknownTemplateError(outcome.target_template)))
            return self._completion(instance)

        seed = build_carryover(instance, target, self.carryover_keys)
        try:
            new_instance = await self.engine.create_instance(instance.thread_id, target, seed)
        except ActiveWorkflowExistsError:
            logger.error(
                f"Cannot hand off thread {instance.thread_id} to {target.name!r}: "
                "another workflow is already active"
            )
            return self._completion(instance)

        logger.info(
            f"Handoff on thread {instance.thread_id}: {instance.template_name} -> {target.name}"
        )
        start = await self.engine.start(new_instance, requester)
        result = HandoffResult(
            messages=list(start.messages),
            handed_off=True,
            target_template=target.name,
            new_workflow=new_instance,
            stalled=start.stalled,
        )
        if start.stalled:
            logger.warning(f"Handoff target {target.name!r} stalled on thread {instance.thread_id}")
        elif start.status == WorkflowStatus.COMPLETED:
            if depth + 1 >= MAX_HANDOFF_CHAIN:
                logger.warning(
                    f"Handoff chain on thread {instance.thread_id} reached "
                    f"{MAX_HANDOFF_CHAIN} handoffs; stopping at {target.name!r}"
                )
                follow = self._completion(new_instance)
            else:
                follow = await self.on_completed(new_instance, start, requester, depth + 1)
            result.messages.extend(follow.messages)
            result.stalled = follow.stalled
            if follow.new_workflow is not None:
                result.new_workflow = follow.new_workflow
                result.target_template = follow.target_template
        return result
