"""Core contracts shared by the registry, engine, protocol and orchestrator."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .security.classifier import SecurityLevel


class StepType(str, Enum):
    DIALOG_COLLECTION = "dialog_collection"
    AUTOMATED_ACTION = "automated_action"
    USER_ACKNOWLEDGEMENT = "user_acknowledgement"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


# ----------------------------------------------------------------------
# Template definitions


class StepInstructions(BaseModel):
    """Opaque instruction text for one step, passed through to the model."""

    model_config = ConfigDict(frozen=True)

    goal: Optional[str] = None
    base_instructions: Optional[str] = None
    generation_templates: Dict[str, str] = Field(default_factory=dict)
    asset_type_field: str = "assetType"
    default_generation_template: Optional[str] = None
    emit_field: Optional[str] = None


class StepDefinition(BaseModel):
    """One step of a workflow template."""

    model_config = ConfigDict(frozen=True)

    type: StepType
    name: str
    description: str = ""
    prompt: str = ""
    dependencies: FrozenSet[str] = Field(default_factory=frozenset)
    metadata: StepInstructions = Field(default_factory=StepInstructions)


class WorkflowTemplate(BaseModel):
    """Immutable definition of an ordered, dependency-linked sequence of steps."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    aliases: Tuple[str, ...] = ()
    handoff_enabled: bool = True
    completion_message: Optional[str] = None
    steps: Tuple[StepDefinition, ...] = ()

    def step(self, name: str) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.name == name), None)

    @property
    def lookup_names(self) -> List[str]:
        """Case-folded names under which the template can be resolved."""
        names = [self.name.casefold(), *(alias.casefold() for alias in self.aliases)]
        return list(dict.fromkeys(names))


# ----------------------------------------------------------------------
# Step response contract


class StepResponse(BaseModel):
    """Structured reply the model-completion collaborator must return.

    Only ``isComplete`` is mandatory; unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    is_complete: bool = Field(..., alias="isComplete")
    collected_information: Dict[str, Any] = Field(
        default_factory=dict, alias="collectedInformation"
    )
    missing_information: List[str] = Field(
        default_factory=list, alias="missingInformation"
    )
    next_question: Optional[str] = Field(default=None, alias="nextQuestion")
    suggested_next_step: Optional[str] = Field(default=None, alias="suggestedNextStep")


class ValidationFailure(BaseModel):
    """Model output that could not be turned into a :class:`StepResponse`."""

    kind: Literal["invalid"] = "invalid"
    raw_output: str
    errors: List[str] = Field(default_factory=list)


class ContinueOutcome(BaseModel):
    """The step needs more input from the user."""

    kind: Literal["continue"] = "continue"
    next_question: str
    missing_information: List[str] = Field(default_factory=list)


class CompleteOutcome(BaseModel):
    """The step finished with no cross-workflow request."""

    kind: Literal["complete"] = "complete"
    suggested_next_step: Optional[str] = None


class HandoffOutcome(BaseModel):
    """The step finished and asked for a different workflow on the same thread."""

    kind: Literal["handoff"] = "handoff"
    target_template: str


StepOutcome = Annotated[
    Union[ContinueOutcome, CompleteOutcome, HandoffOutcome],
    Field(discriminator="kind"),
]


class StepResult(BaseModel):
    """Result of one Step Response Protocol call."""

    response: StepResponse
    outcome: StepOutcome
    degraded: bool = False
    attempts: int = 1


# ----------------------------------------------------------------------
# Chat messages


class ChatJob(BaseModel):
    """Inbound user message as delivered by the job queue."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    thread_id: str
    requester_id: str
    org_id: str
    clearance: SecurityLevel = SecurityLevel.INTERNAL
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt: int = 1

    def to_json(self) -> str:
        """Serialize job to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ChatJob":
        """Deserialize job from JSON."""
        return cls.model_validate_json(data)


class ChatReply(BaseModel):
    """Outward message produced for one inbound message."""

    thread_id: str
    message_id: str
    text: str
    workflow_id: Optional[str] = None
    duplicate: bool = False
