"""Step Response Protocol.

Builds the prompt for one step, calls the completion client and turns the
reply into a validated :class:`~scribeflow.contracts.StepResponse` plus a
tagged outcome. Malformed replies are retried once with a correction and then
degraded to a clarification question; nothing here raises to the caller.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .config import ProtocolConfig
from .constants import CANCELLED_SELECTION, CROSS_WORKFLOW_DECISION, DEFAULT_EXCERPT_CHARS
from .completion import CompletionClient
from .contracts import (
    CompleteOutcome,
    ContinueOutcome,
    HandoffOutcome,
    StepInstructions,
    StepResponse,
    StepResult,
    StepType,
    ValidationFailure,
)
from .persistence.models import StepInstance
from .retrieval.models import ContextBundle

logger = logging.getLogger(__name__)

RESPONSE_CONTRACT = """RESPONSE FORMAT:
Respond with a single JSON object and nothing else:
{
  "isComplete": true or false,
  "collectedInformation": { ...everything gathered so far for this step... },
  "missingInformation": [ ...fields still needed... ],
  "nextQuestion": "question for the user when isComplete is false",
  "suggestedNextStep": "optional hint"
}"""

JSON_CORRECTION = (
    "Your previous reply could not be parsed. Respond with JSON only: one object "
    'with at least the "isComplete" key, no markdown and no commentary.'
)


def format_context(bundle: Optional[ContextBundle], excerpt_chars: int = DEFAULT_EXCERPT_CHARS) -> str:
    """Render ``bundle`` as the enhanced context block, or ``""`` when empty."""
    if bundle is None or bundle.is_empty:
        return ""
    lines = ["=== ENHANCED CONTEXT ==="]
    if bundle.global_results:
        lines.append("WORKFLOW KNOWLEDGE:")
        lines.extend(f"• {item.content[:excerpt_chars]}" for item in bundle.global_results)
    if bundle.scoped_results:
        lines.append("COMPANY CONTEXT:")
        lines.extend(f"• {item.content[:excerpt_chars]}" for item in bundle.scoped_results)
    lines.append("CONTEXT USAGE:")
    lines.append("• Use workflow knowledge for step-specific guidance")
    lines.append("• Integrate company context naturally")
    lines.append("=== END ENHANCED CONTEXT ===")
    return "\n".join(lines)


def _strip_fences(raw: str) -> str:
    content = raw.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]
    return content.strip()


def parse_step_response(raw: str) -> Union[StepResponse, ValidationFailure]:
    """Parse model output into a :class:`StepResponse`.

    Markdown code fences are stripped. When the text is not pure JSON, the
    outermost ``{...}`` span is tried before giving up.
    """
    content = _strip_fences(raw or "")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        start, end = content.find("{"), content.rfind("}")
        if start == -1 or end <= start:
            return ValidationFailure(raw_output=raw or "", errors=[str(exc)])
        try:
            data = json.loads(content[start : end + 1])
        except json.JSONDecodeError as inner:
            return ValidationFailure(raw_output=raw, errors=[str(inner)])

    if not isinstance(data, dict):
        return ValidationFailure(
            raw_output=raw, errors=[f"expected a JSON object, got {type(data).__name__}"]
        )
    try:
        return StepResponse.model_validate(data)
    except ValidationError as exc:
        return ValidationFailure(
            raw_output=raw, errors=[err["msg"] for err in exc.errors()]
        )


def derive_outcome(response: StepResponse, clarification: str):
    """Map a validated response onto the tagged step outcome."""
    if not response.is_complete:
        question = (response.next_question or "").strip() or clarification
        return ContinueOutcome(
            next_question=question, missing_information=response.missing_information
        )

    collected = response.collected_information
    if collected.get("reviewDecision") == CROSS_WORKFLOW_DECISION:
        requested = collected.get("requestedAssetType")
        if isinstance(requested, str) and requested.strip():
            return HandoffOutcome(target_template=requested.strip())
        logger.warning("Cross-workflow request without requestedAssetType; completing")

    selected = collected.get("selectedWorkflow")
    if isinstance(selected, str) and selected.strip():
        if selected.strip().casefold() != CANCELLED_SELECTION:
            return HandoffOutcome(target_template=selected.strip())

    return CompleteOutcome(suggested_next_step=response.suggested_next_step)


def select_instructions(
    step_type: StepType, instructions: StepInstructions, collected: Dict[str, Any]
) -> str:
    """Pick the instruction text for a step.

    Automated steps use the generation template keyed by the asset type in the
    running state, then the default template, then the only template.
    """
    if step_type == StepType.AUTOMATED_ACTION and instructions.generation_templates:
        templates = {k.casefold(): v for k, v in instructions.generation_templates.items()}
        asset_type = collected.get(instructions.asset_type_field)
        if isinstance(asset_type, str) and asset_type.casefold() in templates:
            return templates[asset_type.casefold()]
        default = instructions.default_generation_template
        if default and default.casefold() in templates:
            return templates[default.casefold()]
        if len(templates) == 1:
            return next(iter(templates.values()))
    return instructions.base_instructions or ""


class StepResponseProtocol:
    """Runs one step against the completion client."""

    def __init__(
        self,
        client: CompletionClient,
        config: Optional[ProtocolConfig] = None,
        excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
    ) -> None:
        self.client = client
        self.config = config or ProtocolConfig()
        self.excerpt_chars = excerpt_chars

    def build_prompt(
        self,
        step: StepInstance,
        user_input: Optional[str],
        bundle: Optional[ContextBundle],
        collected: Dict[str, Any],
        workflow_name: Optional[str] = None,
    ) -> str:
        sections = []
        instructions = select_instructions(step.type, step.instructions, collected)
        if instructions:
            sections.append(instructions)

        header = f"CURRENT STEP: {step.name}"
        if workflow_name:
            header = f"WORKFLOW: {workflow_name}\n{header}"
        if step.instructions.goal:
            header += f"\nGOAL: {step.instructions.goal}"
        sections.append(header)

        context = format_context(bundle, self.excerpt_chars)
        if context:
            sections.append(context)

        sections.append(
            "CURRENT COLLECTED INFORMATION:\n" + json.dumps(collected, indent=2, default=str)
        )
        if step.type == StepType.AUTOMATED_ACTION or not user_input:
            sections.append("USER INPUT:\n(none - this step runs automatically)")
        else:
            sections.append(f"USER INPUT:\n{user_input}")
        sections.append(RESPONSE_CONTRACT)
        return "\n\n".join(sections)

    async def _attempt(self, prompt: str) -> Union[StepResponse, ValidationFailure]:
        try:
            raw = await self.client.complete(prompt)
        except Exception as exc:
            logger.warning(f"Completion call failed: {exc}")
            return ValidationFailure(raw_output="", errors=[f"completion error: {exc}"])
        return parse_step_response(raw)

    async def process(
        self,
        step: StepInstance,
        user_input: Optional[str],
        bundle: Optional[ContextBundle] = None,
        collected: Optional[Dict[str, Any]] = None,
        workflow_name: Optional[str] = None,
    ) -> StepResult:
        collected = dict(collected or {})
        prompt = self.build_prompt(step, user_input, bundle, collected, workflow_name)
        max_attempts = max(1, self.config.max_attempts)

        failure: Optional[ValidationFailure] = None
        for attempt in range(1, max_attempts + 1):
            current = prompt if attempt == 1 else f"{prompt}\n\n{JSON_CORRECTION}"
            parsed = await self._attempt(current)
            if isinstance(parsed, StepResponse):
                outcome = derive_outcome(parsed, self.config.clarification_message)
                return StepResult(response=parsed, outcome=outcome, attempts=attempt)
            failure = parsed
            logger.warning(
                f"Invalid response for step {step.name!r} (attempt {attempt}/{max_attempts}): "
                f"{'; '.join(parsed.errors)}"
            )

        logger.warning(
            f"Step {step.name!r} degraded to clarification; raw output: "
            f"{failure.raw_output if failure else ''!r}"
        )
        response = StepResponse(
            is_complete=False, next_question=self.config.clarification_message
        )
        return StepResult(
            response=response,
            outcome=ContinueOutcome(next_question=self.config.clarification_message),
            degraded=True,
            attempts=max_attempts,
        )
