import pytest

from conftest import ScriptedCompletionClient
from scribeflow.constants import DEFAULT_CLARIFICATION_MESSAGE
from scribeflow.contracts import (
    CompleteOutcome,
    ContinueOutcome,
    HandoffOutcome,
    StepInstructions,
    StepResponse,
    StepType,
    ValidationFailure,
)
from scribeflow.persistence.models import StepInstance
from scribeflow.protocol import (
    StepResponseProtocol,
    derive_outcome,
    format_context,
    parse_step_response,
    select_instructions,
)
from scribeflow.retrieval import ContentItem, ContentSource, ContextBundle
from scribeflow.security import SecurityLevel


def _step(**instructions) -> StepInstance:
    return StepInstance(
        workflow_id="wf-1",
        name="Information Collection",
        order=0,
        type=instructions.pop("type", StepType.DIALOG_COLLECTION),
        instructions=StepInstructions(**instructions),
    )


def test_parse_plain_and_fenced_json():
    parsed = parse_step_response('{"isComplete": true, "collectedInformation": {"a": 1}}')
    assert isinstance(parsed, StepResponse)
    assert parsed.is_complete is True
    assert parsed.collected_information == {"a": 1}

    fenced = parse_step_response('```json\n{"isComplete": false, "nextQuestion": "Name?"}\n```')
    assert isinstance(fenced, StepResponse)
    assert fenced.next_question == "Name?"

    chatty = parse_step_response('Sure! Here you go: {"isComplete": false} Hope that helps.')
    assert isinstance(chatty, StepResponse)


def test_parse_ignores_unknown_keys():
    parsed = parse_step_response('{"isComplete": true, "confidence": 0.9}')
    assert isinstance(parsed, StepResponse)
    assert parsed.missing_information == []


@pytest.mark.parametrize(
    "raw",
    ["", "no json here", "[1, 2, 3]", '{"collectedInformation": {}}', '{"isComplete": "maybe"}'],
)
def test_parse_failures_are_values(raw):
    parsed = parse_step_response(raw)
    assert isinstance(parsed, ValidationFailure)
    assert parsed.kind == "invalid"
    assert parsed.errors


def test_derive_outcome_variants():
    cont = derive_outcome(StepResponse(is_complete=False, next_question="Which date?"), "clarify")
    assert cont == ContinueOutcome(next_question="Which date?")

    blank = derive_outcome(StepResponse(is_complete=False), "clarify")
    assert blank.next_question == "clarify"

    done = derive_outcome(
        StepResponse(is_complete=True, collected_information={"reviewDecision": "approved"}), "c"
    )
    assert isinstance(done, CompleteOutcome)

    handoff = derive_outcome(
        StepResponse(
            is_complete=True,
            collected_information={
                "reviewDecision": "cross_workflow_request",
                "requestedAssetType": "Blog Post",
            },
        ),
        "c",
    )
    assert handoff == HandoffOutcome(target_template="Blog Post")

    selected = derive_outcome(
        StepResponse(is_complete=True, collected_information={"selectedWorkflow": "FAQ"}), "c"
    )
    assert selected == HandoffOutcome(target_template="FAQ")

    cancelled = derive_outcome(
        StepResponse(is_complete=True, collected_information={"selectedWorkflow": "cancelled"}), "c"
    )
    assert isinstance(cancelled, CompleteOutcome)

    missing_target = derive_outcome(
        StepResponse(is_complete=True, collected_information={"reviewDecision": "cross_workflow_request"}),
        "c",
    )
    assert isinstance(missing_target, CompleteOutcome)


def test_select_generation_template():
    instructions = StepInstructions(
        base_instructions="BASE",
        generation_templates={"Press Release": "PR TEMPLATE", "blog post": "BLOG TEMPLATE"},
        default_generation_template="press release",
    )
    auto = StepType.AUTOMATED_ACTION
    assert select_instructions(auto, instructions, {"assetType": "Blog Post"}) == "BLOG TEMPLATE"
    assert select_instructions(auto, instructions, {"assetType": "Podcast"}) == "PR TEMPLATE"
    assert select_instructions(auto, instructions, {}) == "PR TEMPLATE"
    assert select_instructions(StepType.DIALOG_COLLECTION, instructions, {}) == "BASE"

    single = StepInstructions(generation_templates={"faq": "FAQ TEMPLATE"})
    assert select_instructions(auto, single, {"assetType": "other"}) == "FAQ TEMPLATE"


def test_format_context_sections():
    global_item = ContentItem(
        source=ContentSource.ORG_WIDE_KNOWLEDGE, security_level=SecurityLevel.PUBLIC, content="G" * 20
    )
    scoped_item = ContentItem(
        source=ContentSource.GENERATED_ARTIFACT, security_level=SecurityLevel.PUBLIC, content="company"
    )
    assert format_context(ContextBundle()) == ""
    assert format_context(None) == ""

    only_scoped = format_context(ContextBundle(scoped_results=[scoped_item]))
    assert only_scoped.startswith("=== ENHANCED CONTEXT ===")
    assert "WORKFLOW KNOWLEDGE:" not in only_scoped
    assert "COMPANY CONTEXT:\n• company" in only_scoped
    assert only_scoped.endswith("=== END ENHANCED CONTEXT ===")

    both = format_context(
        ContextBundle(global_results=[global_item], scoped_results=[scoped_item]), excerpt_chars=5
    )
    assert "WORKFLOW KNOWLEDGE:\n• GGGGG\n" in both
    assert "• Use workflow knowledge for step-specific guidance" in both


@pytest.mark.asyncio
async def test_process_builds_prompt_from_state_and_input():
    client = ScriptedCompletionClient([{"isComplete": True, "collectedInformation": {"name": "Acme"}}])
    protocol = StepResponseProtocol(client)
    step = _step(base_instructions="COLLECT THINGS", goal="Gather facts")

    result = await protocol.process(step, "We are Acme", None, {"assetType": "Press Release"})

    assert result.response.is_complete
    assert isinstance(result.outcome, CompleteOutcome)
    assert result.attempts == 1
    prompt = client.prompts[0]
    assert "COLLECT THINGS" in prompt
    assert "GOAL: Gather facts" in prompt
    assert '"assetType": "Press Release"' in prompt
    assert "USER INPUT:\nWe are Acme" in prompt
    assert '"isComplete"' in prompt
    assert "ENHANCED CONTEXT" not in prompt


@pytest.mark.asyncio
async def test_process_retries_once_then_succeeds():
    client = ScriptedCompletionClient(["oops", '{"isComplete": false, "nextQuestion": "Date?"}'])
    result = await StepResponseProtocol(client).process(_step(), "hello")

    assert result.degraded is False
    assert result.attempts == 2
    assert result.outcome.next_question == "Date?"
    assert "Respond with JSON only" in client.prompts[1]
    assert "Respond with JSON only" not in client.prompts[0]


@pytest.mark.asyncio
async def test_process_degrades_after_second_failure():
    client = ScriptedCompletionClient(["oops", "still oops"])
    result = await StepResponseProtocol(client).process(_step(), "hello")

    assert result.degraded is True
    assert result.response.is_complete is False
    assert result.outcome == ContinueOutcome(next_question=DEFAULT_CLARIFICATION_MESSAGE)
    assert len(client.prompts) == 2


@pytest.mark.asyncio
async def test_collaborator_errors_count_as_failed_attempts():
    client = ScriptedCompletionClient([ConnectionError("model down"), {"isComplete": True}])
    result = await StepResponseProtocol(client).process(_step(), "hello")
    assert result.attempts == 2
    assert result.response.is_complete

    failing = ScriptedCompletionClient([ConnectionError("down"), ConnectionError("down")])
    degraded = await StepResponseProtocol(failing).process(_step(), "hello")
    assert degraded.degraded


@pytest.mark.asyncio
async def test_automated_step_prompt_uses_generation_template():
    client = ScriptedCompletionClient([{"isComplete": True, "collectedInformation": {"generatedAsset": "X"}}])
    step = _step(
        type=StepType.AUTOMATED_ACTION,
        base_instructions="BASE",
        generation_templates={"press release": "WRITE A PRESS RELEASE"},
    )
    await StepResponseProtocol(client).process(step, None, None, {"assetType": "Press Release"})
    assert "WRITE A PRESS RELEASE" in client.prompts[0]
    assert "BASE" not in client.prompts[0]
    assert "runs automatically" in client.prompts[0]
