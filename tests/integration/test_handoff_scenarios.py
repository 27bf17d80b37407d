"""Workflow selection and cross-workflow handoff over the packaged templates."""

import pytest

from conftest import ScriptedCompletionClient, linear_template, step, template
from scribeflow.bootstrap import build_services
from scribeflow.config import ScribeflowConfig
from scribeflow.constants import DEFAULT_COMPLETION_MESSAGE, MAX_HANDOFF_CHAIN
from scribeflow.contracts import ChatJob, StepType, WorkflowStatus
from scribeflow.persistence import InMemoryWorkflowRepository
from scribeflow.persistence.models import StepInstance, WorkflowInstance
from scribeflow.registry import TemplateRegistry
from scribeflow.router import HandoffRouter, build_carryover

pytestmark = pytest.mark.integration


@pytest.fixture
def services():
    return build_services(
        ScribeflowConfig(),
        repository=InMemoryWorkflowRepository(),
        completion_client=ScriptedCompletionClient(),
    )


def _job(content: str, thread_id: str = "thread-1") -> ChatJob:
    return ChatJob(thread_id=thread_id, requester_id="user-1", org_id="org-1", content=content)


def _first_prompt(services, name: str) -> str:
    return services.registry.require(name).steps[0].prompt


@pytest.mark.asyncio
async def test_press_release_hands_off_to_blog_post(services):
    client = services.protocol.client
    orchestrator = services.orchestrator
    repository = services.repository

    client.queue({"isComplete": True, "collectedInformation": {"selectedWorkflow": "press release"}})
    reply = await orchestrator.handle(_job("I need a PR for our launch"))
    assert reply.text == _first_prompt(services, "Press Release")
    press_release = await repository.get_active_workflow("thread-1")
    assert press_release.template_name == "Press Release"
    assert reply.workflow_id == press_release.id
    assert press_release.steps[0].metadata.collected == {
        "assetType": "Press Release",
        "carriedOverFrom": "Base Workflow",
    }

    client.queue(
        {
            "isComplete": True,
            "collectedInformation": {"companyInfo": "Acme Corp", "announcement": "Rocket launch"},
        },
        {"isComplete": True, "collectedInformation": {"generatedAsset": "ACME PRESS RELEASE"}},
    )
    reply = await orchestrator.handle(_job("Acme Corp is launching a rocket"))
    generation, review = services.registry.require("Press Release").steps[1:]
    assert reply.text == "\n\n".join([generation.prompt, "ACME PRESS RELEASE", review.prompt])
    assert "You are a PR writing assistant" in client.prompts[-1]

    client.queue(
        {
            "isComplete": True,
            "collectedInformation": {
                "reviewDecision": "cross_workflow_request",
                "requestedAssetType": "Blog Post",
            },
        }
    )
    reply = await orchestrator.handle(_job("Now turn this into a blog post"))
    assert reply.text == _first_prompt(services, "Blog Post")

    finished = await repository.get_workflow(press_release.id)
    assert finished.status == WorkflowStatus.COMPLETED
    blog = await repository.get_active_workflow("thread-1")
    assert blog.template_name == "Blog Post"
    assert reply.workflow_id == blog.id
    assert blog.steps[0].metadata.collected == {
        "companyInfo": "Acme Corp",
        "announcement": "Rocket launch",
        "previousContent": "ACME PRESS RELEASE",
        "assetType": "Blog Post",
        "carriedOverFrom": "Press Release",
    }
    history = await repository.recent_messages("thread-1", 10)
    assert [m.role for m in history] == ["user", "assistant"] * 3


@pytest.mark.asyncio
async def test_approval_completes_with_template_message(services):
    client = services.protocol.client
    client.queue(
        {"isComplete": True, "collectedInformation": {"selectedWorkflow": "Social Post"}},
        {"isComplete": True, "collectedInformation": {"platform": "LinkedIn"}},
        {"isComplete": True, "collectedInformation": {"generatedAsset": "POST"}},
        {"isComplete": True, "collectedInformation": {"reviewDecision": "approved"}},
    )
    await services.orchestrator.handle(_job("a social post"))
    await services.orchestrator.handle(_job("LinkedIn, about our launch"))
    reply = await services.orchestrator.handle(_job("looks good"))

    social = services.registry.require("Social Post")
    assert reply.text.endswith(social.completion_message or DEFAULT_COMPLETION_MESSAGE)
    assert await services.repository.get_active_workflow("thread-1") is None


@pytest.mark.asyncio
async def test_cancelled_selection_completes_base_workflow(services):
    services.protocol.client.queue(
        {"isComplete": True, "collectedInformation": {"selectedWorkflow": "cancelled"}}
    )
    reply = await services.orchestrator.handle(_job("never mind"))

    assert reply.text == "No problem. Let me know whenever you want to create something."
    assert await services.repository.get_active_workflow("thread-1") is None
    workflows = await services.repository.list_workflows("thread-1")
    assert [w.status for w in workflows] == [WorkflowStatus.COMPLETED]


@pytest.mark.asyncio
async def test_unknown_target_falls_back_to_completion(services):
    services.protocol.client.queue(
        {"isComplete": True, "collectedInformation": {"selectedWorkflow": "Podcast Script"}}
    )
    reply = await services.orchestrator.handle(_job("write a podcast script"))

    assert reply.text == services.registry.require("Base Workflow").completion_message
    assert await services.repository.get_active_workflow("thread-1") is None


@pytest.mark.asyncio
async def test_next_message_after_completion_starts_base_workflow(services):
    client = services.protocol.client
    client.queue(
        {"isComplete": True, "collectedInformation": {"selectedWorkflow": "cancelled"}},
        {"isComplete": False, "nextQuestion": "Which kind of content?"},
    )
    await services.orchestrator.handle(_job("never mind"))
    reply = await services.orchestrator.handle(_job("actually, something"))

    assert reply.text == "Which kind of content?"
    active = await services.repository.get_active_workflow("thread-1")
    assert active.template_name == "Base Workflow"


@pytest.mark.asyncio
async def test_handoff_disabled_template_only_completes(engine, client):
    closed = template(
        "Closed",
        [step("Only", emit_field=None)],
        handoff_enabled=False,
        completion_message="Closed is done.",
    )
    registry = TemplateRegistry([closed, linear_template()])
    router = HandoffRouter(registry, engine)
    instance = await engine.create_instance("thread-1", closed)
    client.queue(
        {
            "isComplete": True,
            "collectedInformation": {
                "reviewDecision": "cross_workflow_request",
                "requestedAssetType": "Linear",
            },
        }
    )
    turn = await engine.process_message(instance, "now do linear")
    instance = await engine.repository.get_workflow(instance.id)

    result = await router.on_completed(instance, turn)

    assert result.handed_off is False
    assert result.messages == ["Closed is done."]
    assert await engine.repository.get_active_workflow("thread-1") is None


@pytest.mark.asyncio
async def test_handoff_resolves_aliases_and_refuses_second_active(engine, client, registry):
    source = template("Source", [step("Only")])
    registry = TemplateRegistry([source, *registry.list_templates()])
    router = HandoffRouter(registry, engine, carryover_keys=["name"])
    client.queue(
        {
            "isComplete": True,
            "collectedInformation": {
                "name": "Acme",
                "reviewDecision": "cross_workflow_request",
                "requestedAssetType": "LINEAR",
            },
        }
    )
    instance = await engine.create_instance("thread-1", source)
    turn = await engine.process_message(instance, "go")
    completed = await engine.repository.get_workflow(instance.id)

    with pytest.raises(ValueError):
        await router.on_completed(await engine.create_instance("thread-2", source), turn)

    blocker = await engine.create_instance("thread-1", linear_template())
    refused = await router.on_completed(completed, turn)
    assert refused.handed_off is False
    assert refused.messages == [DEFAULT_COMPLETION_MESSAGE]

    await engine.abandon(blocker.id)
    result = await router.on_completed(completed, turn)
    assert result.handed_off is True
    assert result.target_template == "Linear"
    assert result.messages == ["Prompt for A"]
    assert result.new_workflow.steps[0].metadata.collected == {
        "name": "Acme",
        "assetType": "Linear",
        "carriedOverFrom": "Source",
    }


def test_build_carryover_uses_latest_values():
    registry = TemplateRegistry([linear_template()])
    target = registry.require("Linear")
    source = WorkflowInstance(thread_id="t", template_id="pr", template_name="Press Release")
    source.steps = [
        StepInstance(workflow_id=source.id, name="One", order=0, type="dialog_collection"),
        StepInstance(workflow_id=source.id, name="Two", order=1, type="automated_action"),
    ]
    source.steps[0].metadata.collected = {"tone": "formal", "generatedAsset": "v1", "secret": "x"}
    source.steps[1].metadata.collected = {"tone": "playful", "generatedAsset": "v2"}

    seed = build_carryover(source, target, ["tone", "missing"])
    assert seed == {
        "tone": "playful",
        "previousContent": "v2",
        "assetType": "Linear",
        "carriedOverFrom": "Press Release",
    }


def _automated(name, deps=(), **instructions):
    return step(name, type=StepType.AUTOMATED_ACTION, deps=deps, prompt="", **instructions)


def _handoff_to(target):
    return {
        "isComplete": True,
        "collectedInformation": {
            "reviewDecision": "cross_workflow_request",
            "requestedAssetType": target,
        },
    }


@pytest.mark.asyncio
async def test_handoff_to_fully_automated_template_reports_its_completion(engine, client):
    source = template("Source", [step("Only")])
    auto = template(
        "Auto Only",
        [_automated("Draft", emit_field="generatedAsset"), _automated("Polish", deps=["Draft"])],
        completion_message="Auto Only is done.",
    )
    router = HandoffRouter(TemplateRegistry([source, auto]), engine)
    client.queue(
        _handoff_to("Auto Only"),
        {"isComplete": True, "collectedInformation": {"generatedAsset": "DRAFT"}},
        {"isComplete": True},
    )
    instance = await engine.create_instance("thread-1", source)
    turn = await engine.process_message(instance, "make it automatic")

    result = await router.on_completed(instance, turn)

    assert result.handed_off is True
    assert result.stalled is False
    assert result.messages == ["DRAFT", "Auto Only is done."]
    assert result.new_workflow.status == WorkflowStatus.COMPLETED
    assert await engine.repository.get_active_workflow("thread-1") is None


@pytest.mark.asyncio
async def test_chain_of_automated_handoffs_is_bounded(engine, client):
    source = template("Source", [step("Only")])
    loop = template("Loop", [_automated("Again")], completion_message="Loop is done.")
    router = HandoffRouter(TemplateRegistry([source, loop]), engine)
    client.queue(*[_handoff_to("Loop")] * (MAX_HANDOFF_CHAIN + 1))
    instance = await engine.create_instance("thread-1", source)
    turn = await engine.process_message(instance, "loop forever")

    result = await router.on_completed(instance, turn)

    assert result.messages == ["Loop is done."]
    assert len(client.prompts) == MAX_HANDOFF_CHAIN + 1
    workflows = await engine.repository.list_workflows("thread-1")
    assert [w.template_name for w in workflows] == ["Source"] + ["Loop"] * MAX_HANDOFF_CHAIN
    assert all(w.status == WorkflowStatus.COMPLETED for w in workflows)
    assert result.new_workflow.id == workflows[-1].id
