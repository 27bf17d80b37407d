import json

import pytest

from conftest import step, template
from scribeflow.contracts import StepType
from scribeflow.errors import TemplateValidationError, UnknownTemplateError
from scribeflow.protocol import select_instructions
from scribeflow.registry import TemplateRegistry, load_registry, validate_template


def test_packaged_templates_load():
    registry = load_registry()
    names = {t.name for t in registry.list_templates()}
    assert {"Base Workflow", "Press Release", "Blog Post", "Social Post", "FAQ", "Media Pitch"} <= names

    press = registry.get_template_by_name("press release")
    assert press is not None
    assert [s.name for s in press.steps] == [
        "Information Collection",
        "Asset Generation",
        "Asset Review",
    ]
    generation = press.step("Asset Generation")
    assert generation.type == StepType.AUTOMATED_ACTION
    assert generation.dependencies == frozenset({"Information Collection"})
    assert "press release" in generation.metadata.generation_templates


def test_resolve_by_alias_is_case_insensitive():
    registry = load_registry()
    assert registry.resolve("BLOG").name == "Blog Post"
    assert registry.resolve(" social media ").name == "Social Post"
    assert registry.resolve("pr").name == "Press Release"
    assert registry.resolve("podcast") is None
    assert "faq" in registry
    assert "podcast" not in registry


def test_get_template_by_id_and_require():
    registry = load_registry()
    assert registry.get_template("press-release").name == "Press Release"
    assert registry.get_template("missing") is None
    with pytest.raises(UnknownTemplateError):
        registry.require("Podcast")


def test_cycle_is_rejected():
    bad = template("Cyclic", [step("A", deps=["C"]), step("B", deps=["A"]), step("C", deps=["B"])])
    with pytest.raises(TemplateValidationError, match="cycle"):
        validate_template(bad)


def test_unknown_dependency_is_rejected():
    bad = template("Broken", [step("A"), step("B", deps=["Nope"])])
    with pytest.raises(TemplateValidationError, match="unknown steps: Nope"):
        validate_template(bad)


def test_self_dependency_and_duplicate_names_are_rejected():
    with pytest.raises(TemplateValidationError, match="depends on itself"):
        validate_template(template("Self", [step("A", deps=["A"])]))
    with pytest.raises(TemplateValidationError, match="repeats step names"):
        validate_template(template("Dup", [step("A"), step("A")]))
    with pytest.raises(TemplateValidationError, match="no steps"):
        validate_template(template("Empty", []))


def test_alias_repeating_own_name_is_allowed():
    registry = TemplateRegistry([template("Press Release", [step("A")], aliases=("press release", "pr"))])
    assert registry.resolve("PR").name == "Press Release"


def test_conflicting_aliases_are_fatal():
    one = template("One", [step("A")], aliases=("shared",))
    two = template("Two", [step("A")], aliases=("shared",))
    with pytest.raises(TemplateValidationError, match="shared"):
        TemplateRegistry([one, two])


def test_from_directory_reads_json_and_yaml(tmp_path):
    (tmp_path / "one.json").write_text(
        json.dumps(
            {
                "id": "one",
                "name": "One",
                "steps": [{"type": "dialog_collection", "name": "Ask"}],
            }
        )
    )
    (tmp_path / "two.yaml").write_text(
        "id: two\nname: Two\nsteps:\n  - type: user_acknowledgement\n    name: Confirm\n"
    )
    (tmp_path / "notes.txt").write_text("ignored")

    registry = TemplateRegistry.from_directory(tmp_path)
    assert len(registry) == 2
    assert registry.resolve("two").steps[0].type == StepType.USER_ACKNOWLEDGEMENT


def test_invalid_file_fails_loading(tmp_path):
    (tmp_path / "bad.yaml").write_text("id: bad\nname: Bad\nsteps:\n  - type: teleport\n    name: X\n")
    with pytest.raises(TemplateValidationError, match="bad.yaml"):
        TemplateRegistry.from_directory(tmp_path)


def test_missing_directory_fails(tmp_path):
    with pytest.raises(TemplateValidationError):
        load_registry(tmp_path / "nowhere")


def test_templates_are_immutable():
    registry = load_registry()
    press = registry.resolve("press release")
    with pytest.raises(Exception):
        press.name = "Changed"


def test_launch_and_quick_press_release_templates():
    registry = load_registry()
    assert registry.resolve("quick pr").name == "Quick Press Release"
    assert [s.name for s in registry.require("Quick Press Release").steps] == [
        "Information Collection",
        "Asset Generation",
        "Asset Review",
    ]

    launch = registry.resolve("product launch")
    assert launch.name == "Launch Announcement"
    assert [s.name for s in launch.steps][:2] == [
        "Announcement Type Selection",
        "Asset Type Selection",
    ]
    generation = launch.step("Asset Generation")
    blog = select_instructions(
        generation.type, generation.metadata, {"selectedAssetType": "Blog Post"}
    )
    assert blog.startswith("You are a content marketing specialist")
    fallback = select_instructions(generation.type, generation.metadata, {})
    assert fallback.startswith("You are a PR writing assistant. Write a press release")
