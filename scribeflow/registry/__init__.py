"""Workflow template registry.

Templates are loaded once at process start from structured data files and are
read-only afterwards. A template set that fails validation raises
:class:`~scribeflow.errors.TemplateValidationError` so the process refuses to
start rather than serving a broken workflow.
"""

from __future__ import annotations

import json
import logging
from graphlib import CycleError, TopologicalSorter
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError

from ..contracts import WorkflowTemplate
from ..errors import TemplateValidationError, UnknownTemplateError

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
_TEMPLATE_SUFFIXES = (".yaml", ".yml", ".json")


def validate_template(template: WorkflowTemplate) -> None:
    """Check step names and the dependency graph of ``template``.

    Raises:
        TemplateValidationError: On duplicate step names, unknown or
            self-referencing dependencies, or a dependency cycle.
    """
    names = [step.name for step in template.steps]
    if not names:
        raise TemplateValidationError(f"Template {template.name!r} has no steps")
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise TemplateValidationError(
            f"Template {template.name!r} repeats step names: {', '.join(duplicates)}"
        )

    known = set(names)
    graph: Dict[str, set[str]] = {}
    for step in template.steps:
        if step.name in step.dependencies:
            raise TemplateValidationError(
                f"Step {step.name!r} in {template.name!r} depends on itself"
            )
        unknown = sorted(step.dependencies - known)
        if unknown:
            raise TemplateValidationError(
                f"Step {step.name!r} in {template.name!r} depends on unknown steps: "
                f"{', '.join(unknown)}"
            )
        graph[step.name] = set(step.dependencies)

    try:
        TopologicalSorter(graph).prepare()
    except CycleError as exc:
        cycle = " -> ".join(exc.args[1]) if len(exc.args) > 1 else "?"
        raise TemplateValidationError(
            f"Template {template.name!r} has a dependency cycle: {cycle}"
        ) from exc


def _read_template_file(path: Path) -> WorkflowTemplate:
    try:
        with open(path) as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise TemplateValidationError(f"Cannot read template file {path}: {exc}") from exc
    try:
        return WorkflowTemplate.model_validate(data)
    except ValidationError as exc:
        raise TemplateValidationError(f"Invalid template file {path}: {exc}") from exc


class TemplateRegistry:
    """Holds validated, immutable workflow templates."""

    def __init__(self, templates: Iterable[WorkflowTemplate]) -> None:
        self._by_id: Dict[str, WorkflowTemplate] = {}
        self._by_name: Dict[str, WorkflowTemplate] = {}
        self._by_lookup: Dict[str, WorkflowTemplate] = {}

        for template in templates:
            validate_template(template)
            if template.id in self._by_id:
                raise TemplateValidationError(f"Duplicate template id {template.id!r}")
            for key in template.lookup_names:
                if key in self._by_lookup:
                    raise TemplateValidationError(
                        f"Template name or alias {key!r} is used by both "
                        f"{self._by_lookup[key].name!r} and {template.name!r}"
                    )
                self._by_lookup[key] = template
            self._by_id[template.id] = template
            self._by_name[template.name.casefold()] = template

        logger.info(f"Loaded {len(self._by_id)} workflow templates")

    @classmethod
    def from_directory(cls, directory: Union[str, Path]) -> "TemplateRegistry":
        """Load every template file in ``directory``."""
        path = Path(directory)
        if not path.is_dir():
            raise TemplateValidationError(f"Template directory not found: {path}")
        files = sorted(p for p in path.iterdir() if p.suffix in _TEMPLATE_SUFFIXES)
        return cls(_read_template_file(p) for p in files)

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        """Return the template with ``template_id`` or ``None``."""
        return self._by_id.get(template_id)

    def get_template_by_name(self, name: str) -> Optional[WorkflowTemplate]:
        """Return the template whose name matches ``name`` (case-insensitive)."""
        return self._by_name.get(name.strip().casefold())

    def resolve(self, name_or_alias: str) -> Optional[WorkflowTemplate]:
        """Resolve a template by name or alias, e.g. an asset type like ``"blog"``."""
        return self._by_lookup.get(name_or_alias.strip().casefold())

    def require(self, name: str) -> WorkflowTemplate:
        template = self.resolve(name)
        if template is None:
            raise UnknownTemplateError(name)
        return template

    def list_templates(self) -> List[WorkflowTemplate]:
        return list(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.resolve(name) is not None


def load_registry(directory: Optional[Union[str, Path]] = None) -> TemplateRegistry:
    """Build the registry from ``directory`` or the packaged templates."""
    return TemplateRegistry.from_directory(directory or TEMPLATES_DIR)


__all__ = [
    "TEMPLATES_DIR",
    "TemplateRegistry",
    "load_registry",
    "validate_template",
]
