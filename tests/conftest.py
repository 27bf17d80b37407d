"""Shared fixtures: a scripted completion client and small templates."""

from __future__ import annotations

import json
import math
import re
from collections import Counter
from typing import Callable, Dict, List, Sequence, Union

import pytest

from scribeflow.contracts import StepDefinition, StepInstructions, StepType, WorkflowTemplate
from scribeflow.engine import WorkflowEngine
from scribeflow.persistence import InMemoryWorkflowRepository
from scribeflow.protocol import StepResponseProtocol
from scribeflow.registry import TemplateRegistry
from scribeflow.retrieval import EmbeddingInterface
from scribeflow.security.context import RequesterContext

Scripted = Union[str, dict, Exception, Callable[[str], Union[str, dict]]]


class ScriptedCompletionClient:
    """Returns queued responses in order and records every prompt."""

    def __init__(self, responses: List[Scripted] | None = None) -> None:
        self.responses: List[Scripted] = list(responses or [])
        self.prompts: List[str] = []

    def queue(self, *responses: Scripted) -> None:
        self.responses.extend(responses)

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise RuntimeError("no scripted response left")
        item = self.responses.pop(0)
        if callable(item) and not isinstance(item, Exception):
            item = item(prompt)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, dict):
            return json.dumps(item)
        return item


_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    "a an and are as at be but by for from has have i in is it its me my of on or "
    "our so that the their this to was we what with you your".split()
)


def _terms(text: str) -> Dict[str, int]:
    return Counter(w for w in _TOKEN_RE.findall(text.lower()) if w not in _STOPWORDS)


class LexicalScorer:
    """Term-vector cosine; deterministic stand-in for the embedding scorer."""

    async def score(self, query: str, contents: Sequence[str]) -> List[float]:
        q = _terms(query)
        scores = []
        for content in contents:
            c = _terms(content)
            dot = sum(n * c.get(t, 0) for t, n in q.items())
            norm = math.sqrt(sum(n * n for n in q.values())) * math.sqrt(
                sum(n * n for n in c.values())
            )
            scores.append(dot / norm if norm else 0.0)
        return scores


class ConceptEmbedding(EmbeddingInterface):
    """Maps words onto a few concept axes so paraphrases land close together."""

    CONCEPTS = {
        "press": {
            "press", "release", "news", "announcing", "announcement",
            "launch", "quote", "boilerplate", "media",
        },
        "rocket": {"acme", "rocket", "rockets", "reusable", "spaceflight", "orbit"},
        "finance": {"payroll", "budget", "quarterly", "spreadsheet", "invoice"},
    }

    def __init__(self) -> None:
        self.calls: List[List[str]] = []

    def encode(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            words = _TOKEN_RE.findall(text.lower())
            vectors.append(
                [float(sum(w in vocab for w in words)) for vocab in self.CONCEPTS.values()]
            )
        return vectors

    @property
    def model_name(self) -> str:
        return "concept-test"


def step(name, type=StepType.DIALOG_COLLECTION, deps=(), prompt=None, **instructions):
    return StepDefinition(
        type=type,
        name=name,
        prompt=prompt if prompt is not None else f"Prompt for {name}",
        dependencies=frozenset(deps),
        metadata=StepInstructions(**instructions),
    )


def template(name, steps, **kwargs) -> WorkflowTemplate:
    return WorkflowTemplate(
        id=kwargs.pop("id", name.lower().replace(" ", "-")),
        name=name,
        steps=tuple(steps),
        **kwargs,
    )


def linear_template(name: str = "Linear") -> WorkflowTemplate:
    return template(
        name,
        [step("A"), step("B", deps=["A"]), step("C", deps=["B"])],
    )


def auto_chain_template(name: str = "Auto Chain") -> WorkflowTemplate:
    return template(
        name,
        [
            step("A"),
            step(
                "B",
                type=StepType.AUTOMATED_ACTION,
                deps=["A"],
                prompt="Generating...",
                emit_field="generatedAsset",
                generation_templates={"widget": "WRITE A WIDGET"},
            ),
            step("C", deps=["B"], emit_field="generatedAsset"),
        ],
    )


@pytest.fixture
def client() -> ScriptedCompletionClient:
    return ScriptedCompletionClient()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def requester() -> RequesterContext:
    return RequesterContext(requester_id="user-1", org_id="org-1")


@pytest.fixture
def engine(repository, client) -> WorkflowEngine:
    return WorkflowEngine(repository, StepResponseProtocol(client))


@pytest.fixture
def registry() -> TemplateRegistry:
    return TemplateRegistry([linear_template(), auto_chain_template()])
