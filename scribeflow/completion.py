"""Model-completion collaborator."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Union

from pydantic_ai import Agent
from pydantic_ai.models import Model

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    """Accepts a prompt and returns the model's raw text."""

    async def complete(self, prompt: str) -> str:
        """Return the completion for ``prompt``."""


class AgentCompletionClient:
    """Completion client backed by a pydantic-ai ``Agent`` with text output.

    The agent is built on first use so that constructing the client never
    needs provider credentials.
    """

    def __init__(
        self, model: Union[str, Model], system_prompt: Optional[str] = None
    ) -> None:
        self.model = model
        self.system_prompt = system_prompt
        self._agent: Optional[Agent] = None

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            kwargs = {"output_type": str}
            if self.system_prompt:
                kwargs["system_prompt"] = self.system_prompt
            self._agent = Agent(self.model, **kwargs)
            logger.debug(f"Created completion agent for model {self.model}")
        return self._agent

    async def complete(self, prompt: str) -> str:
        result = await self.agent.run(prompt)
        return result.output
