"""Exception types raised by scribeflow components."""

from __future__ import annotations


class ScribeflowError(Exception):
    """Base class for scribeflow errors."""


class TemplateValidationError(ScribeflowError):
    """A workflow template failed to load or validate.

    Raised at startup only. A registry that cannot be built means the process
    must not serve traffic.
    """


class UnknownTemplateError(ScribeflowError, LookupError):
    """Requested template name or id is not in the registry."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown workflow template: {name!r}")
        self.name = name


class StalledWorkflowError(ScribeflowError):
    """No step is eligible although the workflow is not complete."""

    def __init__(self, workflow_id: str, pending: list[str]) -> None:
        super().__init__(
            f"Workflow {workflow_id} stalled with unfinished steps: {', '.join(pending)}"
        )
        self.workflow_id = workflow_id
        self.pending = pending


class RetrievalTimeout(ScribeflowError, TimeoutError):
    """A retrieval partition did not answer within its timeout."""

    def __init__(self, partition: str, timeout: float) -> None:
        super().__init__(f"Retrieval partition {partition!r} timed out after {timeout}s")
        self.partition = partition
        self.timeout = timeout


class ActiveWorkflowExistsError(ScribeflowError):
    """A thread already owns an active workflow instance."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"Thread {thread_id} already has an active workflow")
        self.thread_id = thread_id


class IdentityError(ScribeflowError):
    """A bearer token could not be turned into a requester identity."""
