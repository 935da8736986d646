"""Task states and handles over scheduled stage tasks."""

from typing import Any, Protocol

from .errors import UpstreamFailure

SUCCEEDED = "succeeded"
SKIPPED = "skipped"
FAILED = "failed"
UPSTREAM_FAILED = "upstream_failed"
PENDING = "pending"
TASK_STATES = (SUCCEEDED, SKIPPED, FAILED, UPSTREAM_FAILED, PENDING)


class PlanTaskLike(Protocol):
    stage_name: str

    @property
    def key(self) -> str: ...

    def complete(self) -> bool: ...

    def output_map(self) -> dict[str, Any]: ...

    def read_status(self) -> dict[str, Any] | None: ...


class TaskHandle:
    """Handle exposing the named outputs of a submitted task.

    Args:
        task: Stage task instance
    """

    def __init__(self, task: PlanTaskLike) -> None:
        self.task = task

    def __repr__(self) -> str:
        return f"TaskHandle({self.key})"

    @property
    def key(self) -> str:
        return self.task.key

    @property
    def stage(self) -> str:
        return self.task.stage_name

    @property
    def outputs(self) -> dict[str, Any]:
        """Working locations of the output bindings (known before execution)."""
        return self.task.output_map()

    def state(self) -> str:
        status = self.task.read_status()
        if status:
            return status["state"]
        return SKIPPED if self.task.complete() else PENDING

    def done(self) -> bool:
        return self.state() in {SUCCEEDED, SKIPPED}

    def failed(self) -> bool:
        return self.state() == FAILED

    def result(self) -> dict[str, Any]:
        """Return the resolved outputs.

        Raises:
            UpstreamFailure: If the task failed
            LookupError: If the task has not resolved yet
        """
        state = self.state()
        if state == FAILED:
            raise UpstreamFailure(self.stage, [self.key])
        elif state not in {SUCCEEDED, SKIPPED}:
            msg = f"{self.key} has not resolved ({state})"
            raise LookupError(msg)
        return self.outputs
