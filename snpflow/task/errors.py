"""Exceptions raised by the snpflow workflow engine."""

from collections.abc import Sequence


class SnpflowError(Exception):
    """Base class for workflow engine errors."""


class MissingInputError(SnpflowError, ValueError):
    """A required input binding or run parameter is absent or empty."""


class CyclicGraphError(SnpflowError, ValueError):
    """The stage graph contains a dependency cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__("dependency cycle: {}".format(" -> ".join(self.cycle)))


class ExternalCommandFailure(SnpflowError, RuntimeError):
    """A dispatched command exited non-zero or omitted a declared output."""

    def __init__(
        self,
        stage: str,
        fingerprint: str,
        exit_status: int | None = None,
        stderr: str = "",
        missing_outputs: Sequence[str] = (),
    ) -> None:
        self.stage = stage
        self.fingerprint = fingerprint
        self.exit_status = exit_status
        self.stderr = stderr
        self.missing_outputs = list(missing_outputs)
        if self.missing_outputs:
            reason = "missing outputs: {}".format(", ".join(self.missing_outputs))
        else:
            reason = f"exit status {exit_status}"
        super().__init__(f"{stage} [{fingerprint[:12]}] failed ({reason})")


class UpstreamFailure(SnpflowError, RuntimeError):
    """A task cannot run because one of its ancestors failed."""

    def __init__(self, stage: str, failed: Sequence[str]) -> None:
        self.stage = stage
        self.failed = list(failed)
        super().__init__(
            "{} not dispatched; failed upstream: {}".format(
                stage, ", ".join(self.failed)
            )
        )


class RunFailure(SnpflowError, RuntimeError):
    """A run finished with failed, upstream-failed, or unscheduled tasks."""

    def __init__(
        self,
        run_id: str,
        failed: Sequence[str],
        upstream_failed: Sequence[str],
        pending: Sequence[str] = (),
    ) -> None:
        self.run_id = run_id
        self.failed = list(failed)
        self.upstream_failed = list(upstream_failed)
        self.pending = list(pending)
        super().__init__(
            "run {} failed; failed: [{}]; upstream failed: [{}]; pending: [{}]".format(
                run_id,
                ", ".join(self.failed),
                ", ".join(self.upstream_failed),
                ", ".join(self.pending),
            )
        )
