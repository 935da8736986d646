"""Run controller tasks and execution reports for snpflow.

This module provides the task printing tool versions before a run, the Run object
that compiles a stage graph into a plan and schedules it with Luigi, and the report
enumerating the state of every expanded task once the scheduler returns.
"""

import json
import logging
import os
import shutil
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from socket import gethostname
from typing import Any

import luigi

from .core import SnpflowTask
from .errors import RunFailure, UpstreamFailure
from .graph import TaskGraph
from .handle import FAILED, PENDING, SKIPPED, TASK_STATES, UPSTREAM_FAILED
from .ledger import LATEST_RUN, ResumeLedger
from .partition import Partition
from .stage import PlanTask, load_plan, resolve_reference, task_for


class PrintEnvVersions(SnpflowTask):
    """Luigi task for printing environment and tool versions.

    Parameters:
        command_paths: List of command executables to check versions.
        run_id: Identifier for this run (defaults to hostname).
        sh_config: Shell configuration parameters.
    """

    command_paths = luigi.ListParameter(default=[])
    run_id = luigi.Parameter(default=gethostname())
    sh_config = luigi.DictParameter(default={})
    __is_completed: bool = False

    def complete(self) -> bool:
        return self.__is_completed

    def run(self) -> None:
        self.print_log(f"Print environment versions:\t{self.run_id}")
        self.setup_shell(
            run_id=self.run_id, commands=self.command_paths, **self.sh_config
        )
        self.print_env_versions()
        self.__is_completed = True


def configure_resource_ceilings(ceilings: Mapping[str, int]) -> None:
    """Install per-label concurrency ceilings into Luigi's ``[resources]``.

    Args:
        ceilings: Maximum number of concurrently running tasks by resource label

    Raises:
        ValueError: If a ceiling is not a positive integer
    """
    logger = logging.getLogger(__name__)
    config = luigi.configuration.get_config()
    if not config.has_section("resources"):
        config.add_section("resources")
    for k, v in ceilings.items():
        if isinstance(v, bool) or not isinstance(v, int) or v < 1:
            msg = f"Resource ceiling must be a positive integer: {k}={v!r}"
            raise ValueError(msg)
        config.set("resources", k, str(v))
        logger.debug("resource ceiling:\t%s=%d", k, v)


class Run:
    """A top-level invocation of a stage graph.

    The run writes its compiled plan, task states, and shell logs under
    ``<work_dir>/.snpflow/runs/<run_id>/`` and its ledger entries under
    ``<work_dir>/.snpflow/ledger/<run_id>/``. Stage working outputs live under
    ``<work_dir>/<stage>/`` and are shared across runs.

    Args:
        graph: Stage graph
        params: Run parameters referenced by ``params.<key>`` bindings
        work_dir: Working directory
        publish_dir: Directory receiving published copies of outputs
        run_id: Run identifier (defaults to a timestamp)
        resume_run_id: Prior run whose ledger may satisfy tasks (or ``latest``)
        ceilings: Concurrency ceilings by resource label
        context: Extra template variables (tools, n_cpu, memory_mb, ...)
        sh_config: Shell configuration passed to every task
        publish_mode: ``copy``, ``link``, or ``symlink``
    """

    def __init__(
        self,
        graph: TaskGraph,
        params: Mapping[str, Any],
        work_dir: str | os.PathLike[str],
        publish_dir: str | os.PathLike[str] | None = None,
        run_id: str | None = None,
        resume_run_id: str | None = None,
        ceilings: Mapping[str, int] | None = None,
        context: Mapping[str, Any] | None = None,
        sh_config: Mapping[str, Any] | None = None,
        publish_mode: str = "copy",
    ) -> None:
        self.graph = graph
        self.params = dict(params)
        self.work_dir = Path(work_dir).resolve()
        self.publish_dir = Path(publish_dir).resolve() if publish_dir else None
        self.run_id = run_id or datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        if resume_run_id == LATEST_RUN:
            resume_run_id = ResumeLedger.latest_run_id(
                self.ledger_dir, exclude=self.run_id
            )
        self.resume_run_id = resume_run_id
        self.ceilings = dict(ceilings or {})
        self.context = dict(context or {})
        self.sh_config = dict(sh_config or {})
        self.publish_mode = publish_mode
        self.order: list[str] = []

    @property
    def meta_dir(self) -> Path:
        return self.work_dir.joinpath(".snpflow")

    @property
    def ledger_dir(self) -> Path:
        return self.meta_dir.joinpath("ledger")

    @property
    def run_dir(self) -> Path:
        return self.meta_dir.joinpath("runs", self.run_id)

    @property
    def plan_path(self) -> Path:
        return self.run_dir.joinpath("plan.json")

    def compile(self) -> str:
        """Validate the graph and write the run plan.

        Returns:
            Path to the plan JSON

        Raises:
            MissingInputError: If a parameter, binding, or template name is unbound
            CyclicGraphError: If the graph contains a cycle
        """
        logger = logging.getLogger(__name__)
        self.order = self.graph.validate(params=self.params, context=self.context)
        status_dir = self.run_dir.joinpath("status")
        if status_dir.is_dir():
            shutil.rmtree(status_dir)
        status_dir.mkdir(parents=True, exist_ok=True)
        plan = {
            "run_id": self.run_id,
            "resume_run_id": self.resume_run_id,
            "work_dir": str(self.work_dir),
            "publish_dir": (str(self.publish_dir) if self.publish_dir else None),
            "publish_mode": self.publish_mode,
            "ledger_dir": str(self.ledger_dir),
            "status_dir": str(status_dir),
            "params": self.params,
            "context": self.context,
            "sh_config": {
                "log_dir_path": str(self.run_dir.joinpath("log")),
                **self.sh_config,
            },
            "order": self.order,
            "stages": {s.name: s.to_dict() for s in self.graph},
        }
        tmp = self.plan_path.with_name(f".{self.plan_path.name}.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(plan, f, indent=1)
        tmp.replace(self.plan_path)
        load_plan.cache_clear()
        logger.info("run plan:\t%s", self.plan_path)
        return str(self.plan_path)

    def tasks(self) -> list[PlanTask]:
        """Compile the plan and return the sink tasks to schedule."""
        plan_path = self.compile()
        configure_resource_ceilings(self.ceilings)
        return [task_for(plan_path, s) for s in self.graph.sinks()]

    def execute(
        self, workers: int = 1, raise_on_failure: bool = True, **kwargs: Any
    ) -> "RunReport":
        """Schedule the graph with Luigi's local scheduler and report task states.

        Args:
            workers: Number of Luigi workers
            raise_on_failure: Raise RunFailure unless every task succeeded
            **kwargs: Additional arguments passed to luigi.build()

        Returns:
            Execution report

        Raises:
            RunFailure: If a task failed or was left pending and raise_on_failure
                is True
        """
        tasks = self.tasks()
        if self.resume_run_id:
            SnpflowTask.print_log(f"Resume from a run:\t{self.resume_run_id}")
        luigi.build(
            tasks,
            local_scheduler=True,
            detailed_summary=True,
            workers=workers,
            **kwargs,
        )
        report = self.collect_report()
        report.republish()
        if raise_on_failure:
            report.raise_for_failure()
        return report

    def collect_report(self) -> "RunReport":
        return RunReport.collect(str(self.plan_path))


class RunReport:
    """States of every expanded task of a run, in dependency order."""

    def __init__(self, run_id: str, records: list[dict[str, Any]]) -> None:
        self.run_id = run_id
        self.records = records
        self._tasks: dict[str, PlanTask] = {}

    @classmethod
    def collect(cls, plan_path: str) -> "RunReport":
        """Read task states from the status files of a run.

        Tasks without a status file are upstream-failed if a dependency failed,
        skipped if the ledger proves them complete, and pending otherwise.
        """
        plan = load_plan(plan_path)
        states: dict[str, str] = {}
        records: list[dict[str, Any]] = []
        tasks: dict[str, PlanTask] = {}
        for name in plan["order"]:
            for task, deps in _expand_stage(plan_path, plan, name):
                status = task.read_status()
                if status:
                    record = status
                elif any(states.get(d) in {FAILED, UPSTREAM_FAILED} for d in deps):
                    record = {
                        "state": UPSTREAM_FAILED,
                        "error_type": UpstreamFailure.__name__,
                        "failed_upstream": [
                            d
                            for d in deps
                            if states.get(d) in {FAILED, UPSTREAM_FAILED}
                        ],
                    }
                elif task.complete():
                    record = {"state": SKIPPED}
                else:
                    record = {"state": PENDING}
                record = {
                    "key": task.key,
                    "stage": task.stage_name,
                    "replica": task.ordinal,
                    **record,
                }
                states[task.key] = record["state"]
                tasks[task.key] = task
                records.append(record)
        report = cls(run_id=plan["run_id"], records=records)
        report._tasks = tasks
        return report

    def keys(self, state: str) -> list[str]:
        return [r["key"] for r in self.records if r["state"] == state]

    @property
    def failed(self) -> list[str]:
        return self.keys(FAILED)

    @property
    def upstream_failed(self) -> list[str]:
        return self.keys(UPSTREAM_FAILED)

    @property
    def pending(self) -> list[str]:
        return self.keys(PENDING)

    @property
    def succeeded(self) -> bool:
        return not (self.failed or self.upstream_failed or self.pending)

    def counts(self) -> dict[str, int]:
        return {s: len(self.keys(s)) for s in TASK_STATES}

    def republish(self) -> None:
        """Publish outputs of tasks skipped without dispatch (at-least-once)."""
        for r in self.records:
            if r["state"] == SKIPPED and r["key"] in self._tasks:
                self._tasks[r["key"]].publish()

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "succeeded": self.succeeded,
            "counts": self.counts(),
            "failed": self.failed,
            "upstream_failed": self.upstream_failed,
            "pending": self.pending,
            "tasks": self.records,
        }

    @property
    def summary_text(self) -> str:
        lines = [
            f"run {self.run_id}:\t"
            + ", ".join(f"{k}={v}" for k, v in self.counts().items() if v)
        ]
        for r in self.records:
            if r["state"] == FAILED:
                lines.append(
                    "failed:\t{} [{}] {}".format(
                        r["key"], (r.get("fingerprint") or "")[:12], r.get("error", "")
                    )
                )
                if r.get("stderr"):
                    lines.append(r["stderr"])
            elif r["state"] == UPSTREAM_FAILED:
                lines.append(
                    "upstream failed:\t{} (after {})".format(
                        r["key"], ", ".join(r.get("failed_upstream", []))
                    )
                )
        return os.linesep.join(lines)

    def raise_for_failure(self) -> None:
        """Raise RunFailure unless every task succeeded or was skipped.

        Tasks left pending, such as after a scheduling error, fail the run too.
        """
        if not self.succeeded:
            raise RunFailure(
                self.run_id,
                failed=self.failed,
                upstream_failed=self.upstream_failed,
                pending=self.pending,
            )


def _expand_stage(
    plan_path: str, plan: dict[str, Any], name: str
) -> list[tuple[PlanTask, list[str]]]:
    """Return the tasks of a stage with the keys of the tasks each depends on."""
    task = task_for(plan_path, name)
    deps = list(task.spec.upstream_stages)
    if not task.spec.is_scatter:
        return [(task, deps)]
    source = task.spec.scatter_input[1].source
    try:
        n_replicas = len(Partition.load(resolve_reference(plan, source)))
    except FileNotFoundError:
        return [(task, deps)]
    replicas = [task_for(plan_path, name, i) for i in range(n_replicas)]
    return [*[(r, deps) for r in replicas], (task, [*deps, *[r.key for r in replicas]])]
