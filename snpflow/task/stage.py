"""Luigi tasks executing the stages of a compiled run plan.

A run plan is a JSON document written by the run controller. It holds the stage
specifications, run parameters, template context, and the run directories. Every
task is identified by (plan path, stage name, replica index), so tasks can be
re-created from their parameters alone, as Luigi requires for dynamic
dependencies.
"""

import json
import os
import shutil
import subprocess
from collections.abc import Generator
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any

import luigi

from .core import SnpflowTask
from .errors import ExternalCommandFailure, MissingInputError
from .graph import (
    COMBINE,
    PARTITION_STAGE,
    StageSpec,
    parse_reference,
    render_command,
)
from .handle import FAILED, SKIPPED, SUCCEEDED, TaskHandle
from .ledger import ResumeLedger, compute_fingerprint, is_materialized
from .partition import Partition, partition
from .scatter import gather, scatter

PUBLISH_MODES = ("copy", "link", "symlink")


@lru_cache(maxsize=64)
def load_plan(plan_path: str) -> dict[str, Any]:
    """Load a run plan (cached per path; plans are immutable once written)."""
    with Path(plan_path).open(encoding="utf-8") as f:
        return json.load(f)


def task_key(stage_name: str, replica_index: int = -1) -> str:
    return f"{stage_name}[{replica_index}]" if replica_index >= 0 else stage_name


def stage_dir(plan: dict[str, Any], stage_name: str, replica_index: int = -1) -> Path:
    d = Path(plan["work_dir"]).joinpath(stage_name)
    return d.joinpath(f"{replica_index:05d}") if replica_index >= 0 else d


def manifest_path(plan: dict[str, Any], stage_name: str) -> Path:
    return stage_dir(plan, stage_name).joinpath("gathered.json")


def resolve_reference(plan: dict[str, Any], source: str) -> Any:
    """Resolve ``<stage>.<binding>`` to its working location(s).

    Outputs of scatter stages resolve through the gather manifest to a list
    ordered by partition index (or to the combined file).

    Raises:
        MissingInputError: If a gathered output is not available yet
    """
    producer, binding = parse_reference(source)
    spec = StageSpec.from_dict(plan["stages"][producer])
    if spec.is_scatter:
        m = manifest_path(plan, producer)
        if not m.is_file():
            msg = f"Gathered output is not available: {source}"
            raise MissingInputError(msg)
        with m.open(encoding="utf-8") as f:
            return json.load(f)["outputs"][binding]
    return str(stage_dir(plan, producer).joinpath(spec.outputs[binding]))


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, tuple)) and not value)


def check_inputs(spec: StageSpec, resolved: dict[str, Any]) -> None:
    """Check that every required binding is bound, non-empty, and present.

    Raises:
        MissingInputError: If a required binding fails the check
    """
    for k, v in spec.inputs.items():
        if v.scatter and k not in resolved:
            continue
        value = resolved.get(k)
        if _is_empty(value):
            if v.optional:
                continue
            msg = f"{spec.name}.{k} is unbound or empty ({v.source})"
            raise MissingInputError(msg)
        if v.kind == "file" and not v.scatter:
            paths = value if isinstance(value, (list, tuple)) else [value]
            missing = [str(p) for p in paths if not Path(str(p)).exists()]
            if missing:
                msg = "{}.{} refers to missing files: {}".format(
                    spec.name, k, ", ".join(missing)
                )
                raise MissingInputError(msg)


def publish_file(
    src: str | os.PathLike[str], dest: str | os.PathLike[str], mode: str = "copy"
) -> None:
    """Copy or link a file into the publish directory, replacing older copies.

    Args:
        src: Working location
        dest: Published location
        mode: ``copy``, ``link`` (hard link, falls back to copy), or ``symlink``
    """
    if mode not in PUBLISH_MODES:
        msg = f"Unknown publish mode: {mode}"
        raise ValueError(msg)
    d = Path(dest)
    d.parent.mkdir(parents=True, exist_ok=True)
    if d.exists() or d.is_symlink():
        d.unlink()
    if mode == "symlink":
        d.symlink_to(Path(src).resolve())
    elif mode == "link":
        try:
            os.link(src, d)
        except OSError:
            shutil.copy2(src, d)
    else:
        shutil.copy2(src, d)


class PlanTask(SnpflowTask):
    """Base task bound to one stage of a run plan.

    Parameters:
        plan_path: Path to the run plan JSON.
        stage_name: Stage name within the plan.
    """

    plan_path = luigi.Parameter()
    stage_name = luigi.Parameter()
    replica_index = -1

    @property
    def plan(self) -> dict[str, Any]:
        return load_plan(str(self.plan_path))

    @property
    def spec(self) -> StageSpec:
        return StageSpec.from_dict(self.plan["stages"][self.stage_name])

    @property
    def key(self) -> str:
        return task_key(self.stage_name, self.replica_index)

    @property
    def ordinal(self) -> int | None:
        return self.replica_index if self.replica_index >= 0 else None

    @property
    def ledger(self) -> ResumeLedger:
        return ResumeLedger(
            ledger_dir=self.plan["ledger_dir"],
            run_id=self.plan["run_id"],
            resume_run_id=self.plan.get("resume_run_id"),
        )

    @property
    def resources(self) -> dict[str, int]:
        return {self.spec.label: 1}

    @property
    def dest_dir(self) -> Path:
        return stage_dir(self.plan, self.stage_name, self.replica_index)

    def requires(self) -> dict[str, luigi.Task]:
        return {
            k: task_for(str(self.plan_path), v.producer)
            for k, v in self.spec.inputs.items()
            if v.producer
        }

    def output_map(self) -> dict[str, Any]:
        return {
            k: str(self.dest_dir.joinpath(v)) for k, v in self.spec.outputs.items()
        }

    def output(self) -> dict[str, luigi.LocalTarget]:
        return {k: luigi.LocalTarget(v) for k, v in self.output_map().items()}

    def resolved_inputs(self) -> dict[str, Any]:
        """Resolve every input binding to paths, scalars, or an interval."""
        resolved: dict[str, Any] = {}
        for k, v in self.spec.inputs.items():
            if v.scatter and self.replica_index < 0:
                continue
            elif v.scatter:
                resolved[k] = self.load_partition()[self.replica_index]
            elif v.is_param:
                resolved[k] = self.plan["params"].get(v.param_key)
            else:
                resolved[k] = resolve_reference(self.plan, v.source)
        return resolved

    def load_partition(self) -> Partition:
        scatter_input = self.spec.scatter_input
        if scatter_input is None:
            msg = f"{self.stage_name} does not scatter over a partition"
            raise ValueError(msg)
        return Partition.load(resolve_reference(self.plan, scatter_input[1].source))

    def fingerprint(self, resolved: dict[str, Any] | None = None) -> str:
        spec = self.spec
        return compute_fingerprint(
            stage=self.stage_name,
            ordinal=self.ordinal,
            inputs=(self.resolved_inputs() if resolved is None else resolved),
            command=spec.command,
            label=spec.label,
            kinds={
                k: ("file" if v.producer and not v.scatter else v.kind)
                for k, v in spec.inputs.items()
            },
        )

    def complete(self) -> bool:
        """Check the ledger for this task's fingerprint.

        A task is complete only if its ancestors are complete and the ledger
        holds an entry for its fingerprint with outputs at the working locations.
        """
        try:
            if not all(t.complete() for t in luigi.task.flatten(self.requires())):
                return False
            fingerprint = self.fingerprint()
        except (MissingInputError, FileNotFoundError, IndexError):
            return False
        cached = self.ledger.should_skip(fingerprint)
        return cached is not None and cached == self.output_map()

    def dispatch(self) -> None:
        """Check inputs and the ledger, then execute, record, and publish."""
        started = datetime.now(UTC)
        fingerprint = None
        try:
            resolved = self.resolved_inputs()
            check_inputs(self.spec, resolved)
            fingerprint = self.fingerprint(resolved)
            with self.ledger.exclusive(fingerprint):
                cached = self.ledger.should_skip(fingerprint)
                if cached is not None:
                    self.print_log(f"Skip a completed task:\t{self.key}")
                    self.restore(cached, fingerprint=fingerprint)
                    state = SKIPPED
                else:
                    self.print_log(f"Run a task:\t{self.key}")
                    self.execute(resolved, fingerprint=fingerprint)
                    self.ledger.record(fingerprint, self.output_map(), stage=self.key)
                    state = SUCCEEDED
        except Exception as e:
            self.write_status(FAILED, fingerprint=fingerprint, error=e, started=started)
            raise
        self.publish()
        self.write_status(state, fingerprint=fingerprint, started=started)

    def execute(self, resolved: dict[str, Any], fingerprint: str) -> None:
        raise NotImplementedError

    def restore(self, cached: dict[str, Any], fingerprint: str) -> None:
        """Materialize cached outputs at the working locations."""
        expected = self.output_map()
        moved = False
        for k, dest in expected.items():
            src = cached.get(k)
            if src and src != dest:
                Path(dest).parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
                moved = True
        if moved:
            self.ledger.record(fingerprint, expected, stage=self.key)

    def run_external(
        self,
        command: str,
        fingerprint: str,
        input_paths: list[str],
        output_paths: list[str],
    ) -> None:
        """Run a rendered command and verify its declared outputs.

        Raises:
            ExternalCommandFailure: If the command exits non-zero or an output is
                missing after exit
        """
        self.remove_files_and_dirs(*output_paths)
        self.setup_shell(
            run_id=self.key.replace("/", "__"),
            cwd=self.dest_dir,
            **self.plan.get("sh_config", {}),
        )
        try:
            self.run_shell(
                args=f"set -eo pipefail && {command}",
                input_files_or_dirs=input_paths,
                output_files_or_dirs=output_paths,
            )
        except subprocess.CalledProcessError as e:
            raise ExternalCommandFailure(
                stage=self.key,
                fingerprint=fingerprint,
                exit_status=e.returncode,
                stderr=(self.read_log_tail() or _decode(e.stderr)),
            ) from e
        except FileNotFoundError as e:
            self.remove_files_and_dirs(*output_paths)
            raise ExternalCommandFailure(
                stage=self.key,
                fingerprint=fingerprint,
                exit_status=0,
                stderr=(self.read_log_tail() or str(e)),
                missing_outputs=[p for p in output_paths if not is_materialized(p)],
            ) from e
        missing = [p for p in output_paths if not is_materialized(p)]
        if missing:
            self.remove_files_and_dirs(*output_paths)
            raise ExternalCommandFailure(
                stage=self.key,
                fingerprint=fingerprint,
                exit_status=0,
                stderr=self.read_log_tail(),
                missing_outputs=missing,
            )

    def publish(self) -> list[str]:
        """Copy outputs to ``<publish_dir>/<prefix>/<stage>/`` (at-least-once).

        Returns:
            Published paths
        """
        spec = self.spec
        if spec.publish is None or not self.plan.get("publish_dir"):
            return []
        dest_dir = Path(self.plan["publish_dir"]).joinpath(
            spec.publish, spec.name.rsplit("/", 1)[-1]
        )
        if self.replica_index >= 0:
            dest_dir = dest_dir.joinpath(f"{self.replica_index:05d}")
        published = []
        for k, v in self.output_map().items():
            if k == "manifest":
                continue
            for src in v if isinstance(v, list) else [v]:
                dest = dest_dir.joinpath(Path(src).name)
                publish_file(src, dest, mode=self.plan.get("publish_mode", "copy"))
                published.append(str(dest))
        return published

    def status_path(self) -> Path:
        name = self.key.replace("/", "__").replace("[", ".").replace("]", "")
        return Path(self.plan["status_dir"]).joinpath(f"{name}.json")

    def read_status(self) -> dict[str, Any] | None:
        p = self.status_path()
        if not p.is_file():
            return None
        with p.open(encoding="utf-8") as f:
            return json.load(f)

    def write_status(
        self,
        state: str,
        fingerprint: str | None = None,
        error: Exception | None = None,
        started: datetime | None = None,
    ) -> None:
        record = {
            "key": self.key,
            "stage": self.stage_name,
            "replica": self.ordinal,
            "state": state,
            "fingerprint": fingerprint,
            "elapsed": (
                (datetime.now(UTC) - started).total_seconds() if started else None
            ),
        }
        if error is not None:
            record.update({
                "error_type": type(error).__name__,
                "error": str(error),
                "exit_status": getattr(error, "exit_status", None),
                "stderr": getattr(error, "stderr", ""),
            })
        p = self.status_path()
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(f".{p.name}.{os.getpid()}.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(record, f, indent=1)
        tmp.replace(p)


def _decode(stream: bytes | str | None) -> str:
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream or ""


class StageTask(PlanTask):
    """Luigi task running the command of one stage (or one scatter replica).

    Parameters:
        plan_path: Path to the run plan JSON.
        stage_name: Stage name within the plan.
        replica_index: Partition index for scatter replicas (-1 otherwise).
    """

    replica_index = luigi.IntParameter(default=-1)

    def run(self) -> None:
        self.dispatch()

    def execute(self, resolved: dict[str, Any], fingerprint: str) -> None:
        spec = self.spec
        outputs = self.output_map()
        command = render_command(
            spec.command, inputs=resolved, outputs=outputs, **self.plan["context"]
        )
        file_inputs = [
            str(p)
            for k, v in spec.inputs.items()
            if v.kind == "file" and not v.scatter and resolved.get(k)
            for p in (
                resolved[k] if isinstance(resolved[k], (list, tuple)) else [resolved[k]]
            )
        ]
        self.run_external(
            command,
            fingerprint=fingerprint,
            input_paths=file_inputs,
            output_paths=list(outputs.values()),
        )


class PartitionTask(PlanTask):
    """Luigi task writing the interval partition of a genome descriptor.

    Parameters:
        plan_path: Path to the run plan JSON.
        stage_name: Stage name within the plan.
    """

    def run(self) -> None:
        self.dispatch()

    def execute(self, resolved: dict[str, Any], fingerprint: str) -> None:
        out = Path(self.output_map()["intervals"])
        self.make_dirs(out.parent)
        p = partition(resolved["genome"], int(resolved["chunk_size"]))
        p.write(out)
        self.print_log(f"Partition a genome:\t{len(p)} intervals", new_line=False)


class GatherTask(PlanTask):
    """Luigi task scattering a stage over its partition and gathering the replicas.

    The replicas are yielded as dynamic dependencies because the partition size is
    only known once the partitioner has run.

    Parameters:
        plan_path: Path to the run plan JSON.
        stage_name: Stage name within the plan.
    """

    def replica_handles(self) -> list[TaskHandle]:
        return scatter(
            lambda i: StageTask(
                plan_path=self.plan_path, stage_name=self.stage_name, replica_index=i
            ),
            self.load_partition(),
        )

    def output_map(self) -> dict[str, Any]:
        spec = self.spec
        return {
            **(
                {
                    k: str(self.dest_dir.joinpath(v))
                    for k, v in spec.combined_outputs.items()
                }
                if spec.merge == COMBINE
                else {}
            ),
            "manifest": str(manifest_path(self.plan, self.stage_name)),
        }

    def fingerprint(self, resolved: dict[str, Any] | None = None) -> str:
        spec = self.spec
        return compute_fingerprint(
            stage=self.stage_name,
            ordinal=None,
            inputs={"replicas": [h.task.fingerprint() for h in self.replica_handles()]},
            command=f"{spec.merge}:{spec.combiner}",
            label=spec.label,
            kinds={"replicas": "scalar"},
        )

    def complete(self) -> bool:
        try:
            handles = self.replica_handles()
        except (MissingInputError, FileNotFoundError):
            return False
        return all(h.task.complete() for h in handles) and super().complete()

    def run(self) -> Generator[list[luigi.Task], None, None]:
        handles = self.replica_handles()
        yield [h.task for h in handles]
        self.dispatch()

    def execute(self, resolved: dict[str, Any], fingerprint: str) -> None:
        spec = self.spec
        gathered = gather(self.replica_handles(), merge_strategy=spec.merge)
        outputs = self.output_map()
        self.make_dirs(self.dest_dir)
        if spec.merge == COMBINE:
            combined = {k: v for k, v in outputs.items() if k != "manifest"}
            shared = {
                k: v
                for k, v in resolved.items()
                if k not in gathered.outputs and not spec.inputs[k].scatter
            }
            command = render_command(
                spec.combiner,
                inputs={**shared, **gathered.outputs},
                outputs=combined,
                **self.plan["context"],
            )
            self.run_external(
                command,
                fingerprint=fingerprint,
                input_paths=[p for v in gathered.outputs.values() for p in v],
                output_paths=list(combined.values()),
            )
        else:
            combined = {}
        m = Path(outputs["manifest"])
        tmp = m.with_name(f".{m.name}.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(
                {**gathered.to_dict(), "outputs": {**gathered.outputs, **combined}},
                f,
                indent=1,
            )
        tmp.replace(m)


def task_for(plan_path: str, stage_name: str, replica_index: int = -1) -> PlanTask:
    """Create the Luigi task for a stage (or one of its replicas)."""
    spec = StageSpec.from_dict(load_plan(plan_path)["stages"][stage_name])
    if spec.kind == PARTITION_STAGE:
        return PartitionTask(plan_path=plan_path, stage_name=stage_name)
    elif spec.is_scatter and replica_index < 0:
        return GatherTask(plan_path=plan_path, stage_name=stage_name)
    else:
        return StageTask(
            plan_path=plan_path, stage_name=stage_name, replica_index=replica_index
        )


def submit(plan_path: str, stage_name: str, replica_index: int = -1) -> TaskHandle:
    """Create the task of a stage after checking its bindings.

    Args:
        plan_path: Path to the run plan JSON
        stage_name: Stage name
        replica_index: Partition index for a scatter replica

    Returns:
        Handle exposing the task's named outputs

    Raises:
        MissingInputError: If a required binding is unbound or empty
    """
    plan = load_plan(plan_path)
    if stage_name not in plan["stages"]:
        msg = f"Unknown stage: {stage_name}"
        raise MissingInputError(msg)
    spec = StageSpec.from_dict(plan["stages"][stage_name])
    for k, v in spec.inputs.items():
        if v.optional:
            continue
        if v.is_param and _is_empty(plan["params"].get(v.param_key)):
            msg = f"{stage_name}.{k} is unbound or empty ({v.source})"
            raise MissingInputError(msg)
        if v.producer and v.producer not in plan["stages"]:
            msg = f"{stage_name}.{k} has no producer ({v.source})"
            raise MissingInputError(msg)
    return TaskHandle(task_for(plan_path, stage_name, replica_index))
