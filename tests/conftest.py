"""Shared fixtures for snpflow tests.

The toy graph runs real ``bash`` commands through the Luigi local scheduler: a
partitioner over a small FASTA index, a preparation stage, a calling stage
scattered over the intervals and combined with ``cat``, and a summary stage.
Every command appends its task name to a call log, so tests can count dispatches.
"""

from pathlib import Path

import pytest

from snpflow.task.controller import Run
from snpflow.task.graph import COMBINE, Input, TaskGraph, partition_stage


def build_toy_graph() -> TaskGraph:
    graph = TaskGraph()
    graph.add(
        partition_stage(
            "partition", genome="params.genome", chunk_size="params.chunk_size"
        )
    )
    graph.add_stage(
        "prepare",
        input_bindings={"reads": "params.reads"},
        output_bindings={"txt": "prepared.txt"},
        command=(
            "echo prepare >> {{ calls }}"
            " && tr a-z A-Z < {{ inputs.reads }} > {{ outputs.txt }}"
        ),
        publish="toy",
    )
    graph.add_stage(
        "call",
        input_bindings={
            "txt": "prepare.txt",
            "interval": Input("partition.intervals", kind="interval", scatter=True),
        },
        output_bindings={"vcf": "call.txt"},
        command=(
            "echo 'call[{{ inputs.interval.index }}]' >> {{ calls }}"
            "{% if inputs.interval.index == fail_index %} && exit 3{% endif %}"
            " && echo {{ inputs.interval.region }} $(head -1 {{ inputs.txt }})"
            " > {{ outputs.vcf }}"
        ),
        label="cpu_heavy",
        merge=COMBINE,
        combiner=(
            "echo call >> {{ calls }}"
            " && cat{% for v in inputs.vcf %} {{ v }}{% endfor %} > {{ outputs.vcf }}"
        ),
        combined_outputs={"vcf": "called.txt"},
        publish="toy",
    )
    graph.add_stage(
        "summarize",
        input_bindings={"vcf": "call.vcf"},
        output_bindings={"txt": "summary.txt"},
        command=(
            "echo summarize >> {{ calls }}"
            " && wc -l < {{ inputs.vcf }} > {{ outputs.txt }}"
        ),
        publish="toy",
    )
    return graph


def read_calls(path: Path) -> list[str]:
    return path.read_text().split() if path.is_file() else []


@pytest.fixture
def genome_fai(tmp_path: Path) -> Path:
    p = tmp_path.joinpath("genome.fa.fai")
    p.write_text("chr1\t300\t6\t60\t61\nchr2\t100\t318\t60\t61\n")
    return p


@pytest.fixture
def reads_txt(tmp_path: Path) -> Path:
    p = tmp_path.joinpath("reads.txt")
    p.write_text("acgt\n")
    return p


@pytest.fixture
def toy_params(genome_fai: Path, reads_txt: Path) -> dict:
    return {"genome": str(genome_fai), "chunk_size": 100, "reads": str(reads_txt)}


@pytest.fixture
def make_run(tmp_path: Path, toy_params: dict):
    """Return a factory of runs over one working directory."""
    calls = tmp_path.joinpath("calls.txt")

    def _make_run(
        graph: TaskGraph | None = None,
        run_id: str = "run1",
        fail_index: int = -1,
        params: dict | None = None,
        **kwargs,
    ) -> Run:
        return Run(
            graph=(graph or build_toy_graph()),
            params=(params or toy_params),
            work_dir=tmp_path.joinpath("work"),
            publish_dir=tmp_path.joinpath("published"),
            run_id=run_id,
            context={"calls": str(calls), "fail_index": fail_index},
            **kwargs,
        )

    _make_run.calls = calls
    return _make_run
