from pathlib import Path

import luigi
import pytest

from snpflow.task.branch import Branch, branch_of, compose, cross_branch_edges
from snpflow.task.graph import TaskGraph
from snpflow.task.handle import SUCCEEDED

from .conftest import read_calls

SHARED = {"reads": "params.reads"}


def add_step(graph, name, txt, transform, publish, other=None):
    inputs = {"txt": txt}
    sources = "{{ inputs.txt }}"
    if other:
        inputs["other"] = other
        sources += " {{ inputs.other }}"
    s = graph.add_stage(
        name,
        input_bindings=inputs,
        output_bindings={"txt": f"{name.rpartition('/')[2]}.txt"},
        command=(
            "echo " + name + " >> {{ calls }}"
            " && cat " + sources + " | " + transform + " > {{ outputs.txt }}"
        ),
        publish=publish,
    )
    return f"{s.name}.txt"


def two_step_branch(transform, other=None):
    def build(g, prefix, shared):
        name = prefix.rstrip("/")
        first = add_step(g, f"{prefix}first", shared["reads"], transform, name)
        second = add_step(
            g,
            f"{prefix}second",
            first,
            "sed 's/^/>/'",
            name,
            other=(other(prefix) if other else None),
        )
        return {"txt": second}

    return build


def composed_graph(cross: bool = False):
    graph = TaskGraph()
    result_a, result_b = compose(
        graph,
        shared_input=SHARED,
        branch_a=Branch(
            name="a",
            build=two_step_branch(
                "tr a-z A-Z", other=((lambda p: "b/first.txt") if cross else None)
            ),
        ),
        branch_b=Branch(name="b", build=two_step_branch("tr acgt tgca")),
    )
    return graph, result_a, result_b


def test_compose_returns_results_of_both_branches():
    graph, result_a, result_b = composed_graph()
    assert result_a.name == "a"
    assert result_a.stages == ("a/first", "a/second")
    assert result_a.outputs == {"txt": "a/second.txt"}
    assert result_b.stages == ("b/first", "b/second")
    assert result_b.outputs == {"txt": "b/second.txt"}
    assert graph["a/first"] != graph["b/first"]
    assert graph["a/first"].publish == "a"
    assert graph["b/first"].publish == "b"
    assert cross_branch_edges(graph) == []


def test_branch_of():
    assert branch_of("a/first") == "a"
    assert branch_of("compare/concordance") == "compare"
    assert branch_of("partition") is None


def test_compose_rejects_branches_with_the_same_name():
    build = two_step_branch("cat")
    with pytest.raises(ValueError, match="distinct names"):
        compose(TaskGraph(), SHARED, Branch("a", build), Branch("a", build))


def test_compose_rejects_stages_outside_the_branch_prefix():
    def stray(g, prefix, shared):
        add_step(g, "elsewhere", shared["reads"], "cat", None)
        return {}

    with pytest.raises(ValueError, match="outside its prefix"):
        compose(
            TaskGraph(), SHARED, Branch("a", stray), Branch("b", two_step_branch("cat"))
        )


def test_compose_rejects_results_of_other_stages():
    def foreign(g, prefix, shared):
        add_step(g, f"{prefix}first", shared["reads"], "cat", None)
        return {"txt": "b/first.txt"}

    with pytest.raises(ValueError, match="not a branch output"):
        compose(
            TaskGraph(),
            SHARED,
            Branch("a", foreign),
            Branch("b", two_step_branch("cat")),
        )


def test_cross_branch_edge_blocks_only_the_consuming_stage(make_run, tmp_path: Path):
    graph, _, _ = composed_graph(cross=True)
    assert cross_branch_edges(graph) == [("b/first", "a/second")]
    assert graph.upstream("a/second") == ["a/first", "b/first"]
    report = make_run(graph=graph).execute(workers=2, log_level="WARNING")
    assert report.succeeded
    assert {r["state"] for r in report.records} == {SUCCEEDED}
    calls = read_calls(make_run.calls)
    assert sorted(calls) == ["a/first", "a/second", "b/first", "b/second"]
    assert calls.index("b/first") < calls.index("a/second")
    assert calls.index("a/first") < calls.index("a/second")
    second = tmp_path.joinpath("work", "a", "second", "second.txt").read_text()
    assert second.splitlines() == [">ACGT", ">tgca"]
    published = tmp_path.joinpath("published", "a", "second", "second.txt")
    assert published.read_text() == second


def _branch_outputs(tmp_path: Path) -> dict[str, str]:
    return {
        s: tmp_path.joinpath("work", *s.split("/"), f"{s.split('/')[1]}.txt")
        .read_text()
        for s in ["a/first", "a/second", "b/first", "b/second"]
    }


def test_branches_give_the_same_results_sequentially_and_interleaved(
    make_run, tmp_path: Path
):
    graph, _, _ = composed_graph()
    sinks = make_run(graph=graph, run_id="sequential").tasks()
    for name in ["a", "b"]:
        assert luigi.build(
            [t for t in sinks if t.stage_name.startswith(f"{name}/")],
            local_scheduler=True,
            log_level="WARNING",
        )
    sequential = _branch_outputs(tmp_path)
    n_calls = len(read_calls(make_run.calls))
    assert n_calls == 4
    report = make_run(graph=composed_graph()[0], run_id="interleaved").execute(
        workers=4, log_level="WARNING"
    )
    assert report.succeeded
    assert len(read_calls(make_run.calls)) == 2 * n_calls
    assert _branch_outputs(tmp_path) == sequential
    assert sequential["a/second"] == ">ACGT\n"
    assert sequential["b/second"] == ">tgca\n"
