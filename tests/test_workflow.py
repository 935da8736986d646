import pytest

from snpflow.task.branch import cross_branch_edges
from snpflow.task.errors import MissingInputError
from snpflow.task.graph import COMBINE
from snpflow.task.workflow import TOOLS, build_variant_graph

CONTEXT = {"tools": {t: f"/usr/bin/{t}" for t in TOOLS}, "n_cpu": 2, "memory_mb": 1024}


@pytest.fixture
def graph():
    return build_variant_graph()


@pytest.fixture
def params(graph):
    return {
        **{k: f"/data/{k}" for k in graph.required_params()},
        "known_sites_vcf": ["/data/dbsnp.vcf.gz"],
        "chunk_size": 1000,
        "min_mapping_quality": 20,
        "read_group": "@RG\\tID:0\\tSM:sample01",
    }


def test_variant_graph_validates_and_starts_from_the_reference(graph, params):
    order = graph.validate(params=params, context=CONTEXT)
    assert order[0] == "reference/prepare"
    assert set(order) == {s.name for s in graph}
    assert order[-1] == "compare/concordance"
    for s in graph:
        assert all(order.index(u) < order.index(s.name) for u in s.upstream_stages)


def test_variant_graph_requires_run_parameters(graph):
    assert set(graph.required_params()) == {
        "fasta",
        "chunk_size",
        "fq_r1",
        "fq_r2",
        "contaminant_index",
        "known_sites_vcf",
        "read_group",
        "min_mapping_quality",
    }


def test_variant_graph_rejects_a_missing_parameter(graph, params):
    del params["known_sites_vcf"]
    with pytest.raises(MissingInputError, match="known_sites_vcf"):
        graph.validate(params=params, context=CONTEXT)


def test_variant_graph_rejects_a_missing_tool(graph, params):
    tools = {k: v for k, v in CONTEXT["tools"].items() if k != "pbrun"}
    with pytest.raises(MissingInputError):
        graph.validate(params=params, context={**CONTEXT, "tools": tools})


def test_branches_share_stage_factories_under_their_prefixes(graph):
    names = {s.name for s in graph}
    for stage in ["decontaminate", "cleanup", "call", "filter", "select_snps"]:
        assert f"accelerated/{stage}" in names
        assert f"classic/{stage}" in names
        assert graph[f"accelerated/{stage}"].publish == "accelerated"
        assert graph[f"classic/{stage}"].publish == "classic"
    assert "accelerated/normalize" in names
    assert "classic/normalize" not in names


def test_classic_branch_consumes_the_accelerated_normalized_reads(graph):
    assert ("accelerated/normalize", "classic/decontaminate") in cross_branch_edges(
        graph
    )
    assert graph.upstream("classic/decontaminate") == ["accelerated/normalize"]


def test_calling_scatters_over_the_reference_partition(graph):
    for prefix in ["accelerated/", "classic/"]:
        call = graph[f"{prefix}call"]
        assert call.scatter_input[1].source == "reference/partition.intervals"
        assert call.merge == COMBINE
        assert set(call.combined_outputs) == {"vcf", "tbi"}
        assert call.label == "cpu_heavy"
    assert graph["accelerated/align"].label == "gpu"
    assert graph["classic/markdup"].label == "memory_heavy"


def test_concordance_joins_both_branches(graph):
    assert graph.sinks() == ["compare/concordance"]
    assert sorted(graph.upstream("compare/concordance")) == [
        "accelerated/select_snps",
        "classic/select_snps",
    ]
