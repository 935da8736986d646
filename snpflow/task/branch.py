"""Composition of two alternative sub-pipelines over a shared input."""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from .graph import TaskGraph, parse_reference

BranchBuilder = Callable[[TaskGraph, str, Mapping[str, str]], Mapping[str, str]]


@dataclass(frozen=True)
class Branch:
    """A named sub-pipeline added to a graph under its publish prefix.

    Attributes:
        name: Branch name, also the stage name and publish prefix (``<name>/<stage>``)
        build: Callable adding the branch stages to a graph. It receives the graph,
            the stage name prefix, and the shared input references, and returns
            the branch results as references (``<stage>.<output>``)
    """

    name: str
    build: BranchBuilder

    @property
    def prefix(self) -> str:
        return f"{self.name}/"


@dataclass(frozen=True)
class BranchResult:
    """Stages and result references added by one branch."""

    name: str
    stages: tuple[str, ...]
    outputs: Mapping[str, str] = field(default_factory=dict)


def branch_of(stage_name: str) -> str | None:
    """Return the branch name of a prefixed stage, or None for shared stages."""
    head, sep, _ = stage_name.partition("/")
    return head if sep else None


def cross_branch_edges(graph: TaskGraph) -> list[tuple[str, str]]:
    """List (producer, consumer) pairs whose stages belong to different branches."""
    return [
        (u, s.name)
        for s in graph
        for u in s.upstream_stages
        if branch_of(u) and branch_of(s.name) and branch_of(u) != branch_of(s.name)
    ]


def compose(
    graph: TaskGraph,
    shared_input: Mapping[str, str],
    branch_a: Branch,
    branch_b: Branch,
) -> tuple[BranchResult, BranchResult]:
    """Add two branches consuming the same shared input to a graph.

    The branches are independent sub-graphs scheduled concurrently. A stage of one
    branch may consume an output of the other; such a reference is an ordinary
    edge, so only the consuming stage waits for the producing stage.

    Args:
        graph: Graph to extend
        shared_input: Shared input references by name
        branch_a: First branch
        branch_b: Second branch

    Returns:
        Results of both branches, in argument order

    Raises:
        ValueError: If the branches share a name or add stages outside their
            prefix, or a result is not an output of the branch
    """
    logger = logging.getLogger(__name__)
    if branch_a.name == branch_b.name:
        msg = f"Branches must have distinct names: {branch_a.name}"
        raise ValueError(msg)
    results = []
    for b in (branch_a, branch_b):
        before = {s.name for s in graph}
        outputs = dict(b.build(graph, b.prefix, shared_input))
        added = tuple(s.name for s in graph if s.name not in before)
        stray = [s for s in added if not s.startswith(b.prefix)]
        if stray:
            msg = "Branch {} added stages outside its prefix: {}".format(
                b.name, ", ".join(stray)
            )
            raise ValueError(msg)
        for k, v in outputs.items():
            if parse_reference(v)[0] not in added:
                msg = f"Branch result {b.name}.{k} is not a branch output: {v}"
                raise ValueError(msg)
        logger.debug("branch %s:\t%d stages", b.name, len(added))
        results.append(BranchResult(name=b.name, stages=added, outputs=outputs))
    for u, c in cross_branch_edges(graph):
        logger.info("cross-branch edge:\t%s -> %s", u, c)
    return results[0], results[1]
