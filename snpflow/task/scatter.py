"""Scatter replicas of a stage over a partition and gather their outputs."""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import UpstreamFailure
from .graph import CONCATENATE, MERGE_STRATEGIES
from .handle import TaskHandle
from .partition import Partition


@dataclass(frozen=True)
class GatheredOutput:
    """Replica outputs of one scattered stage, ordered by partition index."""

    stage: str
    merge_strategy: str
    outputs: dict[str, list[Any]] = field(default_factory=dict)
    n_replicas: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "merge": self.merge_strategy,
            "replicas": self.n_replicas,
            "outputs": self.outputs,
        }


def scatter(template: Callable[[int], Any], partition: Partition) -> list[TaskHandle]:
    """Instantiate one replica task per partition element.

    Args:
        template: Factory returning the replica task for a partition index
        partition: Partition produced at run time

    Returns:
        Handles of the replicas, in partition order
    """
    logger = logging.getLogger(__name__)
    handles = [TaskHandle(template(i.index)) for i in partition]
    logger.debug("scatter:\t%d replicas", len(handles))
    return handles


def gather(
    handles: Sequence[TaskHandle], merge_strategy: str = CONCATENATE
) -> GatheredOutput:
    """Merge replica outputs once every replica resolved.

    A single failed replica fails the gather without looking at the others.

    Args:
        handles: Replica handles
        merge_strategy: ``concatenate`` or ``combine``

    Returns:
        Gathered output with one ordered list per output binding

    Raises:
        UpstreamFailure: If any replica failed
        LookupError: If a replica has not resolved
        ValueError: If the merge strategy is unknown
    """
    if merge_strategy not in MERGE_STRATEGIES:
        msg = f"Unknown merge strategy: {merge_strategy}"
        raise ValueError(msg)
    stage = handles[0].stage if handles else ""
    for h in handles:
        if h.failed():
            raise UpstreamFailure(stage, [h.key])
    ordered = sorted(handles, key=lambda h: h.task.replica_index)
    results = [h.result() for h in ordered]
    bindings: Iterable[str] = results[0].keys() if results else []
    return GatheredOutput(
        stage=stage,
        merge_strategy=merge_strategy,
        outputs={b: [r[b] for r in results] for b in bindings},
        n_replicas=len(results),
    )
