from dataclasses import dataclass

import pytest

from snpflow.task.errors import UpstreamFailure
from snpflow.task.graph import COMBINE, CONCATENATE
from snpflow.task.handle import FAILED, PENDING, SUCCEEDED, TaskHandle
from snpflow.task.partition import partition
from snpflow.task.scatter import gather, scatter


@dataclass
class FakeTask:
    stage_name: str
    replica_index: int
    state: str = SUCCEEDED

    @property
    def key(self) -> str:
        return f"{self.stage_name}[{self.replica_index}]"

    def complete(self) -> bool:
        return self.state == SUCCEEDED

    def output_map(self) -> dict:
        return {"vcf": f"/work/call/{self.replica_index:05d}/call.vcf"}

    def read_status(self) -> dict | None:
        return None if self.state == PENDING else {"state": self.state}


def test_scatter_creates_one_replica_per_interval():
    p = partition([("chr1", 400)], chunk_size=100)
    handles = scatter(lambda i: FakeTask("call", i), p)
    assert len(handles) == len(p) == 4
    assert [h.task.replica_index for h in handles] == [0, 1, 2, 3]
    assert handles[2].key == "call[2]"


def test_gather_orders_outputs_by_partition_index():
    handles = [TaskHandle(FakeTask("call", i)) for i in (2, 0, 3, 1)]
    gathered = gather(handles, merge_strategy=CONCATENATE)
    assert gathered.n_replicas == 4
    assert gathered.outputs["vcf"] == [
        f"/work/call/{i:05d}/call.vcf" for i in range(4)
    ]
    assert gather(handles, merge_strategy=COMBINE).outputs == gathered.outputs


def test_gather_fails_fast_on_a_failed_replica():
    handles = [
        TaskHandle(FakeTask("call", 0)),
        TaskHandle(FakeTask("call", 1, state=PENDING)),
        TaskHandle(FakeTask("call", 2, state=FAILED)),
        TaskHandle(FakeTask("call", 3)),
    ]
    with pytest.raises(UpstreamFailure) as e:
        gather(handles)
    assert e.value.failed == ["call[2]"]


def test_gather_waits_for_unresolved_replicas():
    handles = [
        TaskHandle(FakeTask("call", 0)),
        TaskHandle(FakeTask("call", 1, PENDING)),
    ]
    with pytest.raises(LookupError):
        gather(handles)


def test_gather_rejects_unknown_merge_strategy():
    with pytest.raises(ValueError):
        gather([TaskHandle(FakeTask("call", 0))], merge_strategy="zip")


def test_handle_result_of_failed_task_raises_upstream_failure():
    h = TaskHandle(FakeTask("align", 0, state=FAILED))
    assert h.failed()
    with pytest.raises(UpstreamFailure):
        h.result()
