import time
from pathlib import Path

import pytest

from snpflow.task.ledger import (
    LATEST_RUN,
    ResumeLedger,
    compute_fingerprint,
    content_identity,
)
from snpflow.task.partition import Interval


def _fingerprint(path: Path, **kwargs) -> str:
    return compute_fingerprint(
        **{
            "stage": "call",
            "ordinal": 0,
            "inputs": {"bam": str(path), "mapq": 20},
            "command": "call {{ inputs.bam }}",
            "label": "cpu_heavy",
            "kinds": {"mapq": "scalar"},
            **kwargs,
        }
    )


def test_fingerprint_depends_on_content_not_location(tmp_path: Path):
    a = tmp_path.joinpath("a.bam")
    b = tmp_path.joinpath("b.bam")
    a.write_text("reads")
    b.write_text("reads")
    assert _fingerprint(a) == _fingerprint(b)
    b.write_text("other reads")
    assert _fingerprint(a) != _fingerprint(b)


def test_fingerprint_depends_on_identity_command_and_label(tmp_path: Path):
    a = tmp_path.joinpath("a.bam")
    a.write_text("reads")
    base = _fingerprint(a)
    assert _fingerprint(a) == base
    assert _fingerprint(a, ordinal=1) != base
    assert _fingerprint(a, stage="other") != base
    assert _fingerprint(a, command="call2") != base
    assert _fingerprint(a, label="gpu") != base
    assert _fingerprint(a, inputs={"bam": str(a), "mapq": 30}) != base


def test_content_identity_of_intervals_and_lists(tmp_path: Path):
    a = tmp_path.joinpath("a.txt")
    a.write_text("x")
    i = Interval(index=1, contig="chr1", start=100, end=200)
    assert content_identity(i) == {
        "index": 1,
        "contig": "chr1",
        "start": 100,
        "end": 200,
    }
    ids = content_identity([str(a), str(a)])
    assert len(ids) == 2
    assert ids[0].startswith("sha256:")
    assert content_identity(5, kind="scalar") == 5


def test_record_then_should_skip(tmp_path: Path):
    out = tmp_path.joinpath("out.txt")
    out.write_text("done")
    ledger = ResumeLedger(tmp_path.joinpath("ledger"), run_id="r1")
    assert ledger.should_skip("f" * 64) is None
    ledger.record("f" * 64, {"txt": str(out)}, stage="s")
    assert ledger.should_skip("f" * 64) == {"txt": str(out)}
    assert list(ledger.entries()) == ["f" * 64]


def test_record_refuses_missing_or_empty_outputs(tmp_path: Path):
    empty = tmp_path.joinpath("empty.txt")
    empty.touch()
    ledger = ResumeLedger(tmp_path.joinpath("ledger"), run_id="r1")
    with pytest.raises(FileNotFoundError):
        ledger.record("a" * 64, {"txt": str(tmp_path.joinpath("missing.txt"))})
    with pytest.raises(FileNotFoundError):
        ledger.record("a" * 64, {"txt": str(empty)})
    assert ledger.entries() == {}


def test_entry_with_deleted_output_is_not_a_hit(tmp_path: Path):
    out = tmp_path.joinpath("out.txt")
    out.write_text("done")
    ledger = ResumeLedger(tmp_path.joinpath("ledger"), run_id="r1")
    ledger.record("b" * 64, {"txt": str(out)})
    out.unlink()
    assert ledger.should_skip("b" * 64) is None


def test_entry_with_rewritten_output_is_not_a_hit(tmp_path: Path):
    out = tmp_path.joinpath("out.txt")
    out.write_text("done")
    ledger_dir = tmp_path.joinpath("ledger")
    ResumeLedger(ledger_dir, run_id="r1").record("e" * 64, {"txt": str(out)})
    entry = ResumeLedger(ledger_dir, run_id="r1").entries()["e" * 64]
    assert entry["digests"] == {"txt": content_identity(str(out))}
    out.write_text("rewritten by another run")
    assert ResumeLedger(ledger_dir, run_id="r1").should_skip("e" * 64) is None
    resumed = ResumeLedger(ledger_dir, run_id="r2", resume_run_id="r1")
    assert resumed.should_skip("e" * 64) is None
    assert resumed.entries() == {}


def test_resumed_entries_are_carried_forward(tmp_path: Path):
    out = tmp_path.joinpath("out.txt")
    out.write_text("done")
    ledger_dir = tmp_path.joinpath("ledger")
    ResumeLedger(ledger_dir, run_id="r1").record("c" * 64, {"txt": str(out)})
    assert ResumeLedger(ledger_dir, run_id="r2").should_skip("c" * 64) is None
    resumed = ResumeLedger(ledger_dir, run_id="r3", resume_run_id="r1")
    assert resumed.should_skip("c" * 64) == {"txt": str(out)}
    assert "c" * 64 in resumed.entries()


def test_latest_run_excludes_the_current_run(tmp_path: Path):
    ledger_dir = tmp_path.joinpath("ledger")
    ResumeLedger(ledger_dir, run_id="old")
    time.sleep(0.01)
    ResumeLedger(ledger_dir, run_id="new")
    assert ResumeLedger.latest_run_id(ledger_dir) == "new"
    ledger = ResumeLedger(ledger_dir, run_id="new", resume_run_id=LATEST_RUN)
    assert ledger.resume_run_id == "old"
    assert [p.name for p in ResumeLedger.list_runs(ledger_dir)] == ["old", "new"]


def test_exclusive_lock_is_released_after_use(tmp_path: Path):
    ledger = ResumeLedger(tmp_path.joinpath("ledger"), run_id="r1")
    with ledger.exclusive("d" * 64):
        pass
    with ledger.exclusive("d" * 64):
        assert ledger.run_dir.joinpath(".locks", f"{'d' * 64}.lock").is_file()
