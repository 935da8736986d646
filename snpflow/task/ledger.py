"""Task fingerprints and the persisted resume ledger.

A fingerprint is a SHA-256 over a canonical JSON document holding the stage
identity, the content identities of its resolved inputs, the command template, and
the resource label. The ledger stores one JSON document per fingerprint under a
run-scoped directory; documents are written atomically and only after every
declared output exists, and they carry a digest of each output so that a file
rewritten by a later run is not mistaken for a cached result.
"""

import fcntl
import hashlib
import json
import logging
import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any

from .partition import Interval

LATEST_RUN = "latest"


@lru_cache(maxsize=4096)
def _sha256_file(path: str, size: int, mtime_ns: int, inode: int) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(2**20), b""):
            h.update(chunk)
    return h.hexdigest()


def file_digest(path: str | os.PathLike[str]) -> str:
    """Return the SHA-256 of a file's content.

    Digests are cached by (path, size, mtime, inode), so unchanged files are read once.

    Args:
        path: File path

    Returns:
        Hex digest of the file content
    """
    p = Path(path).resolve()
    st = p.stat()
    return _sha256_file(str(p), st.st_size, st.st_mtime_ns, st.st_ino)


def hash_json(obj: Any) -> str:
    """Stable SHA-256 over a canonical JSON representation of ``obj``."""
    s = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def content_identity(value: Any, kind: str = "file") -> Any:
    """Describe a resolved input by content rather than by location.

    Args:
        value: Path, list of paths, interval, or scalar
        kind: Input kind (``file``, ``scalar``, or ``interval``)

    Returns:
        JSON-serializable identity of the value
    """
    if value is None:
        return None
    elif isinstance(value, Interval):
        return value.to_dict()
    elif isinstance(value, (list, tuple)):
        return [content_identity(v, kind=kind) for v in value]
    elif kind == "file":
        return f"sha256:{file_digest(value)}"
    else:
        return value


def compute_fingerprint(
    stage: str,
    ordinal: int | None,
    inputs: Mapping[str, Any],
    command: str,
    label: str,
    kinds: Mapping[str, str] | None = None,
) -> str:
    """Compute the fingerprint of a task.

    Args:
        stage: Stage name
        ordinal: Replica index within a scatter, or None
        inputs: Resolved input values by binding name
        command: Command template (not the rendered command)
        label: Resource label
        kinds: Input kind by binding name (defaults to ``file``)

    Returns:
        Hex digest identifying the task and the content it consumes
    """
    kinds = kinds or {}
    return hash_json({
        "stage": stage,
        "ordinal": ordinal,
        "inputs": {
            k: content_identity(v, kind=kinds.get(k, "file")) for k, v in inputs.items()
        },
        "command": command,
        "label": label,
    })


def is_materialized(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return all(is_materialized(v) for v in value)
    p = Path(str(value))
    return p.is_file() and p.stat().st_size > 0


def output_digests(outputs: Mapping[str, Any]) -> dict[str, Any]:
    """Digest every output file, keeping the shape of each binding."""
    return {k: content_identity(v) for k, v in outputs.items()}


class ResumeLedger:
    """Run-scoped store mapping fingerprints to completed output locations.

    Args:
        ledger_dir: Root directory holding one subdirectory per run
        run_id: Identifier of the current run
        resume_run_id: Prior run whose entries may satisfy this run (or
            ``latest`` for the most recent other run)
    """

    def __init__(
        self,
        ledger_dir: str | os.PathLike[str],
        run_id: str,
        resume_run_id: str | None = None,
    ) -> None:
        self.ledger_dir = Path(ledger_dir).resolve()
        self.run_id = run_id
        if resume_run_id == LATEST_RUN:
            resume_run_id = self.latest_run_id(self.ledger_dir, exclude=run_id)
        self.resume_run_id = resume_run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

    @property
    def run_dir(self) -> Path:
        return self.ledger_dir.joinpath(self.run_id)

    @property
    def resume_dir(self) -> Path | None:
        return (
            self.ledger_dir.joinpath(self.resume_run_id)
            if self.resume_run_id
            else None
        )

    @staticmethod
    def list_runs(ledger_dir: str | os.PathLike[str]) -> list[Path]:
        """List run directories, oldest first."""
        d = Path(ledger_dir)
        if not d.is_dir():
            return []
        return sorted(
            (p for p in d.iterdir() if p.is_dir()), key=lambda p: p.stat().st_mtime_ns
        )

    @classmethod
    def latest_run_id(
        cls, ledger_dir: str | os.PathLike[str], exclude: str | None = None
    ) -> str | None:
        runs = [p.name for p in cls.list_runs(ledger_dir) if p.name != exclude]
        return runs[-1] if runs else None

    def _entry_path(self, run_dir: Path, fingerprint: str) -> Path:
        return run_dir.joinpath(f"{fingerprint}.json")

    def _read_entry(self, run_dir: Path | None, fingerprint: str) -> dict | None:
        if run_dir is None:
            return None
        p = self._entry_path(run_dir, fingerprint)
        if not p.is_file():
            return None
        with p.open(encoding="utf-8") as f:
            return json.load(f)

    def should_skip(self, fingerprint: str) -> dict[str, Any] | None:
        """Return cached outputs if a completed task with this fingerprint exists.

        An entry is stale if any output is missing or its content differs from the
        digest recorded with it, which happens when a later run rewrote the file.
        Entries found in the resumed run are carried into the current run so that
        later runs can resume from this one.

        Args:
            fingerprint: Task fingerprint

        Returns:
            Output locations by binding name, or None if the task must run
        """
        logger = logging.getLogger(__name__)
        for run_dir in (self.run_dir, self.resume_dir):
            entry = self._read_entry(run_dir, fingerprint)
            if entry is None:
                continue
            outputs = entry["outputs"]
            if not all(
                is_materialized(v) for v in outputs.values()
            ) or entry.get("digests") != output_digests(outputs):
                logger.debug("stale ledger entry:\t%s", fingerprint)
                continue
            if run_dir != self.run_dir:
                self._write_entry(entry)
            return outputs
        return None

    def record(
        self, fingerprint: str, outputs: Mapping[str, Any], stage: str = ""
    ) -> None:
        """Record a completed task.

        Args:
            fingerprint: Task fingerprint
            outputs: Output locations by binding name

        Raises:
            FileNotFoundError: If any output is absent or empty
        """
        missing = [k for k, v in outputs.items() if not is_materialized(v)]
        if missing:
            msg = "Refusing to record {} with missing outputs: {}".format(
                stage or fingerprint, ", ".join(missing)
            )
            raise FileNotFoundError(msg)
        self._write_entry({
            "fingerprint": fingerprint,
            "stage": stage,
            "outputs": dict(outputs),
            "digests": output_digests(outputs),
            "recorded_at": datetime.now(UTC).isoformat(),
        })

    def _write_entry(self, entry: Mapping[str, Any]) -> None:
        dest = self._entry_path(self.run_dir, entry["fingerprint"])
        tmp = dest.with_name(f".{dest.name}.{os.getpid()}.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(entry, f, indent=1)
            f.flush()
            os.fsync(f.fileno())
        tmp.replace(dest)

    @contextmanager
    def exclusive(self, fingerprint: str) -> Iterator[None]:
        """Hold an exclusive lock for check-and-dispatch of one fingerprint."""
        lock_dir = self.run_dir.joinpath(".locks")
        lock_dir.mkdir(parents=True, exist_ok=True)
        with lock_dir.joinpath(f"{fingerprint}.lock").open("w") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)

    def entries(self) -> dict[str, dict[str, Any]]:
        """Load every entry recorded in the current run."""
        entries = {}
        for p in sorted(self.run_dir.glob("*.json")):
            with p.open(encoding="utf-8") as f:
                entries[p.stem] = json.load(f)
        return entries
