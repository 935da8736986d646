"""Genome interval partitioning for scatter stages.

The partitioner reads a genome description (a samtools ``.fai`` index or a
Picard/GATK ``.dict`` sequence dictionary) and cuts every contig into windows of a
configured size. The number of windows is only known after the descriptor is read,
so scatter stages size themselves from the written partition file.
"""

import json
import logging
import os
from collections.abc import Iterator, Sequence
from dataclasses import asdict, dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class Interval:
    """A half-open genomic window with its position in the partition.

    Attributes:
        index: Position of the interval within its partition (genome order).
        contig: Sequence name.
        start: 0-based start coordinate (inclusive).
        end: 0-based end coordinate (exclusive).
    """

    index: int
    contig: str
    start: int
    end: int

    @property
    def region(self) -> str:
        """Region string in 1-based inclusive coordinates (``chr1:1-1000``)."""
        return f"{self.contig}:{self.start + 1}-{self.end}"

    @property
    def bed(self) -> str:
        return f"{self.contig}\t{self.start}\t{self.end}"

    @property
    def length(self) -> int:
        return self.end - self.start

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def __str__(self) -> str:
        return self.region


@dataclass(frozen=True)
class Partition:
    """An immutable, ordered list of disjoint intervals."""

    intervals: tuple[Interval, ...]

    def __len__(self) -> int:
        return len(self.intervals)

    def __iter__(self) -> Iterator[Interval]:
        return iter(self.intervals)

    def __getitem__(self, index: int) -> Interval:
        return self.intervals[index]

    def to_bed(self) -> str:
        return "".join(f"{i.bed}{os.linesep}" for i in self.intervals)

    def write(self, path: str | os.PathLike[str]) -> None:
        """Write the partition as JSON.

        Args:
            path: Destination file path
        """
        tmp = Path(f"{path}.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump([i.to_dict() for i in self.intervals], f, indent=1)
        tmp.replace(path)

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> "Partition":
        """Load a partition written by :meth:`write`.

        Loaded partitions are cached by (path, size, mtime, inode), so every replica
        of a scatter shares one parsed copy until the file is rewritten.

        Args:
            path: Partition JSON file path

        Returns:
            Partition with intervals in their stored order
        """
        p = Path(path).resolve()
        st = p.stat()
        return _read_partition(str(p), st.st_size, st.st_mtime_ns, st.st_ino)


@lru_cache(maxsize=16)
def _read_partition(path: str, size: int, mtime_ns: int, inode: int) -> Partition:
    with open(path, encoding="utf-8") as f:
        records = json.load(f)
    return Partition(intervals=tuple(Interval(**r) for r in records))


def read_genome_descriptor(path: str | os.PathLike[str]) -> list[tuple[str, int]]:
    """Read contig names and lengths from a ``.fai`` or ``.dict`` file.

    Args:
        path: Path to a FASTA index or a sequence dictionary

    Returns:
        List of (contig, length) pairs in file order

    Raises:
        ValueError: If the file format is not recognized or a line is malformed
    """
    p = Path(path)
    contigs = []
    with p.open(encoding="utf-8") as f:
        if p.name.endswith(".fai"):
            for line in f:
                if not line.strip():
                    continue
                fields = line.rstrip("\n").split("\t")
                if len(fields) < 2 or not fields[1].isdigit():
                    msg = f"Malformed FASTA index line in {p}: {line!r}"
                    raise ValueError(msg)
                contigs.append((fields[0], int(fields[1])))
        elif p.name.endswith(".dict"):
            for line in f:
                if not line.startswith("@SQ"):
                    continue
                fields = line.rstrip("\n").split("\t")[1:]
                tags = dict(t.split(":", 1) for t in fields if ":" in t)
                if "SN" not in tags or not tags.get("LN", "").isdigit():
                    msg = f"Malformed @SQ line in {p}: {line!r}"
                    raise ValueError(msg)
                contigs.append((tags["SN"], int(tags["LN"])))
        else:
            msg = f"Unsupported genome descriptor (expected .fai or .dict): {p}"
            raise ValueError(msg)
    return contigs


def partition(
    genome_descriptor: str | os.PathLike[str] | Sequence[tuple[str, int]],
    chunk_size: int,
) -> Partition:
    """Split a genome into ordered, contig-bounded intervals.

    Args:
        genome_descriptor: Path to a ``.fai``/``.dict`` file, or (contig, length)
            pairs
        chunk_size: Maximum interval length in base pairs

    Returns:
        Partition covering every contig, in genome order

    Raises:
        ValueError: If chunk_size is not positive or the genome is empty
    """
    logger = logging.getLogger(__name__)
    chunk_size = int(chunk_size)
    if chunk_size < 1:
        msg = f"chunk_size must be positive: {chunk_size}"
        raise ValueError(msg)
    contigs = (
        read_genome_descriptor(genome_descriptor)
        if isinstance(genome_descriptor, (str, os.PathLike))
        else list(genome_descriptor)
    )
    intervals: list[Interval] = []
    for contig, length in contigs:
        for start in range(0, length, chunk_size):
            intervals.append(
                Interval(
                    index=len(intervals),
                    contig=contig,
                    start=start,
                    end=min(start + chunk_size, length),
                )
            )
    if not intervals:
        msg = f"No intervals produced from genome descriptor: {genome_descriptor}"
        raise ValueError(msg)
    logger.debug(
        "partition:\t%d intervals over %d contigs (chunk_size=%d)",
        len(intervals),
        len(contigs),
        chunk_size,
    )
    return Partition(intervals=tuple(intervals))
