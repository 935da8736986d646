from pathlib import Path

import pytest

from snpflow.task.partition import (
    Interval,
    Partition,
    partition,
    read_genome_descriptor,
)


def test_partition_cuts_each_contig_into_windows(genome_fai):
    p = partition(genome_fai, chunk_size=100)
    assert len(p) == 4
    assert [i.region for i in p] == [
        "chr1:1-100",
        "chr1:101-200",
        "chr1:201-300",
        "chr2:1-100",
    ]
    assert [i.index for i in p] == [0, 1, 2, 3]


def test_partition_never_spans_contigs():
    p = partition([("chrA", 250), ("chrB", 30)], chunk_size=100)
    assert [(i.contig, i.start, i.end) for i in p] == [
        ("chrA", 0, 100),
        ("chrA", 100, 200),
        ("chrA", 200, 250),
        ("chrB", 0, 30),
    ]


def test_partition_is_deterministic(genome_fai):
    assert partition(genome_fai, 70) == partition(genome_fai, 70)


@pytest.mark.parametrize("chunk_size", [1, 7, 99, 100, 1000])
def test_partition_covers_genome(chunk_size):
    contigs = [("c1", 523), ("c2", 1)]
    p = partition(contigs, chunk_size)
    assert sum(i.length for i in p) == 524
    assert len(p) == sum(-(-n // chunk_size) for _, n in contigs)


def test_partition_rejects_invalid_chunk_size(genome_fai):
    with pytest.raises(ValueError):
        partition(genome_fai, 0)


def test_partition_rejects_empty_genome():
    with pytest.raises(ValueError):
        partition([], 100)


def test_read_sequence_dictionary(tmp_path: Path):
    d = tmp_path.joinpath("genome.dict")
    d.write_text(
        "@HD\tVN:1.6\n"
        "@SQ\tSN:chr1\tLN:1000\tM5:abc\n"
        "@SQ\tSN:chrM\tLN:16569\n"
    )
    assert read_genome_descriptor(d) == [("chr1", 1000), ("chrM", 16569)]


def test_read_genome_descriptor_rejects_unknown_format(tmp_path: Path):
    p = tmp_path.joinpath("genome.fa")
    p.write_text(">chr1\nACGT\n")
    with pytest.raises(ValueError):
        read_genome_descriptor(p)


def test_partition_file_round_trip_and_bed(tmp_path: Path, genome_fai):
    p = partition(genome_fai, 150)
    path = tmp_path.joinpath("intervals.json")
    p.write(path)
    assert Partition.load(path) == p
    assert p.to_bed().splitlines()[0] == "chr1\t0\t150"


def test_loaded_partition_is_shared_until_rewritten(tmp_path: Path, genome_fai):
    path = tmp_path.joinpath("intervals.json")
    partition(genome_fai, 100).write(path)
    first = Partition.load(path)
    assert Partition.load(str(path)) is first
    partition(genome_fai, 150).write(path)
    reloaded = Partition.load(path)
    assert reloaded is not first
    assert len(reloaded) == 3


def test_interval_region_is_one_based():
    i = Interval(index=0, contig="chr1", start=0, end=10)
    assert str(i) == "chr1:1-10"
    assert i.length == 10
