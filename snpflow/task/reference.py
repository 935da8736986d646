"""Reference preparation and genome partitioning stages."""

from .graph import Input, TaskGraph, partition_stage

REFERENCE_OUTPUTS = {
    "fasta": "reference.fa",
    "fai": "reference.fa.fai",
    "dict": "reference.dict",
    "bwt": "reference.fa.bwt",
    "sa": "reference.fa.sa",
}


def add_reference_stages(
    graph: TaskGraph,
    prefix: str = "reference/",
    fasta: str = "params.fasta",
    chunk_size: str = "params.chunk_size",
    publish: str | None = "reference",
) -> dict[str, str]:
    """Add the stages indexing a reference FASTA and partitioning its contigs.

    The FASTA is copied into the stage directory so that its samtools index, GATK
    sequence dictionary, and BWA index sit next to it, as the aligners and
    callers expect.

    Args:
        graph: Graph to extend
        prefix: Stage name prefix
        fasta: Reference to the input FASTA
        chunk_size: Reference to the partition chunk size
        publish: Publish prefix for the indexed reference

    Returns:
        References to the indexed reference files and the partition intervals
    """
    prepare = graph.add_stage(
        f"{prefix}prepare",
        input_bindings={"fasta": Input(fasta)},
        output_bindings=REFERENCE_OUTPUTS,
        command=(
            "cp {{ inputs.fasta }} {{ outputs.fasta }}"
            " && {{ tools.samtools }} faidx {{ outputs.fasta }}"
            " && {{ tools.gatk }} CreateSequenceDictionary"
            " --REFERENCE {{ outputs.fasta }} --OUTPUT {{ outputs.dict }}"
            " && {{ tools.bwa }} index {{ outputs.fasta }}"
        ),
        label="cpu_heavy",
        publish=publish,
    )
    intervals = graph.add(
        partition_stage(
            f"{prefix}partition",
            genome=f"{prepare.name}.fai",
            chunk_size=chunk_size,
        )
    )
    return {
        **{k: f"{prepare.name}.{k}" for k in REFERENCE_OUTPUTS},
        "intervals": f"{intervals.name}.intervals",
    }


def reference_inputs(reference: dict[str, str], *keys: str) -> dict[str, Input]:
    """Select reference file bindings for a consuming stage."""
    return {k: Input(reference[k]) for k in keys}
