"""Read normalization, alignment, and BAM cleanup stages of both branches.

The accelerated branch aligns with NVIDIA Parabricks (``pbrun fq2bam`` and
``pbrun applybqsr``); the classic branch aligns with BWA-MEM and recalibrates with
GATK. Contamination removal and cleanup are shared stage factories invoked once per
branch under the branch prefix.
"""

from collections.abc import Mapping

from .graph import Input, TaskGraph
from .reference import reference_inputs

DECONTAMINATED_OUTPUTS = {
    "r1": "decontaminated.R1.fq.gz",
    "r2": "decontaminated.R2.fq.gz",
}


def add_normalize_stage(
    graph: TaskGraph, prefix: str, reads: Mapping[str, str], publish: str | None
) -> dict[str, str]:
    """Add adapter and quality trimming of a read pair with fastp."""
    s = graph.add_stage(
        f"{prefix}normalize",
        input_bindings={"r1": reads["r1"], "r2": reads["r2"]},
        output_bindings={
            "r1": "normalized.R1.fq.gz",
            "r2": "normalized.R2.fq.gz",
            "json": "fastp.json",
            "html": "fastp.html",
        },
        command=(
            "{{ tools.fastp }} --thread {{ n_cpu }}"
            " --in1 {{ inputs.r1 }} --in2 {{ inputs.r2 }}"
            " --out1 {{ outputs.r1 }} --out2 {{ outputs.r2 }}"
            " --json {{ outputs.json }} --html {{ outputs.html }}"
        ),
        label="cpu_heavy",
        publish=publish,
    )
    return {"r1": f"{s.name}.r1", "r2": f"{s.name}.r2"}


def add_decontaminate_stage(
    graph: TaskGraph, prefix: str, reads: Mapping[str, str], publish: str | None
) -> dict[str, str]:
    """Add removal of read pairs aligning to a contaminant genome with Bowtie2.

    Only the pairs that fail to align concordantly are kept (``--un-conc-gz``).
    """
    s = graph.add_stage(
        f"{prefix}decontaminate",
        input_bindings={
            "r1": reads["r1"],
            "r2": reads["r2"],
            "index": Input("params.contaminant_index", kind="scalar"),
        },
        output_bindings=DECONTAMINATED_OUTPUTS,
        command=(
            "{{ tools.bowtie2 }} -p {{ n_cpu }} -x {{ inputs.index }}"
            " -1 {{ inputs.r1 }} -2 {{ inputs.r2 }}"
            " --un-conc-gz decontaminated.R%.fq.gz -S /dev/null"
        ),
        label="cpu_heavy",
        publish=publish,
    )
    return {k: f"{s.name}.{k}" for k in DECONTAMINATED_OUTPUTS}


def add_cleanup_stage(
    graph: TaskGraph, prefix: str, bam: str, publish: str | None
) -> dict[str, str]:
    """Add filtering of low-quality, secondary, and supplementary alignments."""
    s = graph.add_stage(
        f"{prefix}cleanup",
        input_bindings={
            "bam": bam,
            "min_mapq": Input("params.min_mapping_quality", kind="scalar"),
        },
        output_bindings={"bam": "cleaned.bam", "bai": "cleaned.bam.bai"},
        command=(
            "{{ tools.samtools }} view -@ {{ n_cpu }} -b"
            " -q {{ inputs.min_mapq }} -F 0x904"
            " -o {{ outputs.bam }} {{ inputs.bam }}"
            " && {{ tools.samtools }} index {{ outputs.bam }}"
        ),
        label="default",
        publish=publish,
    )
    return {"bam": f"{s.name}.bam", "bai": f"{s.name}.bai"}


def add_accelerated_alignment(
    graph: TaskGraph,
    prefix: str,
    reads: Mapping[str, str],
    reference: Mapping[str, str],
    publish: str | None,
) -> dict[str, str]:
    """Add the GPU-accelerated branch from raw reads to a cleaned BAM.

    Returns:
        References to the normalized reads and the cleaned BAM with its index
    """
    normalized = add_normalize_stage(graph, prefix, reads=reads, publish=publish)
    clean_reads = add_decontaminate_stage(
        graph, prefix, reads=normalized, publish=publish
    )
    aligned = graph.add_stage(
        f"{prefix}align",
        input_bindings={
            **reference_inputs(reference, "fasta", "bwt", "sa"),
            "r1": clean_reads["r1"],
            "r2": clean_reads["r2"],
            "known_sites": Input("params.known_sites_vcf"),
            "read_group": Input("params.read_group", kind="scalar"),
        },
        output_bindings={"bam": "aligned.bam", "recal": "recal.txt"},
        command=(
            "{{ tools.pbrun }} fq2bam --ref {{ inputs.fasta }}"
            ' --in-fq {{ inputs.r1 }} {{ inputs.r2 }} "{{ inputs.read_group }}"'
            "{% for v in inputs.known_sites %} --knownSites {{ v }}{% endfor %}"
            " --out-recal-file {{ outputs.recal }} --out-bam {{ outputs.bam }}"
        ),
        label="gpu",
        publish=publish,
    )
    recalibrated = graph.add_stage(
        f"{prefix}bqsr",
        input_bindings={
            **reference_inputs(reference, "fasta"),
            "bam": f"{aligned.name}.bam",
            "recal": f"{aligned.name}.recal",
        },
        output_bindings={"bam": "recalibrated.bam"},
        command=(
            "{{ tools.pbrun }} applybqsr --ref {{ inputs.fasta }}"
            " --in-bam {{ inputs.bam }} --in-recal-file {{ inputs.recal }}"
            " --out-bam {{ outputs.bam }}"
        ),
        label="gpu",
        publish=publish,
    )
    cleaned = add_cleanup_stage(
        graph, prefix, bam=f"{recalibrated.name}.bam", publish=publish
    )
    return {**{f"normalized_{k}": v for k, v in normalized.items()}, **cleaned}


def add_classic_alignment(
    graph: TaskGraph,
    prefix: str,
    reads: Mapping[str, str],
    reference: Mapping[str, str],
    publish: str | None,
) -> dict[str, str]:
    """Add the BWA-MEM and GATK branch from normalized reads to a cleaned BAM.

    Returns:
        References to the cleaned BAM and its index
    """
    clean_reads = add_decontaminate_stage(graph, prefix, reads=reads, publish=publish)
    aligned = graph.add_stage(
        f"{prefix}align",
        input_bindings={
            **reference_inputs(reference, "fasta", "bwt", "sa"),
            "r1": clean_reads["r1"],
            "r2": clean_reads["r2"],
            "read_group": Input("params.read_group", kind="scalar"),
        },
        output_bindings={"bam": "aligned.bam"},
        command=(
            "{{ tools.bwa }} mem -t {{ n_cpu }} -R '{{ inputs.read_group }}'"
            " {{ inputs.fasta }} {{ inputs.r1 }} {{ inputs.r2 }}"
            " | {{ tools.samtools }} sort -@ {{ n_cpu }}"
            " -T {{ outputs.bam }}.sort -o {{ outputs.bam }} -"
        ),
        label="cpu_heavy",
        publish=publish,
    )
    deduplicated = graph.add_stage(
        f"{prefix}markdup",
        input_bindings={"bam": f"{aligned.name}.bam"},
        output_bindings={"bam": "markdup.bam", "metrics": "markdup.metrics.txt"},
        command=(
            "{{ tools.gatk }} MarkDuplicates"
            " --INPUT {{ inputs.bam }} --OUTPUT {{ outputs.bam }}"
            " --METRICS_FILE {{ outputs.metrics }}"
        ),
        label="memory_heavy",
        publish=publish,
    )
    recalibrated = graph.add_stage(
        f"{prefix}bqsr",
        input_bindings={
            **reference_inputs(reference, "fasta", "fai", "dict"),
            "bam": f"{deduplicated.name}.bam",
            "known_sites": Input("params.known_sites_vcf"),
        },
        output_bindings={"bam": "recalibrated.bam", "table": "bqsr.table"},
        command=(
            "{{ tools.gatk }} BaseRecalibrator"
            " --input {{ inputs.bam }} --reference {{ inputs.fasta }}"
            "{% for v in inputs.known_sites %} --known-sites {{ v }}{% endfor %}"
            " --output {{ outputs.table }}"
            " && {{ tools.gatk }} ApplyBQSR"
            " --input {{ inputs.bam }} --reference {{ inputs.fasta }}"
            " --bqsr-recal-file {{ outputs.table }} --output {{ outputs.bam }}"
        ),
        label="memory_heavy",
        publish=publish,
    )
    return add_cleanup_stage(
        graph, prefix, bam=f"{recalibrated.name}.bam", publish=publish
    )
