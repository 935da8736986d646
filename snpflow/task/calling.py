"""Interval-parallel variant calling, filtering, and branch comparison stages."""

from collections.abc import Mapping

from .graph import COMBINE, Input, TaskGraph
from .reference import reference_inputs

SNP_FILTER_EXPRESSION = "QD < 2.0 || FS > 60.0 || MQ < 40.0 || SOR > 3.0"
SNP_FILTER_NAME = "snp_hard_filter"


def add_calling_stages(
    graph: TaskGraph,
    prefix: str,
    bam: Mapping[str, str],
    reference: Mapping[str, str],
    publish: str | None,
) -> dict[str, str]:
    """Add HaplotypeCaller scattered over intervals, then hard filtering.

    Each replica calls variants in one partition interval; the replica VCFs are
    combined in genome order with GatherVcfs.

    Args:
        graph: Graph to extend
        prefix: Stage name prefix
        bam: References to a cleaned BAM (``bam``) and its index (``bai``)
        reference: References returned by ``add_reference_stages``
        publish: Publish prefix

    Returns:
        References to the filtered SNP VCF and its index
    """
    called = graph.add_stage(
        f"{prefix}call",
        input_bindings={
            **reference_inputs(reference, "fasta", "fai", "dict"),
            "bam": bam["bam"],
            "bai": bam["bai"],
            "interval": Input(reference["intervals"], kind="interval", scatter=True),
        },
        output_bindings={"vcf": "call.vcf.gz"},
        command=(
            "{{ tools.gatk }} HaplotypeCaller"
            " --reference {{ inputs.fasta }} --input {{ inputs.bam }}"
            " --intervals {{ inputs.interval.region }}"
            " --output {{ outputs.vcf }}"
        ),
        label="cpu_heavy",
        merge=COMBINE,
        combiner=(
            "{{ tools.gatk }} GatherVcfs"
            "{% for v in inputs.vcf %} --INPUT {{ v }}{% endfor %}"
            " --OUTPUT {{ outputs.vcf }}"
            " && {{ tools.gatk }} IndexFeatureFile --input {{ outputs.vcf }}"
        ),
        combined_outputs={"vcf": "called.vcf.gz", "tbi": "called.vcf.gz.tbi"},
        publish=publish,
    )
    filtered = graph.add_stage(
        f"{prefix}filter",
        input_bindings={
            **reference_inputs(reference, "fasta", "fai", "dict"),
            "vcf": f"{called.name}.vcf",
            "tbi": f"{called.name}.tbi",
        },
        output_bindings={"vcf": "filtered.vcf.gz", "tbi": "filtered.vcf.gz.tbi"},
        command=(
            "{{ tools.gatk }} VariantFiltration"
            " --reference {{ inputs.fasta }} --variant {{ inputs.vcf }}"
            f' --filter-expression "{SNP_FILTER_EXPRESSION}"'
            f" --filter-name {SNP_FILTER_NAME}"
            " --output {{ outputs.vcf }}"
        ),
        label="default",
        publish=publish,
    )
    selected = graph.add_stage(
        f"{prefix}select_snps",
        input_bindings={
            **reference_inputs(reference, "fasta", "fai", "dict"),
            "vcf": f"{filtered.name}.vcf",
            "tbi": f"{filtered.name}.tbi",
        },
        output_bindings={"vcf": "snps.vcf.gz", "tbi": "snps.vcf.gz.tbi"},
        command=(
            "{{ tools.gatk }} SelectVariants"
            " --reference {{ inputs.fasta }} --variant {{ inputs.vcf }}"
            " --select-type-to-include SNP --exclude-filtered"
            " --output {{ outputs.vcf }}"
        ),
        label="default",
        publish=publish,
    )
    return {"vcf": f"{selected.name}.vcf", "tbi": f"{selected.name}.tbi"}


def add_concordance_stage(
    graph: TaskGraph,
    name: str,
    snps_a: Mapping[str, str],
    snps_b: Mapping[str, str],
    publish: str | None = "compare",
) -> dict[str, str]:
    """Add the intersection of the SNP sets called by both branches."""
    s = graph.add_stage(
        name,
        input_bindings={
            "vcf_a": snps_a["vcf"],
            "tbi_a": snps_a["tbi"],
            "vcf_b": snps_b["vcf"],
            "tbi_b": snps_b["tbi"],
        },
        output_bindings={"vcf": "concordant.snps.vcf.gz"},
        command=(
            "{{ tools.bcftools }} isec -n=2 -w1 -O z"
            " -o {{ outputs.vcf }} {{ inputs.vcf_a }} {{ inputs.vcf_b }}"
        ),
        label="default",
        publish=publish,
    )
    return {"vcf": f"{s.name}.vcf"}
