"""Assembly of the SNP discovery graph from its stage factories.

Layout::

    reference/prepare -> reference/partition
    accelerated/normalize -> decontaminate -> align -> bqsr -> cleanup
        -> call (scatter) -> filter -> select_snps
    classic/decontaminate (of accelerated/normalize) -> align -> markdup -> bqsr
        -> cleanup -> call (scatter) -> filter -> select_snps
    compare/concordance
"""

from collections.abc import Mapping

from .align import add_accelerated_alignment, add_classic_alignment
from .branch import Branch, compose
from .calling import add_calling_stages, add_concordance_stage
from .graph import TaskGraph
from .reference import add_reference_stages

TOOLS = ("bcftools", "bowtie2", "bwa", "fastp", "gatk", "pbrun", "samtools")


def build_variant_graph(
    accelerated: str = "accelerated", classic: str = "classic"
) -> TaskGraph:
    """Build the graph running both alignment branches into SNP calling.

    The classic branch consumes the reads normalized by the accelerated branch,
    which is a cross-branch edge: only its contamination removal waits for the
    normalization, the rest of each branch is scheduled independently.

    Args:
        accelerated: Name and publish prefix of the Parabricks branch
        classic: Name and publish prefix of the BWA-MEM and GATK branch

    Returns:
        Task graph of the reference, both branches, and the comparison
    """
    graph = TaskGraph()
    reference = add_reference_stages(graph)
    shared = {"r1": "params.fq_r1", "r2": "params.fq_r2"}
    normalized: dict[str, str] = {}

    def build_accelerated(
        g: TaskGraph, prefix: str, reads: Mapping[str, str]
    ) -> dict[str, str]:
        aligned = add_accelerated_alignment(
            g, prefix, reads=reads, reference=reference, publish=accelerated
        )
        normalized.update(r1=aligned["normalized_r1"], r2=aligned["normalized_r2"])
        return add_calling_stages(
            g, prefix, bam=aligned, reference=reference, publish=accelerated
        )

    def build_classic(
        g: TaskGraph, prefix: str, reads: Mapping[str, str]
    ) -> dict[str, str]:
        aligned = add_classic_alignment(
            g,
            prefix,
            reads=(normalized or reads),
            reference=reference,
            publish=classic,
        )
        return add_calling_stages(
            g, prefix, bam=aligned, reference=reference, publish=classic
        )

    result_a, result_b = compose(
        graph,
        shared_input=shared,
        branch_a=Branch(name=accelerated, build=build_accelerated),
        branch_b=Branch(name=classic, build=build_classic),
    )
    add_concordance_stage(
        graph, "compare/concordance", snps_a=result_a.outputs, snps_b=result_b.outputs
    )
    return graph
