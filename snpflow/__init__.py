"""Resumable scatter/gather workflow executor for SNP discovery.

snpflow provides a Luigi-based orchestration layer that runs two alternative read
alignment branches (classic BWA-MEM and accelerated Parabricks fq2bam) into a shared
interval-parallel variant calling and filtering chain, and skips already completed
tasks on re-runs using a persisted fingerprint ledger.
"""

from importlib.metadata import version

__version__ = version(__package__) if __package__ else None

__all__ = ["__version__"]
