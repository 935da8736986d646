"""Pipeline execution and configuration management for snpflow.

This module handles the high-level run of the SNP discovery graph, including
configuration file parsing, resource allocation, run parameter resolution, and the
execution report written when the Luigi scheduler returns.
"""

import logging
import os
import re
from collections.abc import Mapping, Sequence
from math import floor
from pathlib import Path
from pprint import pformat
from typing import Any

from psutil import cpu_count, virtual_memory

from snpflow.cli.constants import (
    DEFAULT_CHUNK_SIZE,
    LOG_DIR_NAME,
    N_FQ_FILES,
    READ_GROUP_DEFAULTS,
    REPORT_DIR_NAME,
    WORK_DIR_NAME,
)
from snpflow.cli.util import (
    build_luigi_tasks,
    fetch_executable,
    fetch_executables,
    load_default_dict,
    parse_fq_id,
    print_log,
    print_yml,
    read_yml,
    render_luigi_log_cfg,
    write_yml,
)
from snpflow.task.controller import PrintEnvVersions, Run
from snpflow.task.ledger import ResumeLedger
from snpflow.task.stage import PUBLISH_MODES
from snpflow.task.workflow import TOOLS, build_variant_graph


def run_variant_pipeline(
    config_yml_path: str | os.PathLike[str],
    dest_dir_path: str | os.PathLike[str] = ".",
    max_n_cpu: int | str | None = None,
    max_n_worker: int | str | None = None,
    run_id: str | None = None,
    resume_run_id: str | None = None,
    skip_cleaning: bool = False,
    print_subprocesses: bool = False,
    console_log_level: str = "WARNING",
    file_log_level: str = "DEBUG",
) -> None:
    """Run the SNP discovery graph for one sample.

    Args:
        config_yml_path: Path to the YAML configuration file
        dest_dir_path: Output directory path
        max_n_cpu: Maximum number of CPUs to use (defaults to system CPU count)
        max_n_worker: Maximum number of parallel Luigi workers (defaults to 1)
        run_id: Run identifier (defaults to a timestamp)
        resume_run_id: Prior run to resume from (or ``latest``)
        skip_cleaning: Keep incomplete outputs when a command fails
        print_subprocesses: Print subprocess commands and output
        console_log_level: Console logging level (WARNING, INFO, DEBUG, etc.)
        file_log_level: File logging level (WARNING, INFO, DEBUG, etc.)

    Raises:
        RunFailure: If any task failed or was blocked by a failed ancestor
    """
    logger = logging.getLogger(__name__)
    logger.info("config_yml_path:\t%s", config_yml_path)
    config = {
        **load_default_dict(stem="example_snpflow"),
        **_read_config_yml(path=config_yml_path),
    }
    logger.info("dest_dir_path:\t%s", dest_dir_path)
    dest_dir = Path(dest_dir_path).resolve()
    log_dir = dest_dir.joinpath(LOG_DIR_NAME)

    tools = fetch_executables(TOOLS)
    logger.debug("tools:%s%s", os.linesep, pformat(tools))

    n_cpu = int(max_n_cpu or cpu_count())
    n_worker = max(1, int(max_n_worker or 1))
    n_cpu_per_worker = max(1, floor(n_cpu / n_worker))
    memory_mb = virtual_memory().total / 1024 / 1024 / 2
    memory_mb_per_worker = int(memory_mb / n_worker)

    sh_config = {
        "log_dir_path": str(log_dir),
        "remove_if_failed": (not skip_cleaning),
        "quiet": (not print_subprocesses),
        "executable": fetch_executable("bash"),
    }
    logger.debug("sh_config:%s%s", os.linesep, pformat(sh_config))

    params = _resolve_run_params(config=config)
    logger.debug("params:%s%s", os.linesep, pformat(params))

    run = Run(
        graph=build_variant_graph(),
        params=params,
        work_dir=dest_dir.joinpath(WORK_DIR_NAME),
        publish_dir=dest_dir.joinpath(config["output_prefix"]),
        run_id=run_id,
        resume_run_id=resume_run_id,
        ceilings=config["resources"],
        context={
            "tools": tools,
            "n_cpu": n_cpu_per_worker,
            "memory_mb": memory_mb_per_worker,
        },
        sh_config=sh_config,
        publish_mode=config["publish_mode"],
    )

    print_log(f"Call SNPs:\t{params['sample_name']}")
    print_yml([
        {
            "config": [
                {"run_id": run.run_id},
                {"resume_run_id": run.resume_run_id},
                {"chunk_size": params["chunk_size"]},
                {"resources": config["resources"]},
                {"n_worker": n_worker},
                {"n_cpu": n_cpu},
                {"memory_mb": memory_mb},
            ]
        },
        {"input": [{"sample": params["sample_name"]}, {"fq": config["sample"]["fq"]}]},
    ])
    log_cfg_path = str(log_dir.joinpath("luigi.log.cfg"))
    log_txt_path = render_luigi_log_cfg(
        log_cfg_path=log_cfg_path,
        run_id=run.run_id,
        console_log_level=console_log_level,
        file_log_level=file_log_level,
    )
    logger.info("luigi log:\t%s", log_txt_path)

    build_luigi_tasks(
        tasks=[
            PrintEnvVersions(
                command_paths=list(tools.values()),
                run_id=run.run_id,
                sh_config=sh_config,
            )
        ],
        workers=1,
        log_level=console_log_level,
        logging_conf_file=log_cfg_path,
        hide_summary=True,
    )
    report = run.execute(
        workers=n_worker,
        raise_on_failure=False,
        log_level=console_log_level,
        logging_conf_file=log_cfg_path,
    )
    write_yml(
        report.to_dict(),
        path=dest_dir.joinpath(REPORT_DIR_NAME, f"{run.run_id}.yml"),
    )
    print(os.linesep + report.summary_text, flush=True)
    report.raise_for_failure()


def list_runs(dest_dir_path: str | os.PathLike[str] = ".") -> None:
    """Print the runs recorded in the ledger with their entry counts.

    Args:
        dest_dir_path: Output directory path given to ``snpflow run``
    """
    ledger_dir = (
        Path(dest_dir_path).resolve().joinpath(WORK_DIR_NAME, ".snpflow", "ledger")
    )
    print_yml([
        {p.name: len(list(p.glob("*.json")))}
        for p in ResumeLedger.list_runs(ledger_dir)
    ])


def _resolve_run_params(config: Mapping[str, Any]) -> dict[str, Any]:
    """Resolve the run parameters referenced by the stage graph."""
    ref = config["reference"]
    sample = config["sample"]
    fq_paths = _resolve_input_file_paths(path_list=sample["fq"])
    sample_name = sample.get("name") or parse_fq_id(fq_path=fq_paths[0])
    read_group = {**READ_GROUP_DEFAULTS, **(sample.get("read_group") or {})}
    read_group.setdefault("SM", sample_name)
    return {
        "fasta": _resolve_file_path(ref["fasta"]),
        "known_sites_vcf": _resolve_input_file_paths(path_list=ref["known_sites_vcf"]),
        "contaminant_index": _resolve_bowtie2_index(ref["contaminant_index"]),
        "fq_r1": fq_paths[0],
        "fq_r2": fq_paths[1],
        "sample_name": sample_name,
        "read_group": "\\t".join(["@RG", *[f"{k}:{v}" for k, v in read_group.items()]]),
        "chunk_size": int(config.get("chunk_size") or DEFAULT_CHUNK_SIZE),
        "min_mapping_quality": int(config["min_mapping_quality"]),
    }


def _read_config_yml(path: str | os.PathLike[str]) -> dict[str, Any]:
    """Read and validate the YAML configuration file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Validated configuration dictionary

    Raises:
        ValueError: If the configuration is invalid or malformed
        TypeError: If configuration values have incorrect types
    """
    config = read_yml(path=Path(path).resolve())
    if not (isinstance(config, dict) and config.get("reference")):
        msg = f"Invalid config structure: {config}"
        raise ValueError(msg)
    if not isinstance(config["reference"], dict):
        msg = f"Invalid reference structure: {config['reference']}"
        raise TypeError(msg)
    for k in ["fasta", "known_sites_vcf", "contaminant_index"]:
        v = config["reference"].get(k)
        if k == "known_sites_vcf":
            if not isinstance(v, list):
                msg = f"Expected list for {k}, got {type(v)}"
                raise ValueError(msg)
            if len(v) == 0:
                msg = f"Empty list not allowed for {k}"
                raise ValueError(msg)
            if not _has_unique_elements(v):
                msg = f"Duplicate elements found in {k}"
                raise ValueError(msg)
            for s in v:
                if not isinstance(s, str):
                    msg = f"Expected string in {k}, got {type(s)}"
                    raise TypeError(msg)
        elif not isinstance(v, str):
            msg = f"Expected string for {k}, got {type(v)}"
            raise TypeError(msg)
    s = config.get("sample")
    if not isinstance(s, dict):
        msg = f"Expected dict for sample, got {type(s)}: {s}"
        raise TypeError(msg)
    if not s.get("fq"):
        msg = f"Missing 'fq' in sample: {s}"
        raise ValueError(msg)
    if not isinstance(s["fq"], list):
        msg = f"Expected list for fq, got {type(s['fq'])}: {s}"
        raise TypeError(msg)
    if not _has_unique_elements(s["fq"]):
        msg = f"Duplicate fq files found: {s}"
        raise ValueError(msg)
    if len(s["fq"]) != N_FQ_FILES:
        msg = f"Expected {N_FQ_FILES} fq files (paired-end): {s}"
        raise ValueError(msg)
    for p in s["fq"]:
        if not p.endswith((".gz", ".bz2")):
            msg = f"fq file must be compressed (.gz or .bz2): {p}"
            raise ValueError(msg)
    if s.get("read_group"):
        if not isinstance(s["read_group"], dict):
            msg = f"Expected dict for read_group: {s}"
            raise ValueError(msg)
        for k, v in s["read_group"].items():
            if not re.fullmatch(r"[A-Z]{2}", k):
                msg = (
                    f"Invalid read group key format "
                    f"(expected 2 uppercase letters): {k}"
                )
                raise ValueError(msg)
            if not isinstance(v, str):
                msg = f"Expected string value for read group key {k}, got {type(v)}"
                raise TypeError(msg)
    if "chunk_size" in config:
        if isinstance(config["chunk_size"], bool) or not isinstance(
            config["chunk_size"], int
        ):
            msg = f"Expected int for chunk_size, got {type(config['chunk_size'])}"
            raise TypeError(msg)
        if config["chunk_size"] < 1:
            msg = f"chunk_size must be positive: {config['chunk_size']}"
            raise ValueError(msg)
    if "resources" in config:
        if not isinstance(config["resources"], dict):
            msg = f"Expected dict for resources, got {type(config['resources'])}"
            raise TypeError(msg)
        for k, v in config["resources"].items():
            if isinstance(v, bool) or not isinstance(v, int) or v < 1:
                msg = f"Resource ceiling must be a positive integer: {k}={v!r}"
                raise ValueError(msg)
    if config.get("publish_mode", "copy") not in PUBLISH_MODES:
        msg = f"publish_mode must be one of {PUBLISH_MODES}: {config['publish_mode']}"
        raise ValueError(msg)
    return config


def _has_unique_elements(elements: Sequence[object]) -> bool:
    """Check if all elements in a sequence are unique.

    Args:
        elements: Sequence of elements to check

    Returns:
        True if all elements are unique, False otherwise
    """
    return len(set(elements)) == len(tuple(elements))


def _resolve_file_path(path: str | os.PathLike[str]) -> str:
    """Resolve an input file path, checking that it exists.

    Raises:
        FileNotFoundError: If the file does not exist
    """
    p = Path(path).resolve()
    if not p.is_file():
        msg = f"File not found: {p}"
        raise FileNotFoundError(msg)
    return str(p)


def _resolve_input_file_paths(path_list: Sequence[str]) -> list[str]:
    return [_resolve_file_path(s) for s in path_list]


def _resolve_bowtie2_index(prefix: str) -> str:
    """Resolve a Bowtie2 index prefix, checking that its first index file exists.

    Raises:
        FileNotFoundError: If neither a small nor a large index is found
    """
    p = Path(prefix).resolve()
    if not any(Path(f"{p}.1.{s}").is_file() for s in ("bt2", "bt2l")):
        msg = f"Bowtie2 index not found: {p}"
        raise FileNotFoundError(msg)
    return str(p)

