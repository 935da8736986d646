"""Utility functions for snpflow command-line interface.

This module provides the helpers shared by the snpflow commands: tool lookup on
PATH, YAML input and output, rendering of the Luigi logging configuration, and
FASTQ sample naming.
"""

import logging
import os
import re
import shutil
from collections.abc import Iterable
from pathlib import Path
from pprint import pformat
from typing import Any

import luigi
import yaml
from jinja2 import Environment, FileSystemLoader
from luigi.execution_summary import LuigiRunResult

PACKAGE_DIR = Path(__file__).resolve().parent.parent


def write_config_yml(
    path: str | os.PathLike[str], src_yml: str = "example_snpflow.yml"
) -> None:
    """Write a configuration YAML file from template.

    An existing file is left untouched.

    Args:
        path: Destination path for the configuration file
        src_yml: Source template filename in the static directory
    """
    dest = Path(path).resolve()
    if dest.is_file():
        print_log(f"The file exists:\t{dest}")
    else:
        print_log(f"Create a config YAML:\t{dest}")
        shutil.copyfile(PACKAGE_DIR.joinpath("static", src_yml), dest)


def print_log(message: str) -> None:
    """Print a log message to both logger and stdout.

    Args:
        message: Message to log and print
    """
    logger = logging.getLogger(__name__)
    logger.debug(message)
    print(f">>\t{message}", flush=True)


def fetch_executables(
    commands: Iterable[str], ignore_errors: bool = False
) -> dict[str, str | None]:
    """Find executables of several commands in PATH.

    Args:
        commands: Command names to search for
        ignore_errors: Map absent commands to None instead of raising an error

    Returns:
        Command name to the first executable path found

    Raises:
        RuntimeError: If any command is absent and ignore_errors is False
    """
    dirs = os.environ.get("PATH", "").split(os.pathsep)
    found: dict[str, str | None] = {}
    for cmd in commands:
        found[cmd] = next(
            (
                cp
                for cp in (str(Path(d).joinpath(cmd)) for d in dirs if d)
                if os.access(cp, os.X_OK) and not Path(cp).is_dir()
            ),
            None,
        )
    missing = [k for k, v in found.items() if v is None]
    if missing and not ignore_errors:
        msg = "command not found: {}".format(", ".join(missing))
        raise RuntimeError(msg)
    return found


def fetch_executable(cmd: str, ignore_errors: bool = False) -> str | None:
    """Find the executable of one command in PATH.

    Raises:
        RuntimeError: If the command is absent and ignore_errors is False
    """
    return fetch_executables([cmd], ignore_errors=ignore_errors)[cmd]


def read_yml(path: str | os.PathLike[str]) -> Any:
    """Read and parse a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Parsed YAML data
    """
    logger = logging.getLogger(__name__)
    with open(str(path), encoding="utf-8") as f:
        d = yaml.safe_load(f)
    logger.debug("YAML data:" + os.linesep + pformat(d))
    return d


def print_yml(data: object) -> None:
    print(yaml.dump(data, sort_keys=False))


def write_yml(data: object, path: str | os.PathLike[str]) -> None:
    """Write data to a YAML file, creating its directory.

    Args:
        data: Data to serialize
        path: Destination path
    """
    p = Path(path).resolve()
    if not p.parent.is_dir():
        print_log(f"Make a directory:\t{p.parent}")
        p.parent.mkdir(parents=True, exist_ok=True)
    print_log(f"Write a YAML file:\t{p}")
    with p.open("w", encoding="utf-8") as f:
        yaml.dump(data, f, sort_keys=False)


def render_luigi_log_cfg(
    log_cfg_path: str | os.PathLike[str],
    run_id: str,
    log_dir_path: str | os.PathLike[str] | None = None,
    console_log_level: str = "WARNING",
    file_log_level: str = "DEBUG",
) -> str:
    """Render the Luigi logging configuration file of a run.

    Args:
        log_cfg_path: Path to write the logging configuration file
        run_id: Run identifier, used in the log file name
        log_dir_path: Directory for log files (defaults to config directory)
        console_log_level: Log level for console output
        file_log_level: Log level for file output

    Returns:
        Path to the log file written by the file handler
    """
    log_cfg = Path(str(log_cfg_path)).resolve()
    cfg_dir = log_cfg.parent
    log_dir = Path(str(log_dir_path)).resolve() if log_dir_path else cfg_dir
    log_txt = log_dir.joinpath(f"luigi.{run_id}.{file_log_level}.log.txt")
    for d in {cfg_dir, log_dir}:
        if not d.is_dir():
            print_log(f"Make a directory:\t{d}")
            d.mkdir(parents=True, exist_ok=True)
    print_log(
        "{} a file:\t{}".format(
            ("Overwrite" if log_cfg.exists() else "Render"), log_cfg
        )
    )
    with log_cfg.open(mode="w") as f:
        f.write(
            Environment(
                loader=FileSystemLoader(
                    str(PACKAGE_DIR.joinpath("template")), encoding="utf8"
                )
            )
            .get_template("luigi.log.cfg.j2")
            .render({
                "console_log_level": console_log_level,
                "file_log_level": file_log_level,
                "log_txt_path": str(log_txt),
            })
            + os.linesep
        )
    return str(log_txt)


def load_default_dict(stem: str) -> dict[str, Any]:
    """Load default configuration from static YAML file.

    Args:
        stem: Base filename (without .yml extension) in static directory

    Returns:
        Configuration dictionary
    """
    return read_yml(path=PACKAGE_DIR.joinpath("static", f"{stem}.yml"))


def build_luigi_tasks(
    hide_summary: bool = False, **kwargs: object
) -> LuigiRunResult:
    """Build Luigi tasks that must all be scheduled.

    Args:
        hide_summary: Skip printing execution summary
        **kwargs: Additional arguments passed to luigi.build()

    Returns:
        Luigi run result

    Raises:
        RuntimeError: If the scheduler could not schedule every task
    """
    r = luigi.build(local_scheduler=True, detailed_summary=True, **kwargs)
    if not hide_summary:
        print(
            os.linesep + os.linesep.join(["Execution summary:", r.summary_text, str(r)])
        )
    if not r.scheduling_succeeded:
        raise RuntimeError(r.one_line_summary)
    return r


def parse_fq_id(fq_path: str | os.PathLike[str]) -> str:
    """Extract a sample name from a FASTQ file path.

    Compression and FASTQ extensions are removed, then a trailing read-pair tag
    (``.R1``, ``_2``, ``_read1``, ``_R1_001``, ...).

    Args:
        fq_path: Path to FASTQ file

    Returns:
        Sample name, or the bare file stem if nothing is left
    """
    fq_stem = re.sub(
        r"\.(fq|fastq)(\.(gz|bz2))?$", "", Path(fq_path).name, flags=re.IGNORECASE
    )
    return (
        re.sub(
            r"[\._](read[12]|r[12]|[12]|r[12]_[0-9]+)$",
            "",
            fq_stem,
            flags=re.IGNORECASE,
        )
        or fq_stem
    )
