#!/usr/bin/env python
"""
Resumable scatter/gather SNP discovery workflow executor

Usage:
    snpflow init [--debug|--info] [--yml=<path>]
    snpflow run [--debug|--info] [--yml=<path>] [--cpus=<int>]
        [--workers=<int>] [--run-id=<str>] [--resume=<run_id>]
        [--skip-cleaning] [--print-subprocesses] [--dest-dir=<path>]
    snpflow partition [--debug|--info] [--chunk-size=<int>] <genome_path>
    snpflow runs [--debug|--info] [--dest-dir=<path>]
    snpflow -h|--help
    snpflow --version

Commands:
    init                    Create a config YAML template
    run                     Call SNPs from paired-end FASTQ files with two
                            alignment branches (BWA-MEM and Parabricks), and
                            intersect their SNP sets
    partition               Print the interval partition of a genome as BED
    runs                    List the runs recorded in the resume ledger

Options:
    -h, --help              Print help and exit
    --version               Print version and exit
    --debug, --info         Execute a command with debug|info messages
    --yml=<path>            Specify a config YAML path [default: snpflow.yml]
    --cpus=<int>            Limit CPU cores used
    --workers=<int>         Specify the maximum number of workers [default: 1]
    --run-id=<str>          Specify a run identifier (default: a timestamp)
    --resume=<run_id>       Skip tasks completed in a prior run (or "latest")
    --skip-cleaning         Skip incomplete file removal when a task fails
    --print-subprocesses    Print STDOUT/STDERR outputs from subprocesses
    --dest-dir=<path>       Specify a destination directory path [default: .]
    --chunk-size=<int>      Specify an interval length in bp [default: 10000000]

Args:
    <genome_path>           Path to a FASTA index (.fai) or a sequence
                            dictionary (.dict)
"""

import logging
import os

from docopt import docopt

from .. import __version__
from ..task.partition import partition
from .pipeline import list_runs, run_variant_pipeline
from .util import write_config_yml


def main() -> None:
    args = docopt(__doc__, version=__version__)
    if args["--debug"]:
        log_level = "DEBUG"
    elif args["--info"]:
        log_level = "INFO"
    else:
        log_level = "WARNING"
    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=log_level,
    )
    logger = logging.getLogger(__name__)
    logger.debug(f"args:{os.linesep}{args}")
    if args["init"]:
        write_config_yml(path=args["--yml"])
    elif args["run"]:
        run_variant_pipeline(
            config_yml_path=args["--yml"],
            dest_dir_path=args["--dest-dir"],
            max_n_cpu=args["--cpus"],
            max_n_worker=args["--workers"],
            run_id=args["--run-id"],
            resume_run_id=args["--resume"],
            skip_cleaning=args["--skip-cleaning"],
            print_subprocesses=args["--print-subprocesses"],
            console_log_level=log_level,
        )
    elif args["partition"]:
        print(
            partition(args["<genome_path>"], int(args["--chunk-size"])).to_bed(),
            end="",
        )
    elif args["runs"]:
        list_runs(dest_dir_path=args["--dest-dir"])
