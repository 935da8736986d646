"""Constants used across snpflow CLI modules.

This module contains shared constants used throughout the snpflow command-line
interface, including read file limits, defaults, and output directory names.
"""

# Number of FASTQ files per sample (paired-end)
N_FQ_FILES = 2

# Default partition chunk size in base pairs
DEFAULT_CHUNK_SIZE = 10_000_000

# Directories under the destination directory
WORK_DIR_NAME = "work"
LOG_DIR_NAME = "log"
REPORT_DIR_NAME = "report"

# Read group fields filled in when the config omits them
READ_GROUP_DEFAULTS = {"ID": "0", "PU": "UNIT-0", "PL": "ILLUMINA", "LB": "LIBRARY-0"}
