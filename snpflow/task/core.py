"""Core base classes and shared functionality for snpflow Luigi tasks.

This module provides the shell-executing base task used by every stage task, the
version commands printed before a run, and common helpers for directory creation
and shell log inspection.
"""

import logging
import os
import shutil
import sys
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import luigi
from shoper.shelloperator import ShellOperator


class ShellTask(luigi.Task, ABC):
    """Abstract base class for Luigi tasks that execute shell commands.

    Each task instance owns its ShellOperator, since many instances of one stage
    task class run in the same process.

    Attributes:
        retry_count: Number of times to retry the task on failure (default: 0).
    """

    retry_count = 0

    def __init__(self, *args: object, **kwargs: object) -> None:
        """Initialize the ShellTask with an unconfigured shell."""
        super().__init__(*args, **kwargs)
        self.__log_txt_path: str | None = None
        self.__sh: ShellOperator | None = None
        self.__run_kwargs: dict[str, object] = {}

    @luigi.Task.event_handler(luigi.Event.PROCESSING_TIME)
    def print_execution_time(self, processing_time: float) -> None:
        """Print task execution time when task completes.

        Args:
            processing_time: Total processing time in seconds
        """
        logger = logging.getLogger("task-timer")
        message = (
            f"{self.__class__.__module__}.{self.__class__.__name__} - "
            f"total elapsed time:\t{timedelta(seconds=processing_time)}"
        )
        logger.info(message)
        print(message, flush=True)

    @classmethod
    def print_log(cls, message: str, new_line: bool = True) -> None:
        """Print log message to both logger and stdout.

        Args:
            message: Message to log and print
            new_line: Prepend newline to output
        """
        logger = logging.getLogger(cls.__name__)
        logger.info(message)
        print((os.linesep if new_line else "") + f">>\t{message}", flush=True)

    @property
    def log_txt_path(self) -> str | None:
        return self.__log_txt_path

    def setup_shell(
        self,
        run_id: str | int | None = None,
        log_dir_path: str | os.PathLike[str] | None = None,
        commands: str | Sequence[str] | None = None,
        cwd: str | os.PathLike[str] | None = None,
        remove_if_failed: bool = True,
        clear_log_txt: bool = False,
        print_command: bool = True,
        quiet: bool = True,
        executable: str = "/bin/bash",
        env: Mapping[str, str] | None = None,
        **kwargs: object,
    ) -> None:
        """Configure shell execution environment and run version commands.

        Args:
            run_id: Unique identifier for this run (used in log filename)
            log_dir_path: Directory to store log files
            commands: Commands to run for version checking
            cwd: Working directory for shell execution
            remove_if_failed: Remove output files if command fails
            clear_log_txt: Clear log file before writing
            print_command: Print commands before execution
            quiet: Suppress stdout from commands
            executable: Shell executable to use
            env: Environment variables to set
            **kwargs: Additional arguments for shell execution
        """
        self.__log_txt_path = (
            str(
                Path(log_dir_path)
                .joinpath(f"{self.__class__.__name__}.{run_id}.sh.log.txt")
                .resolve()
            )
            if log_dir_path and run_id
            else None
        )
        self.__sh = ShellOperator(
            log_txt=self.__log_txt_path,
            quiet=quiet,
            clear_log_txt=clear_log_txt,
            logger=logging.getLogger(self.__class__.__name__),
            print_command=print_command,
            executable=executable,
        )
        self.__run_kwargs = {
            "cwd": cwd,
            "remove_if_failed": remove_if_failed,
            "env": (
                {**env, **{k: v for k, v in os.environ.items() if k not in env}}
                if env
                else dict(os.environ)
            ),
            **kwargs,
        }
        self.make_dirs(log_dir_path, cwd)
        if commands:
            self.run_shell(args=list(self.generate_version_commands(commands)))

    @classmethod
    def make_dirs(cls, *paths: object) -> None:
        """Create directories for the given paths if they don't exist.

        Args:
            *paths: Paths to create as directories
        """
        for p in paths:
            if p:
                d = Path(str(p)).resolve()
                if not d.is_dir():
                    cls.print_log(f"Make a directory:\t{d}", new_line=False)
                    d.mkdir(parents=True, exist_ok=True)

    def run_shell(self, *args: object, **kwargs: object) -> None:
        """Execute shell command using configured ShellOperator.

        Args:
            *args: Arguments to pass to shell operator
            **kwargs: Keyword arguments to pass to shell operator
        """
        logger = logging.getLogger(self.__class__.__name__)
        start_datetime = datetime.now(UTC)
        self.__sh.run(
            *args,
            **kwargs,
            **{k: v for k, v in self.__run_kwargs.items() if k not in kwargs},
        )
        elapsed_timedelta = datetime.now(UTC) - start_datetime
        message = f"shell elapsed time:\t{elapsed_timedelta}"
        logger.info(message)
        if self.__log_txt_path:
            with Path(self.__log_txt_path).open("a", encoding="utf-8") as f:
                f.write(f"### {message}{os.linesep}")

    def read_log_tail(self, n_lines: int = 20) -> str:
        """Return the last lines of the shell log (stdout/stderr of commands)."""
        if not (self.__log_txt_path and Path(self.__log_txt_path).is_file()):
            return ""
        with Path(self.__log_txt_path).open(encoding="utf-8", errors="replace") as f:
            lines = [s for s in f.read().splitlines() if not s.startswith("### ")]
        return os.linesep.join(lines[-n_lines:])

    @classmethod
    def remove_files_and_dirs(cls, *paths: str | os.PathLike[str]) -> None:
        """Remove files and directories.

        Args:
            *paths: File and directory paths to remove
        """
        for p in (Path(str(p)) for p in paths):
            if p.is_dir() and not p.is_symlink():
                cls.print_log(f"Remove a directory:\t{p}", new_line=False)
                shutil.rmtree(p)
            elif p.exists() or p.is_symlink():
                cls.print_log(f"Remove a file:\t{p}", new_line=False)
                p.unlink()

    def print_env_versions(self) -> None:
        """Print version information for Python and system environment."""
        python = sys.executable
        version_files = [
            Path("/proc/version"),
            *[
                o
                for o in Path("/etc").iterdir()
                if o.name.endswith(("-release", "_version"))
            ],
        ]
        self.run_shell(
            args=[
                f"{python} --version",
                f"{python} -m pip --version",
                f"{python} -m pip freeze --no-cache-dir",
                "uname -a",
                *[f"cat {o}" for o in version_files if o.is_file()],
            ]
        )

    @staticmethod
    @abstractmethod
    def generate_version_commands(commands: str | Sequence[str]) -> Iterable[str]:
        """Generate version checking commands for the given executables."""
        raise NotImplementedError


class SnpflowTask(ShellTask):
    """Base task class for snpflow pipeline operations.

    This class extends ShellTask with version command generation for the tools
    invoked by the variant discovery stages.
    """

    @staticmethod
    def generate_version_commands(commands: str | Sequence[str]) -> Iterable[str]:
        """Generate version checking commands for bioinformatics tools.

        Args:
            commands: Command name(s) to generate version commands for

        Yields:
            Version checking command strings
        """
        for c in [commands] if isinstance(commands, str) else commands:
            n = Path(c).name
            if n == "java" or n.endswith(".jar"):
                yield f"{c} -version"
            elif n in {"bwa", "bcftools"}:
                yield f'{c} 2>&1 | grep -e "Program:" -e "Version:"'
            elif n == "fastp":
                yield f"{c} --version 2>&1"
            elif n == "pbrun":
                yield f"{c} version"
            elif n == "bowtie2":
                yield f"{c} --version | head -1"
            else:
                yield f"{c} --version"
