#!/usr/bin/env python3
"""
Shared helpers for the Talkyard host provisioning scripts.

Both prepare_ubuntu.py and install_docker_compose.py use this module for:
  • Logging with ISO-8601 UTC timestamps and a script identifier
  • Running external commands synchronously
  • Marker-guarded edits of configuration files
  • A Nord-themed Rich status report of the steps that ran

Run the scripts as root; this module is not meant to be executed directly.

Author: Talkyard (refactored)
License: MIT
Version: 1.0.0
"""

import datetime
import logging
import os
import subprocess
import sys
import time
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pyfiglet
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

#####################################
# Global Configuration & Constants
#####################################

LOGGER_NAME = "talkyard_setup"
LOG_FILE = "/var/log/talkyard-provisioning.log"
MAX_LOG_SIZE = 2 * 1024 * 1024  # 2 MB
LOG_BACKUP_COUNT = 3

RC_LOCAL_TEMPLATE = "#!/bin/sh -e\n\nexit 0\n"

logger = logging.getLogger(LOGGER_NAME)

# Decorative output goes to stderr; stdout carries the log lines only.
console = Console(stderr=True)


class NordColors:
    """Nord theme color palette for consistent UI styling."""

    NORD8 = "#88C0D0"
    NORD9 = "#81A1C1"
    NORD11 = "#BF616A"  # Red (errors)
    NORD13 = "#EBCB8B"  # Yellow (caution)
    NORD14 = "#A3BE8C"  # Green (success)


# ANSI versions of the same colors, for plain log lines on a terminal.
ANSI_NORD9 = "\033[38;2;129;161;193m"
ANSI_NORD11 = "\033[38;2;191;97;106m"
ANSI_NORD13 = "\033[38;2;235;203;139m"
ANSI_NORD14 = "\033[38;2;163;190;140m"
ANSI_NC = "\033[0m"

#####################################
# Errors
#####################################


class ProvisioningError(Exception):
    """An expected failure that needs an operator to look at the host."""


class VerificationError(ProvisioningError):
    """A cryptographic or functional check did not hold."""

    def __init__(
        self, message: str, reference: str, hints: Optional[Sequence[str]] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.reference = reference
        self.hints = list(hints or [])

    def __str__(self) -> str:
        return f"{self.message} [{self.reference}]"


def log_verification_failure(error: VerificationError) -> None:
    logger.info("")
    logger.error(f"ERROR: {error}")
    for hint in error.hints:
        logger.error(hint)
    logger.info("")


#####################################
# Logging Setup
#####################################


class IsoUtcFormatter(logging.Formatter):
    """
    Formats records as '<ISO-8601 UTC time> <script id>: <message>', the same
    shape as `date --iso-8601=seconds --utc`.
    """

    def __init__(self, script_id: str, use_colors: bool = False) -> None:
        super().__init__(f"%(asctime)s {script_id}: %(message)s")
        self.use_colors = use_colors

    def formatTime(
        self, record: logging.LogRecord, datefmt: Optional[str] = None
    ) -> str:
        created = datetime.datetime.fromtimestamp(
            record.created, tz=datetime.timezone.utc
        )
        return created.isoformat(timespec="seconds")

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if not self.use_colors:
            return message
        if record.levelname == "DEBUG":
            return f"{ANSI_NORD9}{message}{ANSI_NC}"
        elif record.levelname == "INFO":
            return f"{ANSI_NORD14}{message}{ANSI_NC}"
        elif record.levelname == "WARNING":
            return f"{ANSI_NORD13}{message}{ANSI_NC}"
        elif record.levelname in ("ERROR", "CRITICAL"):
            return f"{ANSI_NORD11}{message}{ANSI_NC}"
        return message


def setup_logging(script_id: str, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the shared logger: INFO and up to stdout, everything to the
    rotating log file when one is given and can be opened.
    """
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        IsoUtcFormatter(script_id, use_colors=sys.stdout.isatty())
    )
    logger.addHandler(console_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=MAX_LOG_SIZE,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning(f"Cannot write log file {log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(IsoUtcFormatter(script_id))
            logger.addHandler(file_handler)
    return logger


#####################################
# UI Helper Functions
#####################################


def print_header(text: str) -> None:
    """Print a striking header using pyfiglet."""
    ascii_art = pyfiglet.figlet_format(text, font="slant")
    console.print(
        Panel(
            ascii_art,
            style=f"bold {NordColors.NORD8}",
            border_style=f"bold {NordColors.NORD9}",
            expand=False,
        )
    )


def print_section(title: str) -> None:
    console.print(
        Panel(
            title,
            style=f"bold {NordColors.NORD8}",
            border_style=f"bold {NordColors.NORD9}",
            expand=True,
        )
    )


class StepReport:
    """Ordered outcome of each provisioning step, shown as a table at exit."""

    ICONS = {"success": "✓", "skipped": "⏭", "failed": "✗"}
    COLORS = {
        "success": NordColors.NORD14,
        "skipped": NordColors.NORD8,
        "failed": NordColors.NORD11,
    }

    def __init__(self) -> None:
        self.steps: List[Tuple[str, str, str]] = []

    def run(self, description: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Run one step. A step returning False made no change (its guard marker
        was already there) and is recorded as skipped. Exceptions are recorded
        and re-raised: no later step runs.
        """
        print_section(description)
        start_time = time.time()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            elapsed = time.time() - start_time
            self.steps.append((description, "failed", f"{e} ({elapsed:.2f}s)"))
            raise
        elapsed = time.time() - start_time
        if result is False:
            self.steps.append((description, "skipped", "already applied"))
        else:
            self.steps.append((description, "success", f"completed in {elapsed:.2f}s"))
        return result

    def statuses(self) -> Dict[str, str]:
        return {description: status for description, status, _ in self.steps}

    def print(self) -> None:
        if not self.steps:
            return
        table = Table(
            title="Setup Status Report",
            box=box.ROUNDED,
            title_style=f"bold {NordColors.NORD8}",
        )
        table.add_column("Step", style=f"bold {NordColors.NORD9}")
        table.add_column("Status", justify="center")
        table.add_column("Details")
        for description, status, message in self.steps:
            color = self.COLORS.get(status, "")
            icon = self.ICONS.get(status, "?")
            table.add_row(
                escape(description), f"[{color}]{icon} {status.upper()}[/]", escape(message)
            )
        console.print(table)


#####################################
# System Helper Functions
#####################################


def run_command(
    cmd: List[str],
    check: bool = True,
    capture_output: bool = False,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external command and wait for it. No timeout is set; the tools
    themselves decide how long to take.
    """
    cmd_str = " ".join(cmd)
    logger.debug(f"Executing command: {cmd_str}")
    try:
        return subprocess.run(
            cmd,
            check=check,
            capture_output=capture_output,
            text=True,
            env=dict(env) if env is not None else None,
        )
    except subprocess.CalledProcessError as e:
        logger.error(f"Command failed: {cmd_str} with exit code {e.returncode}")
        logger.debug(f"Error output: {getattr(e, 'stderr', 'N/A')}")
        raise


def check_root() -> None:
    if os.geteuid() != 0:
        raise ProvisioningError(
            f"This script must be run as root. Please run with: sudo {sys.argv[0]}"
        )
    logger.debug("Root privileges confirmed.")


#####################################
# Marker-Guarded File Edits
#####################################


def file_has_marker(path: str, marker: str) -> bool:
    """True if the file exists and contains marker. Missing files have none."""
    if not os.path.isfile(path):
        return False
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return marker in f.read()


def append_block_once(path: str, marker: str, block: str) -> bool:
    """
    Append block to path unless marker is already in the file. Creates the
    file if needed. Returns True if something was written.
    """
    if file_has_marker(path, marker):
        logger.debug(f"'{marker}' already in {path}; not appending.")
        return False
    if not block.endswith("\n"):
        block += "\n"
    with open(path, "a", encoding="utf-8") as f:
        f.write(block)
    return True


def insert_before_last_line_once(path: str, marker: str, block: str) -> bool:
    """
    Insert block just before the last line of path, normally the 'exit 0'
    that ends /etc/rc.local, unless marker is already there. A missing file
    is created as an executable shell script first.
    """
    if file_has_marker(path, marker):
        logger.debug(f"'{marker}' already in {path}; not inserting.")
        return False
    if not os.path.isfile(path):
        logger.info(f"{path} does not exist; creating it.")
        write_file(path, RC_LOCAL_TEMPLATE, mode=0o755)
    with open(path, "r", encoding="utf-8") as f:
        lines = f.readlines()
    if not block.endswith("\n"):
        block += "\n"
    if lines:
        if not lines[-1].endswith("\n"):
            lines[-1] += "\n"
        lines.insert(len(lines) - 1, block)
    else:
        lines.append(block)
    with open(path, "w", encoding="utf-8") as f:
        f.writelines(lines)
    return True


def write_file(path: str, content: str, mode: Optional[int] = None) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    if mode is not None:
        os.chmod(path, mode)
