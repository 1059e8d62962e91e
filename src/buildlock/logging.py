"""Logging configuration for the buildlock CLI."""

import logging
import sys
from enum import IntEnum
from typing import TextIO

from rich.console import Console
from rich.logging import RichHandler


class LogLevel(IntEnum):
    """Log level enumeration."""

    QUIET = logging.WARNING
    NORMAL = logging.INFO
    VERBOSE = logging.DEBUG


def configure_logging(
    verbosity: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    stream: TextIO = sys.stderr,
) -> Console:
    """Configure logging based on CLI options.

    Args:
        verbosity: Number of -v flags (0=normal, 1=debug, 2=debug with
            timestamps and file change events)
        quiet: Suppress non-error output (takes precedence over verbosity)
        no_color: Disable colored output
        stream: Output stream for logs

    Returns:
        Configured Rich console for log output
    """
    if quiet:
        level = LogLevel.QUIET
    elif verbosity >= 1:
        level = LogLevel.VERBOSE
    else:
        level = LogLevel.NORMAL

    console = Console(
        file=stream,
        force_terminal=False if no_color else None,
        no_color=no_color,
    )

    handler = RichHandler(
        console=console,
        show_time=verbosity >= 2,
        show_path=verbosity >= 2,
    )

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )
    # watchfiles logs every batch of lock directory changes at debug level
    logging.getLogger("watchfiles").setLevel(logging.DEBUG if verbosity >= 2 else logging.WARNING)

    return console
