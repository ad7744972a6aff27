"""Logging configuration for contextforge."""

from __future__ import annotations

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "contextforge"
NOISY_LIBRARIES = ("httpx", "httpcore", "anthropic", "openai")


def setup_logging(verbose: bool = False, rich_output: bool = True) -> None:
    """Send ``contextforge`` logs to stderr.

    Safe to call more than once; the previously installed handler is
    replaced rather than duplicated.
    """
    level = logging.DEBUG if verbose else logging.INFO

    if rich_output:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=verbose,
            rich_tracebacks=verbose,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
    handler.setLevel(level)
    handler.set_name(PACKAGE_LOGGER)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for existing in list(package_logger.handlers):
        if existing.get_name() == PACKAGE_LOGGER:
            package_logger.removeHandler(existing)
    package_logger.setLevel(level)
    package_logger.addHandler(handler)

    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
