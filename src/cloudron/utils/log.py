"""Logging setup for the CLI."""

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(debug: bool = False, console: Console = None) -> None:
    """Route the cloudron loggers through rich.

    Debug mode shows request-level detail; otherwise only warnings and
    errors are logged. Safe to call more than once.
    """
    logger = logging.getLogger("cloudron")
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)

    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=debug,
        rich_tracebacks=debug,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
