from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(debug: bool = False) -> None:
    """Route library logging to stderr through rich; stdout stays model output only."""
    level = logging.DEBUG if debug else logging.WARNING
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=debug,
        show_path=debug,
        rich_tracebacks=debug,
    )
    root = logging.getLogger("pytoolcall")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    if debug:
        logging.getLogger("httpx").setLevel(logging.INFO)
