"""Console logging for deploy.py.

Messages carry Rich markup (``[green]✓ ...[/green]``) so each step prints as
a colored status line; the level column is colored by ``RichHandler``.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

_RICH_HANDLER_KWARGS = {
    "markup": True,
    "show_time": False,
    "show_path": False,
}

# Colors used for step lines. Keep in sync with the icons in deploy.py.
INFO = "blue"
STEP = "yellow"
OK = "green"
FAIL = "red"


def paint(color, message):
    """Wrap ``message`` in Rich markup for ``color``."""
    return f"[{color}]{message}[/{color}]"


def configure_logging(verbose=False, console=None):
    """Route the root logger through a single RichHandler.

    Safe to call more than once; existing handlers are replaced.
    """
    handler = RichHandler(console=console or Console(), **_RICH_HANDLER_KWARGS)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )
    return handler
