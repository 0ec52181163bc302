"""
clockgov - Logging setup

Routes the package loggers through rich.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = 'INFO', console: Optional[Console] = None) -> logging.Logger:
    """Install a RichHandler on the root logger."""
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        log_time_format='[%Y-%m-%d %H:%M:%S]'
    )
    handler.setFormatter(logging.Formatter('%(message)s'))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    return logging.getLogger('clockgov')
