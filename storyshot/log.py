"""Logging setup shared by the CLI process and the worker processes."""

from __future__ import annotations

import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

console = Console()


def setup_logging(verbose: bool = False, role: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(message)s" if role is None else f"[{role}:{os.getpid()}] %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )
