"""Logging setup shared by the CLI, web runner and orchestrator."""

from __future__ import annotations

import datetime as _dt
import logging
import pathlib
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "taskforce"

logger = logging.getLogger(__name__)

_run_handler: Optional[logging.FileHandler] = None


def configure_logging(
    verbose: bool = False,
    log_dir: str | pathlib.Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Attach a Rich console handler to the package logger.

    Repeated calls replace the previously installed console handler.
    """
    root = logging.getLogger(PACKAGE_LOGGER)
    root.setLevel(logging.INFO if verbose else logging.WARNING)
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True))
    if log_dir is not None:
        start_run_log(log_dir)
    return root


def start_run_log(log_dir: str | pathlib.Path = "logs") -> pathlib.Path:
    """Open a fresh ``taskforce-<timestamp>.log`` file for the current run."""
    global _run_handler
    directory = pathlib.Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = _dt.datetime.now().strftime("%Y-%m-%d_%H-%M-%S-%f")
    path = directory / f"taskforce-{stamp}.log"

    root = logging.getLogger(PACKAGE_LOGGER)
    if _run_handler is not None:
        root.removeHandler(_run_handler)
        _run_handler.close()
    _run_handler = logging.FileHandler(path, encoding="utf-8")
    _run_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
    root.addHandler(_run_handler)
    return path


def log_task_chaining(source: str, target: str, preview: Optional[str] = None) -> None:
    text = preview[:200].replace("\n", " ") if preview else "N/A"
    logger.info("🔗 [Chaining] '%s' uses output from '%s' → Input Preview: %s", target, source, text)
