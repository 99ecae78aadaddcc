"""Per-run log files and console logging."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_PREFIX = "vaultmirror_"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

logger = logging.getLogger("vaultmirror.logs")

_handlers: list[logging.Handler] = []


def prune_logs(log_dir: Path, retention_days: int, now: Optional[float] = None) -> list[Path]:
    """Delete run logs older than ``retention_days``."""
    if not log_dir.exists():
        return []
    cutoff = (time.time() if now is None else now) - retention_days * 86400
    removed = []
    for path in log_dir.glob(f"{LOG_PREFIX}*.log"):
        if path.is_file() and path.stat().st_mtime < cutoff:
            path.unlink(missing_ok=True)
            removed.append(path)
    return removed


def configure_logging(
    log_dir: Optional[Path] = None,
    retention_days: int = 30,
    verbose: bool = False,
    console: Optional[Console] = None,
) -> Optional[Path]:
    """Attach a per-run file handler and a Rich console handler to the root logger.

    Calling this again replaces the handlers from the previous call.

    Returns:
        Path of this run's log file, or None when no log_dir was given.
    """
    root = logging.getLogger()
    for handler in _handlers:
        root.removeHandler(handler)
        handler.close()
    _handlers.clear()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    _handlers.append(console_handler)

    log_file = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        removed = prune_logs(log_dir, retention_days)
        log_file = log_dir / f"{LOG_PREFIX}{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        _handlers.append(file_handler)
    else:
        removed = []

    for handler in _handlers:
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    for path in removed:
        logger.info("Removed log older than %d days: %s", retention_days, path.name)
    return log_file
