"""
log_setup.py - Logging configuration for Mobile Data Bridge.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


def setup_logging(
    log_dir: Optional[Path] = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure the ``databridge`` logger tree (daily file + console)."""
    log_dir = log_dir or Path(__file__).resolve().parent.parent / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / f"databridge_{datetime.now():%Y%m%d}.log"

    root = logging.getLogger("databridge")
    root.setLevel(level)

    # Re-running setup (tests, repeated CLI calls) must not stack handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    # File handler
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(fh)

    # Console handler
    if console:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter(
            "[%(levelname)-7s] %(message)s"
        ))
        root.addHandler(ch)

    root.info("Logging initialized → %s", log_file)
    return root
