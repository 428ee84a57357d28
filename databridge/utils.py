"""
utils.py - Utility helpers for Mobile Data Bridge.
"""

import logging
import re
import shutil
from pathlib import Path

log = logging.getLogger("databridge.utils")

_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')


def format_bytes(size: int) -> str:
    """Human-readable file size."""
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def format_duration(seconds: float) -> str:
    """Human-readable duration."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    m, s = divmod(int(seconds), 60)
    if m < 60:
        return f"{m}m {s}s"
    h, m = divmod(m, 60)
    return f"{h}h {m}m {s}s"


def safe_percent(done: float, total: float) -> float:
    """Return ``done / total * 100`` without division by zero."""
    return (done / total * 100) if total > 0 else 0.0


def clamp_percent(value: float) -> int:
    """Integer percentage bounded to 0..100."""
    return max(0, min(100, int(value)))


def sanitize_filename(name: str) -> str:
    """Replace characters that are not valid in host file names."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name)


def ensure_directory(path: Path) -> Path:
    """Create directory if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def remove_directory(path: Path) -> bool:
    """Recursively delete *path*; returns False (and logs) on failure."""
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
        return True
    except OSError as exc:
        log.warning("Failed to remove directory %s: %s", path, exc)
        return False
