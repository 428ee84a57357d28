"""
statistics.py - Live statistics for a running transfer.

Subscribes to a ``TransferEngine`` and keeps per-category rows, elapsed
time, throughput and a time-remaining estimate.  The front end renders
``rows`` / ``status_text()`` / ``summary()`` however it likes.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .events import SignalGroup
from .utils import format_bytes, format_duration

log = logging.getLogger("databridge.statistics")

# Speed and ETA are meaningless right after the start
MIN_ESTIMATE_SECONDS = 2.0


@dataclass
class CategoryRow:
    category: str
    status: str = "waiting"
    processed_items: int = 0
    total_items: int = 0
    processed_size: int = 0
    total_size: int = 0
    current_item: str = ""
    error: str = ""

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def text(self) -> str:
        if self.status == "failed":
            return f"{self.category}: failed - {self.error}"
        line = f"{self.category}: {self.status} ({self.processed_items}/{self.total_items})"
        if self.total_size > 0:
            line += f" - {format_bytes(self.processed_size)}/{format_bytes(self.total_size)}"
        if self.current_item and self.status == "in progress":
            line += f" - {self.current_item}"
        return line


class TransferStatistics:
    """Aggregates the signals of one ``TransferEngine``."""

    def __init__(self, engine, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._links = SignalGroup()
        self._rows: Dict[str, CategoryRow] = {}
        self._start: Optional[float] = None
        self._end: Optional[float] = None
        self.total_size = 0
        self.processed_size = 0
        self.overall_percent = 0
        self.completed_tasks = 0
        self.failed_tasks = 0
        self.current_category = ""
        self.final_message = ""
        self.active = False

        self._links.connect(engine.started, self._on_started)
        self._links.connect(engine.task_started, self._on_task_started)
        self._links.connect(engine.task_progress, self._on_task_progress)
        self._links.connect(engine.task_completed, self._on_task_completed)
        self._links.connect(engine.task_failed, self._on_task_failed)
        self._links.connect(engine.overall_progress_changed, self._on_overall)
        self._links.connect(engine.finished, self._on_finished)

    def detach(self):
        self._links.disconnect_all()

    # ------------------------------------------------------------------
    # Signal handlers
    # ------------------------------------------------------------------
    def _on_started(self, total_size: int):
        self._rows.clear()
        self._start, self._end = self._clock(), None
        self.total_size = total_size
        self.processed_size = 0
        self.overall_percent = 0
        self.completed_tasks = self.failed_tasks = 0
        self.current_category = ""
        self.final_message = ""
        self.active = True

    def _on_task_started(self, category: str, total_items: int):
        self._rows[category] = CategoryRow(category, "in progress", total_items=total_items)
        self.current_category = category

    def _on_task_progress(self, category: str, percent: int, processed_items: int,
                          total_items: int, processed_size: int, total_size: int,
                          current_item: str):
        row = self._rows.setdefault(category, CategoryRow(category, "in progress"))
        row.processed_items = processed_items
        row.total_items = total_items
        row.processed_size = processed_size
        row.total_size = total_size
        row.current_item = current_item
        self._recalculate()

    def _on_task_completed(self, category: str, count: int):
        row = self._rows.setdefault(category, CategoryRow(category))
        row.status = "completed"
        row.processed_items = count
        row.processed_size = row.total_size
        row.current_item = ""
        self.completed_tasks += 1
        self._recalculate()

    def _on_task_failed(self, category: str, message: str):
        row = self._rows.setdefault(category, CategoryRow(category))
        row.status = "failed"
        row.error = message
        row.current_item = ""
        self.failed_tasks += 1

    def _on_overall(self, percent: int):
        self.overall_percent = percent

    def _on_finished(self, success: bool, message: str):
        if not self.active:
            return
        self.active = False
        self._end = self._clock()
        self.final_message = message
        self.current_category = ""
        log.info("Transfer finished after %s: %s", format_duration(self.elapsed), message)

    def _recalculate(self):
        self.processed_size = sum(
            row.total_size if row.completed else row.processed_size
            for row in self._rows.values()
        )

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    @property
    def rows(self) -> List[CategoryRow]:
        return list(self._rows.values())

    @property
    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        end = self._end if self._end is not None else self._clock()
        return max(0.0, end - self._start)

    @property
    def speed(self) -> Optional[float]:
        """Average bytes per second, once enough data is available."""
        elapsed = self.elapsed
        if self.processed_size <= 0 or elapsed <= MIN_ESTIMATE_SECONDS or self.total_size <= 0:
            return None
        return self.processed_size / elapsed

    @property
    def remaining_time(self) -> Optional[float]:
        speed = self.speed
        if not speed:
            return None
        return max(0, self.total_size - self.processed_size) / speed

    @property
    def estimated_total_time(self) -> Optional[float]:
        remaining = self.remaining_time
        return None if remaining is None else self.elapsed + remaining

    def status_text(self) -> str:
        if self.active:
            parts = [f"{self.overall_percent}%", f"elapsed {format_duration(self.elapsed)}"]
            if self.speed is not None:
                parts.append(f"{format_bytes(self.speed)}/s")
                parts.append(f"remaining {format_duration(self.remaining_time)}")
            return " | ".join(parts)
        if self.final_message:
            return self.final_message
        if self.failed_tasks:
            return f"Completed with {self.failed_tasks} errors"
        return "Idle"

    def summary(self) -> str:
        return (
            f"Summary: {self.completed_tasks} tasks completed, {self.failed_tasks} tasks failed.\n"
            f"Data transferred (approx.): {format_bytes(self.processed_size)}.\n"
            f"Total time: {format_duration(self.elapsed)}."
        )
