"""
transfer_engine.py - Sequential per-category transfer between two devices.

One ``TransferTask`` is built per selected category from the source's
content sets.  Tasks run one after another and items within a task run
one at a time:

  files (direct)    : adb pull -> scratch dir -> adb push
  files (fast path) : GET_FILE on the source session, SAVE_FILE on the
                      destination session, progress from the agent
  records           : contacts / messages / calls are credited after a
                      short per-item delay

Every continuation is bound to the run that scheduled it, so callbacks
that arrive after ``cancel()`` (or from a previous run) are ignored.
"""

import logging
import tempfile
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Iterable, List, Optional

from .bridge_client import BridgeProtocolClient, TransferRole
from .content_analyzer import ContentAnalyzer, is_category_supported
from .device_registry import DeviceRegistry
from .events import EventLoop, Signal, SignalGroup, Timer
from .models import (
    CALLS, CONTACTS, DOCUMENTS, FILE_CATEGORIES, MESSAGES, MUSIC, PHOTOS, VIDEOS,
    ContentItem, Device,
)
from .tool_runner import ToolNotFoundError, ToolProcess, ToolResult, ToolRunner
from .utils import clamp_percent, ensure_directory, remove_directory, safe_percent, sanitize_filename

log = logging.getLogger("databridge.transfer")

RECORD_CATEGORIES = (CONTACTS, MESSAGES, CALLS)

_DEST_SUBDIRS = {PHOTOS: "Media/", VIDEOS: "Media/", MUSIC: "Music/", DOCUMENTS: "Documents/"}

MSG_BUSY = "A transfer is already in progress"
MSG_UNAVAILABLE = "One or both devices are not available"
MSG_UNAUTHORIZED = "One or both devices are not authorized"
MSG_SCRATCH = "Could not create a scratch directory for the transfer"
MSG_NO_TASKS = "No valid or compatible categories selected for transfer"
MSG_CANCELLED = "Cancelled"
MSG_COMPLETED = "Transfer completed"


class TaskStatus(str, Enum):
    WAITING = "waiting"
    STARTING = "starting"
    PULLING = "pulling"
    PUSHING = "pushing"
    FAST_PATH = "transferring_via_fastpath"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TransferTask:
    """State of one category being transferred."""
    source_id: str
    dest_id: str
    category: str
    items: List[ContentItem] = field(default_factory=list)
    total_items: int = 0
    total_size: int = 0
    processed_items: int = 0
    processed_size: int = 0
    partial_size: int = 0       # bytes of the in-flight fast-path item
    current_index: int = -1
    status: TaskStatus = TaskStatus.WAITING
    use_fast_path: bool = False
    clear_destination: bool = False
    current_item_name: str = ""
    error_message: str = ""

    @property
    def percent(self) -> int:
        if self.total_size > 0:
            return clamp_percent(safe_percent(self.processed_size + self.partial_size,
                                              self.total_size))
        if self.total_items > 0:
            return clamp_percent(safe_percent(self.processed_items, self.total_items))
        return 100 if self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED) else 0

    def summary(self) -> "TransferTask":
        """Copy without the item list."""
        return replace(self, items=[])


def _platform_label(device: Device) -> str:
    return "Android" if device.is_android else "iOS"


class TransferEngine:
    """Runs a queue of transfer tasks between a source and a destination device."""

    def __init__(
        self,
        loop: EventLoop,
        tools: ToolRunner,
        registry: DeviceRegistry,
        analyzer: ContentAnalyzer,
        dest_root: str = "/sdcard/MobileDataBridge/",
        item_delay: float = 0.1,
        terminate_grace: float = 0.5,
        temp_dir: Optional[str] = None,
    ):
        self.loop = loop
        self.tools = tools
        self.registry = registry
        self.analyzer = analyzer
        self.dest_root = dest_root if dest_root.endswith("/") else dest_root + "/"
        self.item_delay = item_delay
        self.terminate_grace = terminate_grace
        self.temp_dir = temp_dir

        self._active = False
        self._run_id = 0
        self._queue: Deque[TransferTask] = deque()
        self._current: Optional[TransferTask] = None
        self._source: Optional[Device] = None
        self._dest: Optional[Device] = None
        self._total_size = 0
        self._credited = 0
        self._last_overall = -1
        self._scratch: Optional[Path] = None
        self._proc: Optional[ToolProcess] = None
        self._delay_timer: Optional[Timer] = None
        self._links = SignalGroup()
        self._awaiting_fast_path = False

        self.started = Signal("transfer.started")
        self.overall_progress_changed = Signal("transfer.overall_progress_changed")
        self.task_started = Signal("transfer.task_started")
        self.task_progress = Signal("transfer.task_progress")
        self.task_completed = Signal("transfer.task_completed")
        self.task_failed = Signal("transfer.task_failed")
        self.completed = Signal("transfer.completed")
        self.cancelled = Signal("transfer.cancelled")
        self.failed = Signal("transfer.failed")
        self.finished = Signal("transfer.finished")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def start(self, source_id: str, dest_id: str, categories: Iterable[str],
              clear_destination: bool = False) -> bool:
        """Validate the request, build the task queue and start the first task."""
        if self._active:
            return self._reject(MSG_BUSY)
        source = self.registry.get_device(source_id)
        dest = self.registry.get_device(dest_id)
        if source is None or dest is None:
            return self._reject(MSG_UNAVAILABLE)
        if not (source.authorized and dest.authorized):
            return self._reject(MSG_UNAUTHORIZED)
        scratch = self._make_scratch_dir()
        if scratch is None:
            return self._reject(MSG_SCRATCH)

        fast_path = (source.is_android and dest.is_android
                     and self.registry.is_fast_path_connected(source_id)
                     and self.registry.is_fast_path_connected(dest_id))
        tasks = []
        for category in categories:
            content = self.analyzer.get_content_set(source_id, category)
            if not content.usable:
                log.info("Skipping %s: %d items, supported=%s, error=%r", category,
                         len(content.items), content.supported, content.error_message)
                continue
            if not is_category_supported(source.platform, dest.platform, category):
                log.info("Skipping %s: not supported %s -> %s", category,
                         source.platform.value, dest.platform.value)
                continue
            tasks.append(TransferTask(
                source_id=source_id,
                dest_id=dest_id,
                category=category,
                items=list(content.items),
                total_items=len(content.items),
                total_size=content.total_size or len(content.items) * 1024,
                use_fast_path=fast_path and category in FILE_CATEGORIES,
                clear_destination=clear_destination,
            ))

        if not tasks:
            remove_directory(scratch)
            return self._reject(MSG_NO_TASKS)

        self._run_id += 1
        self._active = True
        self._queue = deque(tasks)
        self._current = None
        self._source, self._dest = source, dest
        self._total_size = sum(t.total_size for t in tasks)
        self._credited = 0
        self._last_overall = -1
        self._scratch = scratch
        log.info("Transfer %s -> %s started: %s (%d bytes)", source_id, dest_id,
                 ", ".join(t.category for t in tasks), self._total_size)

        self.started.emit(self._total_size)
        self._emit_overall()
        self.loop.call_soon(self._bind(self._start_next_task))
        return True

    def cancel(self):
        """Stop the running transfer; emits ``cancelled`` and ``finished`` once."""
        if not self._active:
            return
        self._active = False
        self._run_id += 1

        proc, self._proc = self._proc, None
        if proc is not None:
            proc.terminate(self.terminate_grace)
        if self._delay_timer is not None:
            self._delay_timer.cancel()
            self._delay_timer = None
        if self._awaiting_fast_path and self._current is not None:
            session = self.registry.get_session(self._current.source_id)
            if session is not None and session.is_connected:
                session.cancel_operation()
        self._awaiting_fast_path = False
        self._links.disconnect_all()

        self._queue.clear()
        self._current = None
        self._cleanup_scratch()
        log.info("Transfer cancelled")
        self.cancelled.emit()
        self.finished.emit(False, MSG_CANCELLED)

    def is_active(self) -> bool:
        return self._active

    def overall_progress(self) -> int:
        if self._total_size <= 0:
            return 0 if self._active and (self._queue or self._current) else 100
        done = self._credited
        if self._current is not None:
            done += self._current.processed_size + self._current.partial_size
        value = clamp_percent(safe_percent(done, self._total_size))
        return max(value, self._last_overall) if self._active else value

    def active_tasks(self) -> List[TransferTask]:
        if not self._active:
            return []
        tasks = [self._current.summary()] if self._current else []
        return tasks + [t.summary() for t in self._queue]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _bind(self, fn: Callable[..., Any]) -> Callable[..., None]:
        """Wrap *fn* so it only runs while the current run is still active."""
        run_id = self._run_id

        def _call(*args):
            if self._active and run_id == self._run_id:
                fn(*args)

        return _call

    def _reject(self, message: str) -> bool:
        log.warning("Transfer not started: %s", message)
        self.failed.emit(message)
        return False

    def _make_scratch_dir(self) -> Optional[Path]:
        base = Path(self.temp_dir) if self.temp_dir else Path(tempfile.gettempdir())
        path = base / f"MobileDataBridge_Transfer_{datetime.now():%Y%m%d_%H%M%S_%f}"
        try:
            return ensure_directory(path)
        except OSError as exc:
            log.error("Cannot create scratch directory %s: %s", path, exc)
            return None

    def _cleanup_scratch(self):
        scratch, self._scratch = self._scratch, None
        if scratch is not None:
            remove_directory(scratch)

    def _dest_base(self, category: str) -> str:
        return self.dest_root + _DEST_SUBDIRS.get(category, "")

    def _run_adb(self, args: List[str], serial: str,
                 on_finished: Callable[[ToolResult], None]) -> bool:
        try:
            self._proc = self.tools.adb(args, self._bind(on_finished), serial=serial)
        except ToolNotFoundError as exc:
            self._finalize_task(False, str(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------
    def _emit_overall(self, value: Optional[int] = None):
        value = self.overall_progress() if value is None else value
        value = max(value, self._last_overall)
        if value == self._last_overall:
            return
        self._last_overall = value
        self.overall_progress_changed.emit(value)

    def _emit_task_progress(self):
        task = self._current
        if task is None:
            return
        self.task_progress.emit(
            task.category, task.percent,
            task.processed_items, task.total_items,
            task.processed_size + task.partial_size, task.total_size,
            task.current_item_name,
        )

    # ------------------------------------------------------------------
    # Task sequencing
    # ------------------------------------------------------------------
    def _start_next_task(self):
        if not self._queue:
            self._complete()
            return
        task = self._queue.popleft()
        task.status = TaskStatus.STARTING
        task.current_index = -1
        task.processed_items = task.processed_size = task.partial_size = 0
        self._current = task
        log.info("Task %s: %d items, %d bytes%s", task.category, task.total_items,
                 task.total_size, " (fast path)" if task.use_fast_path else "")

        self.task_started.emit(task.category, task.total_items)
        self._emit_task_progress()

        if self._source.is_android and self._dest.is_android:
            self._prepare_android_to_android(task)
        else:
            self._finalize_task(False, f"{_platform_label(self._source)}->"
                                       f"{_platform_label(self._dest)} transfer is not implemented yet")

    def _prepare_android_to_android(self, task: TransferTask):
        if task.category in RECORD_CATEGORIES or (
                task.category in FILE_CATEGORIES and task.use_fast_path):
            self._advance()
        elif task.category in FILE_CATEGORIES:
            base = self._dest_base(task.category)
            if task.clear_destination:
                self._run_adb(["shell", "rm", "-rf", base], task.dest_id,
                              lambda result: self._make_dest_dir(task, result))
            else:
                self._make_dest_dir(task)
        else:
            self._finalize_task(False, f"Transferring {task.category} between Android "
                                       f"devices is not implemented")

    def _make_dest_dir(self, task: TransferTask, cleared: Optional[ToolResult] = None):
        self._proc = None
        if cleared is not None and not cleared.ok:
            log.warning("Could not clear %s on %s: %s", self._dest_base(task.category),
                        task.dest_id, cleared.error_text())
        self._run_adb(["shell", "mkdir", "-p", self._dest_base(task.category)],
                      task.dest_id, self._on_dest_dir_ready)

    def _on_dest_dir_ready(self, result: ToolResult):
        self._proc = None
        if not result.ok:
            self._finalize_task(False, f"Could not create the destination directory: "
                                       f"{result.error_text()}")
            return
        self._advance()

    def _next_item(self):
        self.loop.call_soon(self._bind(self._advance))

    def _advance(self):
        task = self._current
        if task is None:
            return
        task.current_index += 1
        task.partial_size = 0
        if task.current_index >= task.total_items:
            self._finalize_task(True)
            return

        item = task.items[task.current_index]
        task.current_item_name = item.display_name
        if task.category in FILE_CATEGORIES:
            if task.use_fast_path and self._start_fast_path_item(task, item):
                return
            self._start_pull(task, item)
        elif task.category in RECORD_CATEGORIES:
            self._delay_timer = self.loop.call_later(
                self.item_delay, self._bind(self._on_record_done), task, item)
        else:
            self._finalize_task(False, f"Unsupported category: {task.category}")

    def _skip_item(self, task: TransferTask, reason: str):
        log.warning("Skipping %s: %s", task.current_item_name, reason)
        task.processed_items += 1
        self._emit_task_progress()
        self._next_item()

    def _finalize_task(self, success: bool, message: str = ""):
        task = self._current
        if task is None:
            return
        self._awaiting_fast_path = False
        self._links.disconnect_all()
        task.partial_size = 0
        task.current_item_name = ""

        if success:
            task.status = TaskStatus.COMPLETED
            log.info("Task %s completed (%d items)", task.category, task.processed_items)
            self.task_progress.emit(task.category, 100, task.total_items, task.total_items,
                                    task.total_size, task.total_size, "")
            self.task_completed.emit(task.category, task.processed_items)
            self._credited += task.total_size
        else:
            task.status = TaskStatus.FAILED
            task.error_message = message
            log.warning("Task %s failed: %s", task.category, message)
            self.task_failed.emit(task.category, message)
            self._credited += task.processed_size

        self._current = None
        self._emit_overall()
        self.loop.call_soon(self._bind(self._start_next_task))

    def _complete(self):
        self._active = False
        self._current = None
        self._cleanup_scratch()
        log.info("Transfer completed")
        self._emit_overall(100)
        self.completed.emit()
        self.finished.emit(True, MSG_COMPLETED)

    # ------------------------------------------------------------------
    # Direct path: adb pull / push
    # ------------------------------------------------------------------
    def _start_pull(self, task: TransferTask, item: ContentItem):
        if not item.file_path:
            self._skip_item(task, "no file path")
            return
        local = self._scratch / sanitize_filename(item.display_name)
        task.status = TaskStatus.PULLING
        self._emit_task_progress()
        self._run_adb(["pull", item.file_path, str(local)], task.source_id,
                      lambda result: self._on_pull_finished(task, item, local, result))

    def _on_pull_finished(self, task: TransferTask, item: ContentItem, local: Path,
                          result: ToolResult):
        self._proc = None
        if not result.ok:
            self._skip_item(task, f"pull failed: {result.error_text()}")
            return
        task.status = TaskStatus.PUSHING
        remote = self._dest_base(task.category) + item.display_name
        self._run_adb(["push", str(local), remote], task.dest_id,
                      lambda result: self._on_push_finished(task, item, local, result))

    def _on_push_finished(self, task: TransferTask, item: ContentItem, local: Path,
                          result: ToolResult):
        self._proc = None
        try:
            local.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning("Could not delete scratch copy %s: %s", local, exc)
        if result.ok:
            task.processed_size += item.size
        else:
            log.warning("Push of %s failed: %s", item.display_name, result.error_text())
        task.processed_items += 1
        self._emit_task_progress()
        self._emit_overall()
        self._next_item()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def _on_record_done(self, task: TransferTask, item: ContentItem):
        self._delay_timer = None
        task.processed_items += 1
        task.processed_size += item.size
        self._emit_task_progress()
        self._emit_overall()
        self._next_item()

    # ------------------------------------------------------------------
    # Fast path
    # ------------------------------------------------------------------
    def _sessions(self, task: TransferTask):
        source = self.registry.get_session(task.source_id)
        dest = self.registry.get_session(task.dest_id)
        if source is None or dest is None or not (source.is_connected and dest.is_connected):
            return None
        return source, dest

    def _subscribe(self, source: BridgeProtocolClient, dest: BridgeProtocolClient) -> bool:
        if not (source.set_role(TransferRole.SOURCE) and dest.set_role(TransferRole.DESTINATION)):
            return False
        self._links.connect(source.file_ready, self._bind(self._on_file_ready))
        self._links.connect(dest.file_saved, self._bind(self._on_file_saved))
        for session in (source, dest):
            self._links.connect(session.file_transfer_progress, self._bind(self._on_file_progress))
            self._links.connect(session.error, self._bind(self._on_fast_path_error))
        return True

    def _start_fast_path_item(self, task: TransferTask, item: ContentItem) -> bool:
        """Request *item* over the bridge; False means use pull/push instead."""
        sessions = self._sessions(task)
        if sessions is None:
            log.warning("Bridge sessions unavailable; falling back to adb for %s",
                        item.display_name)
            return False
        source, dest = sessions
        if not self._links and not self._subscribe(source, dest):
            self._links.disconnect_all()
            return False
        if not source.request_file(item.file_path):
            self._links.disconnect_all()
            return False
        task.status = TaskStatus.FAST_PATH
        self._awaiting_fast_path = True
        self._emit_task_progress()
        return True

    def _current_item(self) -> Optional[ContentItem]:
        task = self._current
        if task is None or not 0 <= task.current_index < len(task.items):
            return None
        return task.items[task.current_index]

    def _on_file_ready(self, path: str):
        if not self._awaiting_fast_path:
            return
        task, item = self._current, self._current_item()
        dest = self.registry.get_session(task.dest_id)
        if dest is None or not dest.is_connected:
            self._finish_fast_path_item(0, "destination bridge is disconnected")
            return
        if not dest.save_file({"path": path, "name": item.display_name, "size": item.size}):
            self._finish_fast_path_item(0, "could not send SAVE_FILE")

    def _on_file_saved(self, result: str):
        if not self._awaiting_fast_path:
            return
        item = self._current_item()
        if result.startswith("OK"):
            self._finish_fast_path_item(item.size)
        else:
            self._finish_fast_path_item(0, f"destination reported {result!r}")

    def _on_file_progress(self, path: str, received: int, total: int):
        if not self._awaiting_fast_path:
            return
        item = self._current_item()
        fraction = received / total if total > 0 else 0.0
        self._current.partial_size = min(item.size, int(fraction * item.size))
        self._emit_task_progress()
        self._emit_overall()

    def _on_fast_path_error(self, message: str):
        if self._awaiting_fast_path:
            self._finish_fast_path_item(0, f"bridge error: {message}")

    def _finish_fast_path_item(self, credited: int, reason: str = ""):
        task = self._current
        self._awaiting_fast_path = False
        task.partial_size = 0
        if reason:
            log.warning("Skipping %s: %s", task.current_item_name, reason)
        task.processed_items += 1
        task.processed_size += credited
        self._emit_task_progress()
        self._emit_overall()
        self._next_item()
