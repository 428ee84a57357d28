"""
content_analyzer.py - Per-device content discovery.

Every ``analyze()`` call queues one task per category that applies to the
device.  Tasks run one at a time across all devices through a single
slot; a task reads its category with one of three back ends:

  • direct    : an adb subprocess (``ls -l`` / ``content query``) + parsers
  • fast path : a scan streamed over the device's bridge session
  • synthetic : placeholder data for iOS devices

Results are kept as ``ContentSet`` objects keyed by (device, category).
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Union

from .bridge_client import TransferRole
from .device_registry import DeviceRegistry
from .events import EventLoop, Signal, SignalGroup
from .models import (
    ANDROID_CATEGORIES, ANDROID_FAST_PATH_EXTRAS, APPLICATIONS, CALENDAR, CALLS,
    CONTACTS, DOCUMENTS, IOS_CATEGORIES, MESSAGES, MUSIC, PHOTOS, VIDEOS,
    ContentItem, ContentSet, DevicePlatform,
)
from .parsers import (
    IMAGE_EXTENSIONS, VIDEO_EXTENSIONS, parse_call_rows, parse_contact_rows,
    parse_contacts_json, parse_files_json, parse_ls_listing, parse_media_json,
    parse_message_rows, parse_messages_json,
)
from .tool_runner import ToolNotFoundError, ToolProcess, ToolResult, ToolRunner
from .utils import clamp_percent

log = logging.getLogger("databridge.analyzer")

# Order used when listing transferable categories
TRANSFERABLE_CATEGORIES = (
    CONTACTS, MESSAGES, PHOTOS, VIDEOS, CALLS, CALENDAR, MUSIC, DOCUMENTS, APPLICATIONS,
)

_CONTENT_QUERIES = {
    CONTACTS: ("content://com.android.contacts/data",
               "_id,display_name,times_contacted,last_time_contacted", parse_contact_rows),
    MESSAGES: ("content://sms", "_id,address,body,date", parse_message_rows),
    CALLS: ("content://call_log/calls", "_id,number,date,duration,type", parse_call_rows),
}

IOS_PHOTO_DIR = "/private/var/mobile/Media/DCIM/100APPLE/"

PlatformLike = Union[DevicePlatform, str]


# ---------------------------------------------------------------------------
# Cross-platform support rules
# ---------------------------------------------------------------------------
def _platform(value: PlatformLike) -> str:
    return value.value if isinstance(value, DevicePlatform) else str(value)


def is_category_supported(source: PlatformLike, dest: PlatformLike, category: str) -> bool:
    src, dst = _platform(source), _platform(dest)
    if category in (CONTACTS, PHOTOS, VIDEOS, DOCUMENTS, MUSIC):
        return True
    if category == MESSAGES and src == "android" and dst == "ios":
        return False
    if category == CALLS and dst == "ios":
        return False
    if category in (CALENDAR, APPLICATIONS) and src != dst:
        return False
    return True


def incompatibility_reason(source: PlatformLike, dest: PlatformLike, category: str) -> Optional[str]:
    """Explain why *category* cannot go from *source* to *dest* (None if it can)."""
    if is_category_supported(source, dest, category):
        return None
    src, dst = _platform(source), _platform(dest)
    if category == MESSAGES and src == "android" and dst == "ios":
        return "iOS does not allow importing SMS/MMS messages from Android."
    if category == CALLS and dst == "ios":
        return "iOS does not allow importing call logs."
    if category == CALENDAR:
        return "Calendars can only be transferred between devices of the same platform."
    if category == APPLICATIONS:
        return "Applications cannot be transferred between different operating systems."
    return f"Transferring {category} from {src} to {dst} is not supported."


# ---------------------------------------------------------------------------
# Synthetic iOS data
# ---------------------------------------------------------------------------
def _ios_items(category: str, now: datetime) -> List[ContentItem]:
    if category == CONTACTS:
        return [ContentItem(str(i), f"iOS contact {i}", size=512,
                            timestamp=now - timedelta(days=i)) for i in range(1, 21)]
    if category == MESSAGES:
        return [ContentItem(str(i), f"iOS message {i}", size=256,
                            timestamp=now - timedelta(days=i),
                            extra={"body": f"Message body {i}"}) for i in range(1, 16)]
    if category == PHOTOS:
        return [ContentItem(f"IMG_{i}.JPG", f"iOS photo {i}",
                            file_path=f"{IOS_PHOTO_DIR}IMG_{i}.JPG",
                            size=(1 + i % 3) * 1024 * 1024,
                            timestamp=now - timedelta(days=i)) for i in range(1, 11)]
    if category == CALLS:
        return [ContentItem(str(i), f"iOS call {i}", size=128,
                            timestamp=now - timedelta(days=i),
                            extra={"duration": 60 + i * 30,
                                   "type": "incoming" if i % 2 == 0 else "outgoing"})
                for i in range(1, 9)]
    return []


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------
@dataclass
class AnalysisTask:
    device_id: str
    category: str
    quick: bool = False
    use_fast_path: bool = False
    generation: int = 0


class ContentAnalyzer:
    """Queues and runs analysis tasks; stores the resulting content sets."""

    def __init__(
        self,
        loop: EventLoop,
        tools: ToolRunner,
        registry: DeviceRegistry,
        photo_dir: str = "/sdcard/DCIM/Camera/",
        video_dir: str = "/sdcard/DCIM/Camera/",
        auto_fast_path: bool = True,
    ):
        self.loop = loop
        self.tools = tools
        self.registry = registry
        self.photo_dir = photo_dir
        self.video_dir = video_dir
        self.auto_fast_path = auto_fast_path

        self._lock = threading.Lock()
        self._queue: Deque[AnalysisTask] = deque()
        self._current: Optional[AnalysisTask] = None
        self._current_proc: Optional[ToolProcess] = None
        self._sets: Dict[str, Dict[str, ContentSet]] = {}
        self._pending: Dict[str, int] = {}
        self._generation: Dict[str, int] = {}
        self._links: Dict[str, SignalGroup] = {}
        self._scan_complete: Dict[str, Dict[str, bool]] = {}

        self.analysis_started = Signal("analyzer.analysis_started")
        self.analysis_progress = Signal("analyzer.analysis_progress")
        self.analysis_complete = Signal("analyzer.analysis_complete")
        self.analysis_error = Signal("analyzer.analysis_error")
        self.content_set_updated = Signal("analyzer.content_set_updated")

    is_category_supported = staticmethod(is_category_supported)
    incompatibility_reason = staticmethod(incompatibility_reason)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def analyze(self, device_id: str, quick: bool = False) -> bool:
        """Queue a full analysis of *device_id*; previous results are discarded."""
        device = self.registry.get_device(device_id)
        if device is None:
            log.warning("Cannot analyze unknown device %s", device_id)
            return False
        if not device.authorized:
            log.warning("Cannot analyze unauthorized device %s", device_id)
            self.analysis_error.emit(device_id, "all",
                                     "The device is not authorized for data access.")
            return False

        fast = device.is_android and self.registry.is_fast_path_connected(device_id)
        if device.is_android:
            categories = list(ANDROID_CATEGORIES)
            if fast:
                categories += ANDROID_FAST_PATH_EXTRAS
            elif self.auto_fast_path:
                # Picked up by the next analyze() once the session is up
                self.registry.setup_fast_path(device_id)
        else:
            categories = list(IOS_CATEGORIES)

        with self._lock:
            generation = self._generation.get(device_id, 0) + 1
            self._generation[device_id] = generation
            self._queue = deque(t for t in self._queue if t.device_id != device_id)
            self._sets[device_id] = {}
            self._pending[device_id] = len(categories)
            if fast and not quick:
                self._scan_complete[device_id] = {c: False for c in categories}
            for category in categories:
                self._queue.append(AnalysisTask(device_id, category, quick, fast, generation))

        log.info("Analysis of %s queued: %s%s", device_id, ", ".join(categories),
                 " (fast path)" if fast else "")
        self.analysis_started.emit(device_id)
        if self._current is None:
            self.loop.call_soon(self._process_next)
        return True

    def get_content_set(self, device_id: str, category: str) -> ContentSet:
        with self._lock:
            content = self._sets.get(device_id, {}).get(category)
            return content.copy() if content else ContentSet.unsupported(category)

    def get_total_size(self, device_id: str, categories: Iterable[str]) -> int:
        with self._lock:
            sets = self._sets.get(device_id, {})
            return sum(sets[c].total_size for c in categories if c in sets)

    def supported_categories(self, source_id: str, dest_id: str) -> List[str]:
        """Categories with data on the source that the destination can accept."""
        source = self.registry.get_device(source_id)
        dest = self.registry.get_device(dest_id)
        if source is None or dest is None:
            return []
        with self._lock:
            sets = self._sets.get(source_id, {})
            return [
                c for c in TRANSFERABLE_CATEGORIES
                if is_category_supported(source.platform, dest.platform, c)
                and c in sets and not sets[c].is_empty
            ]

    def is_fast_path_scan_complete(self, device_id: str, category: str) -> bool:
        return self._scan_complete.get(device_id, {}).get(category, False)

    @property
    def is_busy(self) -> bool:
        return self._current is not None or bool(self._queue)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _process_next(self):
        if self._current is not None:
            return
        with self._lock:
            if not self._queue:
                return
            task = self._queue.popleft()
            self._current = task

        device = self.registry.get_device(task.device_id)
        if device is None or not device.authorized:
            self._finalize(task, False, "Device is not available or not authorized.")
            return

        log.debug("Analyzing %s on %s", task.category, task.device_id)
        self.analysis_progress.emit(task.device_id, task.category, 0)
        if device.is_ios:
            self._run_synthetic(task)
        elif task.use_fast_path:
            self._run_fast_path(task)
        else:
            self._run_direct(task)

    def _is_stale(self, task: AnalysisTask) -> bool:
        return self._generation.get(task.device_id) != task.generation

    def _finalize(self, task: AnalysisTask, success: bool, message: str = ""):
        if task is not self._current:
            return
        self._current = None
        self._current_proc = None
        if task.use_fast_path:
            self._teardown_links(task.device_id)

        if self._is_stale(task):
            log.debug("Discarding superseded %s result for %s", task.category, task.device_id)
            self.loop.call_soon(self._process_next)
            return

        device_id, category = task.device_id, task.category
        message = message or f"Analysis of {category} failed."
        with self._lock:
            sets = self._sets.setdefault(device_id, {})
            content = sets.get(category)
            updated = content is None or not success
            if content is None:
                sets[category] = ContentSet(category) if success else \
                    ContentSet.unsupported(category, message)
            elif not success:
                content.supported = False
                content.error_message = message
            self._pending[device_id] = max(0, self._pending.get(device_id, 0) - 1)
            remaining = self._pending[device_id]

        if updated:
            self.content_set_updated.emit(device_id, category)
        if success:
            self.analysis_progress.emit(device_id, category, 100)
        else:
            log.warning("Analysis of %s on %s failed: %s", category, device_id, message)
            self.analysis_error.emit(device_id, category, message)
        if remaining == 0:
            log.info("Analysis of %s complete", device_id)
            self.analysis_complete.emit(device_id)
        self.loop.call_soon(self._process_next)

    def _store(self, task: AnalysisTask, content: ContentSet):
        if self._is_stale(task):
            return
        with self._lock:
            self._sets.setdefault(task.device_id, {})[content.category] = content
        self.content_set_updated.emit(task.device_id, content.category)

    def _merge(self, task: AnalysisTask, category: str, items: List[ContentItem]):
        if self._is_stale(task):
            return
        with self._lock:
            sets = self._sets.setdefault(task.device_id, {})
            content = sets.setdefault(category, ContentSet(category))
            added = content.merge(items)
        if added:
            self.content_set_updated.emit(task.device_id, category)

    # ------------------------------------------------------------------
    # Direct (adb) analysis
    # ------------------------------------------------------------------
    def _direct_command(self, category: str):
        """Return (adb args, output parser) for *category*, or None."""
        if category == PHOTOS:
            return (["shell", "ls", "-l", self.photo_dir],
                    lambda out: parse_ls_listing(out, self.photo_dir, IMAGE_EXTENSIONS))
        if category == VIDEOS:
            return (["shell", "ls", "-l", self.video_dir],
                    lambda out: parse_ls_listing(out, self.video_dir, VIDEO_EXTENSIONS))
        if category in _CONTENT_QUERIES:
            uri, projection, parser = _CONTENT_QUERIES[category]
            return (["shell", "content", "query", "--uri", uri, "--projection", projection],
                    parser)
        return None

    def _run_direct(self, task: AnalysisTask):
        command = self._direct_command(task.category)
        if command is None:
            self._finalize(task, False,
                           f"{task.category} can only be analyzed through the bridge agent.")
            return
        args, parser = command
        try:
            self._current_proc = self.tools.adb(
                args, lambda result: self._on_direct_finished(task, parser, result),
                serial=task.device_id,
            )
        except ToolNotFoundError as exc:
            self._finalize(task, False, str(exc))

    def _on_direct_finished(self, task: AnalysisTask,
                            parser: Callable[[str], List[ContentItem]], result: ToolResult):
        if task is not self._current:
            return
        self._current_proc = None
        if not result.ok:
            self._finalize(task, False,
                           f"Command failed (exit code {result.returncode}): {result.stderr.strip()}")
            return
        try:
            items = parser(result.stdout)
        except Exception as exc:
            log.exception("Could not parse %s output from %s", task.category, task.device_id)
            self._finalize(task, False, f"Could not parse {task.category} output: {exc}")
            return
        log.info("%s: %d %s found", task.device_id, len(items), task.category)
        self._store(task, ContentSet.from_items(task.category, items))
        self._finalize(task, True)

    # ------------------------------------------------------------------
    # Synthetic (iOS) analysis
    # ------------------------------------------------------------------
    def _run_synthetic(self, task: AnalysisTask):
        items = _ios_items(task.category, datetime.now())
        if not items:
            self._finalize(task, False, f"{task.category} is not available on iOS devices.")
            return
        self._store(task, ContentSet.from_items(task.category, items))
        self._finalize(task, True)

    # ------------------------------------------------------------------
    # Fast-path (bridge scan) analysis
    # ------------------------------------------------------------------
    def _run_fast_path(self, task: AnalysisTask):
        session = self.registry.get_session(task.device_id)
        if session is None or not session.is_connected:
            if self._direct_command(task.category) is not None:
                log.warning("Bridge session for %s is down; analyzing %s directly",
                            task.device_id, task.category)
                self._run_direct(task)
            else:
                self._finalize(task, False, "The bridge session is not connected.")
            return

        self._teardown_links(task.device_id)
        session.set_role(TransferRole.SOURCE)

        links = SignalGroup()
        links.connect(session.media_data,
                      lambda idx, count, data: self._on_stream(task, idx, count, data, parse_media_json))
        links.connect(session.files_data,
                      lambda idx, count, data: self._on_stream(task, idx, count, data, parse_files_json))
        links.connect(session.contacts_data,
                      lambda data: self._on_replace(task, CONTACTS, parse_contacts_json(data)))
        links.connect(session.messages_data,
                      lambda data: self._on_replace(task, MESSAGES, parse_messages_json(data)))
        links.connect(session.scan_progress, lambda pct: self._on_scan_progress(task, pct))
        links.connect(session.scan_completed, lambda: self._on_scan_completed(task))
        links.connect(session.scan_error, lambda msg: self._finalize(task, False, msg))
        links.connect(session.disconnected, lambda: self._finalize(
            task, False, "The bridge session disconnected during the scan."))
        self._links[task.device_id] = links

        if not session.start_scan():
            self._finalize(task, False, "Could not start the scan on the bridge agent.")

    def _on_stream(self, task: AnalysisTask, idx: int, count: int, data: list,
                   parser: Callable[[list], Dict[str, List[ContentItem]]]):
        if task is not self._current:
            return
        for category, items in parser(data).items():
            self._merge(task, category, items)
        if count > 0:
            self.analysis_progress.emit(task.device_id, task.category,
                                        clamp_percent((idx + 1) * 100 / count))

    def _on_replace(self, task: AnalysisTask, category: str, items: List[ContentItem]):
        if task is not self._current:
            return
        self._store(task, ContentSet.from_items(category, items))

    def _on_scan_progress(self, task: AnalysisTask, pct: int):
        if task is self._current:
            self.analysis_progress.emit(task.device_id, task.category, clamp_percent(pct))

    def _on_scan_completed(self, task: AnalysisTask):
        if task is not self._current:
            return
        if not task.quick:
            self._scan_complete.setdefault(task.device_id, {})[task.category] = True
        self._finalize(task, True)

    def _teardown_links(self, device_id: str):
        links = self._links.pop(device_id, None)
        if links is not None:
            links.disconnect_all()
