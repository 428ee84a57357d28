"""
device_registry.py - Attached device tracking and bridge sessions.

Polls ``adb devices -l`` and ``idevice_id -l`` on a loop timer, diffs each
snapshot against the known devices of that platform and reports the
changes as signals.  Owns at most one ``BridgeProtocolClient`` per Android
device (the "fast path").
"""

import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from .bridge_client import BridgeProtocolClient, BridgeSettings, TransferRole
from .events import EventLoop, Signal, SignalGroup, Timer
from .models import Device, DevicePlatform
from .parsers import parse_adb_devices, parse_idevice_ids
from .tool_runner import ToolNotFoundError, ToolProcess, ToolResult, ToolRunner

log = logging.getLogger("databridge.devices")

IOS_MODEL = "iPhone/iPad"
IOS_NAME = "iOS Device"

_AUTHORIZE_HINTS = {
    DevicePlatform.ANDROID: ("Unlock {name} and accept the 'Allow USB debugging' "
                             "prompt when it appears."),
    DevicePlatform.IOS: ("Unlock {name} and tap 'Trust' when asked whether to "
                         "trust this computer."),
}


class DeviceRegistry:
    """Tracks attached phones and their bridge sessions."""

    def __init__(
        self,
        loop: EventLoop,
        tools: ToolRunner,
        poll_interval: float = 3.0,
        probe_timeout: float = 3.0,
        bridge_settings: Optional[BridgeSettings] = None,
    ):
        self.loop = loop
        self.tools = tools
        self.poll_interval = poll_interval
        self.probe_timeout = probe_timeout
        self.bridge_settings = bridge_settings or BridgeSettings()

        self._devices: Dict[str, Device] = {}
        self._sessions: Dict[str, BridgeProtocolClient] = {}
        self._session_links: Dict[str, SignalGroup] = {}
        self._next_port_index = 0
        self._lock = threading.Lock()

        self._listing: Dict[DevicePlatform, Optional[ToolProcess]] = {}
        self._timer: Optional[Timer] = None
        self._running = False

        self.device_connected = Signal("devices.device_connected")
        self.device_disconnected = Signal("devices.device_disconnected")
        self.device_authorization_changed = Signal("devices.device_authorization_changed")
        self.device_list_updated = Signal("devices.device_list_updated")
        self.fast_path_connected = Signal("devices.fast_path_connected")
        self.fast_path_disconnected = Signal("devices.fast_path_disconnected")
        self.fast_path_error = Signal("devices.fast_path_error")
        self.error = Signal("devices.error")
        self.adb_path_changed = Signal("devices.adb_path_changed")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> bool:
        """Locate the listing tools and start polling.

        Fails only when neither adb nor idevice_id is available.
        """
        if self._running:
            return True
        self.tools.find_tools()
        if not self.adb_available:
            self.error.emit("adb was not found; Android devices will not be detected.")
        if not self.idevice_available:
            self.error.emit("idevice_id was not found; iOS devices will not be detected.")
        if not (self.adb_available or self.idevice_available):
            return False

        self._running = True
        log.info("Device polling started (every %.1fs)", self.poll_interval)
        self.refresh()
        self._arm_timer()
        return True

    def stop(self):
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for platform, proc in list(self._listing.items()):
            if proc is not None:
                proc.terminate()
            self._listing[platform] = None
        log.info("Device polling stopped")

    def shutdown(self):
        """Stop polling and close every bridge session."""
        self.stop()
        with self._lock:
            ids = list(self._sessions)
        for device_id in ids:
            self._close_session(device_id)

    def _arm_timer(self):
        self._timer = self.loop.call_later(self.poll_interval, self._on_tick)

    def _on_tick(self):
        self._timer = None
        if not self._running:
            return
        self.refresh()
        self._arm_timer()

    @property
    def adb_available(self) -> bool:
        return self.tools.has_adb

    @property
    def idevice_available(self) -> bool:
        return self.tools.has_idevice

    def set_adb_path(self, path: str) -> bool:
        if not self.tools.set_adb_path(path):
            return False
        self.adb_path_changed.emit(self.tools.adb_path)
        return True

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def refresh(self):
        """Start one listing per available platform (skipped while in flight)."""
        if self.adb_available:
            self._start_listing(
                DevicePlatform.ANDROID,
                lambda done: self.tools.adb(["devices", "-l"], done),
                self._on_android_listing,
            )
        if self.idevice_available:
            self._start_listing(
                DevicePlatform.IOS,
                lambda done: self.tools.idevice("idevice_id", ["-l"], done),
                self._on_ios_listing,
            )

    def _start_listing(self, platform: DevicePlatform,
                       starter: Callable[[Callable[[ToolResult], None]], ToolProcess],
                       handler: Callable[[ToolResult], None]):
        running = self._listing.get(platform)
        if running is not None and running.running:
            log.debug("%s listing still running; skipping tick", platform.value)
            return

        def _done(result: ToolResult):
            self._listing[platform] = None
            if not result.ok:
                log.warning("%s device listing failed: %s", platform.value, result.error_text())
                return
            handler(result)

        try:
            self._listing[platform] = starter(_done)
        except ToolNotFoundError as exc:
            log.warning("%s", exc)

    def _on_android_listing(self, result: ToolResult):
        self._apply_snapshot(DevicePlatform.ANDROID, parse_adb_devices(result.stdout))

    def _on_ios_listing(self, result: ToolResult):
        snapshot = []
        for udid in parse_idevice_ids(result.stdout):
            with self._lock:
                known = self._devices.get(udid)
            authorized = known.authorized if known else False
            if not authorized:
                authorized = self._probe_ios(udid)
            snapshot.append(Device(udid, DevicePlatform.IOS, IOS_MODEL, IOS_NAME, authorized))
        self._apply_snapshot(DevicePlatform.IOS, snapshot)

    def _probe_ios(self, udid: str) -> bool:
        """A paired (trusted) device answers ``ideviceinfo -k DeviceName``."""
        try:
            cmd = self.tools.idevice_command("ideviceinfo", ["-u", udid, "-k", "DeviceName"])
        except ToolNotFoundError:
            return False
        result = self.tools.run_sync(cmd, self.probe_timeout)
        return result.ok and bool(result.stdout.strip())

    def _apply_snapshot(self, platform: DevicePlatform, snapshot: List[Device]):
        connected: List[Device] = []
        changed: List[Device] = []
        vanished: List[str] = []

        with self._lock:
            seen = set()
            for dev in snapshot:
                seen.add(dev.id)
                known = self._devices.get(dev.id)
                if known is None:
                    self._devices[dev.id] = dev
                    connected.append(replace(dev))
                elif known.authorized != dev.authorized:
                    known.authorized = dev.authorized
                    changed.append(replace(known))
            for device_id, known in list(self._devices.items()):
                if known.platform == platform and device_id not in seen:
                    del self._devices[device_id]
                    vanished.append(device_id)

        for device_id in vanished:
            self._close_session(device_id)

        for dev in connected:
            log.info("Device connected: %s [%s] authorized=%s",
                     dev.friendly_name(), dev.id, dev.authorized)
            self.device_connected.emit(dev)
        for dev in changed:
            log.info("Device %s authorization -> %s", dev.id, dev.authorized)
            self.device_authorization_changed.emit(dev.id, dev.authorized)
        for device_id in vanished:
            log.info("Device disconnected: %s", device_id)
            self.device_disconnected.emit(device_id)
        self.device_list_updated.emit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_devices(self) -> List[Device]:
        with self._lock:
            return [replace(d) for d in self._devices.values()]

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._lock:
            dev = self._devices.get(device_id)
            return replace(dev) if dev else None

    def authorize_device(self, device_id: str) -> bool:
        """Authorization can only be granted on the phone; emit guidance."""
        dev = self.get_device(device_id)
        if dev is None:
            return False
        if dev.authorized:
            return True
        self.error.emit(_AUTHORIZE_HINTS[dev.platform].format(name=dev.friendly_name()))
        return False

    # ------------------------------------------------------------------
    # Fast path (bridge sessions)
    # ------------------------------------------------------------------
    def setup_fast_path(self, device_id: str) -> bool:
        """Create (if needed) and start the bridge session of an Android device."""
        dev = self.get_device(device_id)
        if dev is None or not dev.is_android:
            log.warning("Fast path needs a connected Android device: %s", device_id)
            return False
        if not dev.authorized:
            self.fast_path_error.emit(device_id, "Device is not authorized")
            return False
        session = self._ensure_session(device_id)
        if session.is_connected or session.is_setting_up:
            return True
        return session.setup(device_id, TransferRole.SOURCE)

    def is_fast_path_connected(self, device_id: str) -> bool:
        session = self.get_session(device_id)
        return session is not None and session.is_connected

    def get_session(self, device_id: str) -> Optional[BridgeProtocolClient]:
        with self._lock:
            return self._sessions.get(device_id)

    def _ensure_session(self, device_id: str) -> BridgeProtocolClient:
        with self._lock:
            session = self._sessions.get(device_id)
            if session is not None:
                return session
            port = self.bridge_settings.port + self._next_port_index
            self._next_port_index += 1
            session = BridgeProtocolClient(
                self.loop, self.tools, replace(self.bridge_settings, port=port), device_id)
            self._sessions[device_id] = session

        links = SignalGroup()
        links.connect(session.connected, lambda: self.fast_path_connected.emit(device_id))
        links.connect(session.disconnected, lambda: self.fast_path_disconnected.emit(device_id))
        links.connect(session.error, lambda msg: self.fast_path_error.emit(device_id, msg))
        self._session_links[device_id] = links
        log.debug("Bridge session for %s on local port %d", device_id, port)
        return session

    def _close_session(self, device_id: str):
        with self._lock:
            session = self._sessions.pop(device_id, None)
        if session is None:
            return
        session.disconnect()
        links = self._session_links.pop(device_id, None)
        if links is not None:
            links.disconnect_all()
