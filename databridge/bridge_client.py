"""
bridge_client.py - Line protocol client for the on-device bridge agent.

The bridge agent (``com.laniakeapos.bridgeclient``) listens on TCP 38300
on the phone; the host reaches it through ``adb forward``.  Frames are
UTF-8 text terminated by ``\\n``:

  host  -> agent : ``COMMAND[:ARG]``
  agent -> host  : ``KIND[:PAYLOAD]`` (see ``parse_frame``)

Features:
  - Connection state machine with bounded, timer-driven reconnection
  - Liveness PING while connected
  - FIFO command queue drained one command at a time with fixed pacing
  - Agent setup chain: check -> install -> forward -> launch -> connect
"""

import codecs
import json
import logging
import socket
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Iterable, Optional, Tuple, Union

from .events import EventLoop, Signal, Timer
from .tool_runner import ToolNotFoundError, ToolProcess, ToolResult, ToolRunner

log = logging.getLogger("databridge.bridge")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
BRIDGE_PACKAGE = "com.laniakeapos.bridgeclient"
BRIDGE_ACTIVITY = ".MainActivity"
BRIDGE_PORT = 38300
RECV_BUFFER = 4096


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class TransferRole(str, Enum):
    SOURCE = "source"
    DESTINATION = "destination"
    UNKNOWN = "unknown"


class BridgeSetupError(RuntimeError):
    """A step of the agent setup chain failed."""

    def __init__(self, step: str, message: str):
        super().__init__(f"Bridge setup failed at '{step}': {message}")
        self.step = step
        self.message = message


@dataclass
class BridgeSettings:
    host: str = "127.0.0.1"
    port: int = BRIDGE_PORT
    device_port: int = BRIDGE_PORT
    connect_timeout: float = 5.0
    reconnect_interval: float = 5.0
    max_reconnect_attempts: int = 3
    ping_interval: float = 10.0
    command_pacing: float = 0.1
    launch_settle: float = 1.0
    package: str = BRIDGE_PACKAGE
    activity: str = BRIDGE_ACTIVITY
    apk_path: str = "tools/bridgeclient.apk"

    @classmethod
    def from_config(cls, config, port: Optional[int] = None) -> "BridgeSettings":
        """Build settings from the ``bridge`` section of a ``Config``."""
        d = cls()
        return cls(
            port=port or config.get("bridge.port", d.port),
            device_port=config.get("bridge.device_port", d.device_port),
            connect_timeout=config.get("bridge.connect_timeout", d.connect_timeout),
            reconnect_interval=config.get("bridge.reconnect_interval", d.reconnect_interval),
            max_reconnect_attempts=config.get("bridge.max_reconnect_attempts",
                                              d.max_reconnect_attempts),
            ping_interval=config.get("bridge.ping_interval", d.ping_interval),
            command_pacing=config.get("bridge.command_pacing", d.command_pacing),
            launch_settle=config.get("bridge.launch_settle", d.launch_settle),
            package=config.get("bridge.package", d.package),
            activity=config.get("bridge.activity", d.activity),
            apk_path=config.get("bridge.apk_path", d.apk_path),
        )


# ---------------------------------------------------------------------------
# Frame parsing
# ---------------------------------------------------------------------------
@dataclass
class Frame:
    """One decoded inbound line. ``kind`` is the name of the signal it feeds."""
    kind: str
    args: Tuple[Any, ...] = ()


_INFO_PREFIXES = ("CONNECTED:", "ROLE_SET:", "MEDIA_COUNT:", "FILES_COUNT:")
_TEXT_FRAMES = {
    "SCAN_ERROR:": "scan_error",
    "FILE_READY:": "file_ready",
    "FILE_SAVED:": "file_saved",
    "ERROR:": "error",
}
_BARE_FRAMES = {
    "SCAN_STARTED": "scan_started",
    "SCAN_COMPLETED": "scan_completed",
    "PONG": "pong",
}


def _json_payload(text: str, expected: type):
    value = json.loads(text)
    if not isinstance(value, expected):
        raise ValueError(f"expected a JSON {expected.__name__}")
    return value


def parse_frame(line: str) -> Optional[Frame]:
    """Decode an inbound line.

    Returns ``None`` for blank lines and for malformed payloads (bad JSON,
    wrong JSON shape, non-integer counters), which are logged and dropped.
    """
    line = line.strip()
    if not line:
        return None
    try:
        if line.startswith(_INFO_PREFIXES):
            return Frame("info", (line,))
        if line in _BARE_FRAMES:
            return Frame(_BARE_FRAMES[line])
        for prefix, kind in _TEXT_FRAMES.items():
            if line.startswith(prefix):
                return Frame(kind, (line[len(prefix):],))
        if line.startswith("DEVICE_INFO:"):
            return Frame("device_info", (_json_payload(line[12:], dict),))
        if line.startswith("SCAN_PROGRESS:"):
            return Frame("scan_progress", (int(line[14:]),))
        for prefix, kind in (("MEDIA_DATA:", "media_data"), ("FILES_DATA:", "files_data")):
            if line.startswith(prefix):
                idx, count, payload = line[len(prefix):].split(":", 2)
                return Frame(kind, (int(idx), int(count), _json_payload(payload, list)))
        if line.startswith("CONTACTS_DATA:"):
            return Frame("contacts_data", (_json_payload(line[14:], list),))
        if line.startswith("MESSAGES_DATA:"):
            return Frame("messages_data", (_json_payload(line[14:], list),))
        if line.startswith("FILE_TRANSFER_PROGRESS:"):
            path, received, total = line[23:].rsplit(":", 2)
            return Frame("file_transfer_progress", (path, int(received), int(total)))
    except ValueError as exc:
        log.warning("Dropping malformed frame %r: %s", line[:120], exc)
        return None
    return Frame("unknown_response", (line,))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class BridgeProtocolClient:
    """One TCP session with the bridge agent of a single Android device.

    All methods must be called on the event-loop thread; the socket reader
    thread only posts lines back to the loop.
    """

    def __init__(self, loop: EventLoop, tools: ToolRunner,
                 settings: Optional[BridgeSettings] = None, device_id: str = ""):
        self.loop = loop
        self.tools = tools
        self.settings = settings or BridgeSettings()
        self.device_id = device_id

        self.state = ConnectionState.DISCONNECTED
        self.role = TransferRole.UNKNOWN

        self._sock: Optional[socket.socket] = None
        self._generation = 0
        self._auto_reconnect = True
        self._reconnect_attempts = 0
        self._reconnect_timer: Optional[Timer] = None
        self._ping_timer: Optional[Timer] = None
        self._drain_timer: Optional[Timer] = None
        self._queue: Deque[str] = deque()
        self._lock = threading.Lock()

        self._setup_token = 0
        self._setup_step: Optional[str] = None
        self._setup_role = TransferRole.SOURCE
        self._setup_proc: Optional[ToolProcess] = None
        self._setup_timer: Optional[Timer] = None

        # Connection
        self.connected = Signal("bridge.connected")
        self.disconnected = Signal("bridge.disconnected")
        self.error = Signal("bridge.error")
        self.state_changed = Signal("bridge.state_changed")
        self.setup_failed = Signal("bridge.setup_failed")
        # Inbound data
        self.device_info = Signal("bridge.device_info")
        self.scan_started = Signal("bridge.scan_started")
        self.scan_progress = Signal("bridge.scan_progress")
        self.scan_completed = Signal("bridge.scan_completed")
        self.scan_error = Signal("bridge.scan_error")
        self.media_data = Signal("bridge.media_data")
        self.files_data = Signal("bridge.files_data")
        self.contacts_data = Signal("bridge.contacts_data")
        self.messages_data = Signal("bridge.messages_data")
        self.file_ready = Signal("bridge.file_ready")
        self.file_saved = Signal("bridge.file_saved")
        self.file_transfer_progress = Signal("bridge.file_transfer_progress")
        self.pong = Signal("bridge.pong")
        self.unknown_response = Signal("bridge.unknown_response")

    def __repr__(self):
        return f"<BridgeProtocolClient {self.device_id} {self.state.value} port={self.settings.port}>"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def queued_commands(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def is_setting_up(self) -> bool:
        return self._setup_step is not None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    def connect(self, device_id: Optional[str] = None) -> bool:
        """Open the socket to the forwarded port (blocks at most connect_timeout)."""
        if device_id:
            self.device_id = device_id
        self._auto_reconnect = True
        return self._connect(retry=True)

    def _connect(self, retry: bool) -> bool:
        if self.is_connected:
            return True
        self._close_socket()
        self._set_state(ConnectionState.CONNECTING)
        try:
            sock = self._open_socket()
        except OSError as exc:
            log.warning("Bridge connect to %s:%d failed: %s",
                        self.settings.host, self.settings.port, exc)
            self._set_state(ConnectionState.ERROR)
            self.error.emit(f"Could not connect to the bridge agent: {exc}")
            if retry:
                self._schedule_reconnect()
            return False

        self._sock = sock
        self._generation += 1
        threading.Thread(
            target=self._reader, args=(sock, self._generation),
            daemon=True, name=f"bridge-reader-{self.device_id}",
        ).start()

        self._reconnect_attempts = 0
        self._cancel_timer("_reconnect_timer")
        self._set_state(ConnectionState.CONNECTED)
        log.info("Bridge connected: %s (port %d)", self.device_id, self.settings.port)
        self.connected.emit()
        self._arm_ping()
        if self.queued_commands:
            self._schedule_drain(0.0)
        return True

    def _open_socket(self) -> socket.socket:
        sock = socket.create_connection(
            (self.settings.host, self.settings.port),
            timeout=self.settings.connect_timeout,
        )
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(None)
        return sock

    def disconnect(self):
        """Close the session; stops reconnection and drops queued commands."""
        self._auto_reconnect = False
        self._abort_setup()
        for name in ("_reconnect_timer", "_ping_timer", "_drain_timer"):
            self._cancel_timer(name)
        self._reconnect_attempts = 0
        with self._lock:
            self._queue.clear()
        was_connected = self.is_connected
        self._close_socket()
        self._set_state(ConnectionState.DISCONNECTED)
        if was_connected:
            log.info("Bridge disconnected: %s", self.device_id)
            self.disconnected.emit()

    def _close_socket(self):
        sock, self._sock = self._sock, None
        self._generation += 1
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already closed by the peer
        sock.close()

    def _set_state(self, state: ConnectionState):
        if self.state == state:
            return
        self.state = state
        self.state_changed.emit(state)

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------
    def _reader(self, sock: socket.socket, generation: int):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        error = None
        try:
            while True:
                chunk = sock.recv(RECV_BUFFER)
                if not chunk:
                    break
                buffer += decoder.decode(chunk)
                while "\n" in buffer:
                    line, buffer = buffer.split("\n", 1)
                    self.loop.call_soon(self._on_line, generation, line)
        except OSError as exc:
            error = str(exc)
        self.loop.call_soon(self._on_connection_lost, generation, error)

    def _on_line(self, generation: int, line: str):
        if generation != self._generation:
            return
        frame = parse_frame(line)
        if frame is None:
            return
        log.debug("<< %s", line.strip()[:200])
        if frame.kind == "info":
            log.info("Bridge %s: %s", self.device_id, frame.args[0])
            return
        getattr(self, frame.kind).emit(*frame.args)

    def _on_connection_lost(self, generation: int, error: Optional[str]):
        if generation != self._generation or not self.is_connected:
            return
        log.warning("Bridge connection to %s lost%s", self.device_id,
                    f": {error}" if error else "")
        self._cancel_timer("_ping_timer")
        self._cancel_timer("_drain_timer")
        self._close_socket()
        if error:
            self.error.emit(f"Bridge connection error: {error}")
        self._set_state(ConnectionState.DISCONNECTED)
        self.disconnected.emit()
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Reconnection and liveness
    # ------------------------------------------------------------------
    def _schedule_reconnect(self):
        if not self._auto_reconnect or self._timer_active("_reconnect_timer"):
            return
        if self._reconnect_attempts >= self.settings.max_reconnect_attempts:
            log.warning("Giving up on bridge %s after %d reconnect attempts",
                        self.device_id, self._reconnect_attempts)
            return
        self._reconnect_timer = self.loop.call_later(
            self.settings.reconnect_interval, self._reconnect_tick)

    def _reconnect_tick(self):
        self._reconnect_timer = None
        if self.is_connected or not self._auto_reconnect:
            return
        self._reconnect_attempts += 1
        log.info("Reconnecting bridge %s (attempt %d/%d)", self.device_id,
                 self._reconnect_attempts, self.settings.max_reconnect_attempts)
        try:
            self.tools.adb(self._forward_args(), self._after_reforward, serial=self.device_id)
        except ToolNotFoundError as exc:
            log.warning("Cannot re-forward port: %s", exc)
            self._connect(retry=True)

    def _after_reforward(self, result: ToolResult):
        if not self._auto_reconnect or self.is_connected:
            return
        if not result.ok:
            log.warning("Port forward for %s failed: %s", self.device_id, result.error_text())
        self._connect(retry=True)

    def _forward_args(self):
        return ["forward", f"tcp:{self.settings.port}", f"tcp:{self.settings.device_port}"]

    def _arm_ping(self):
        self._cancel_timer("_ping_timer")
        self._ping_timer = self.loop.call_later(self.settings.ping_interval, self._on_ping_timer)

    def _on_ping_timer(self):
        self._ping_timer = None
        if not self.is_connected:
            return
        self.ping()
        self._arm_ping()

    def _timer_active(self, name: str) -> bool:
        timer = getattr(self, name)
        return timer is not None and timer.active

    def _cancel_timer(self, name: str):
        timer = getattr(self, name)
        if timer is not None:
            timer.cancel()
            setattr(self, name, None)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    def send_command(self, command: str) -> bool:
        """Write one frame immediately. Returns False when not connected."""
        if not self.is_connected or self._sock is None:
            log.warning("Cannot send %s to %s: not connected",
                        command.split(":", 1)[0], self.device_id or "bridge")
            return False
        try:
            self._sock.sendall((command + "\n").encode("utf-8"))
        except OSError as exc:
            self._on_connection_lost(self._generation, str(exc))
            return False
        log.debug(">> %s", command[:200])
        return True

    def enqueue(self, command: str) -> bool:
        """Append *command* to the FIFO; it is sent by the paced drain loop."""
        if not command:
            return False
        with self._lock:
            self._queue.append(command)
        if self.is_connected and not self._timer_active("_drain_timer"):
            self._schedule_drain(0.0)
        return True

    def _schedule_drain(self, delay: float):
        self._drain_timer = self.loop.call_later(delay, self._drain)

    def _drain(self):
        self._drain_timer = None
        if not self.is_connected:
            return
        with self._lock:
            if not self._queue:
                return
            command = self._queue.popleft()
        if not self.send_command(command):
            with self._lock:
                self._queue.appendleft(command)
            return
        with self._lock:
            more = bool(self._queue)
        if more:
            self._schedule_drain(self.settings.command_pacing)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def set_role(self, role: Union[TransferRole, str]) -> bool:
        role = TransferRole(role)
        if not self.send_command(f"SET_ROLE:{role.value}"):
            return False
        self.role = role
        return True

    def start_scan(self) -> bool:
        return self.send_command("START_SCAN")

    def get_device_info(self) -> bool:
        return self.send_command("GET_DEVICE_INFO")

    def request_file(self, path: str) -> bool:
        return self.send_command(f"GET_FILE:{path}")

    def save_file(self, metadata: Union[str, dict]) -> bool:
        if not isinstance(metadata, str):
            metadata = json.dumps(metadata, separators=(",", ":"))
        return self.send_command(f"SAVE_FILE:{metadata}")

    def ping(self) -> bool:
        return self.send_command("PING")

    def cancel_operation(self) -> bool:
        return self.send_command("CANCEL_OPERATION")

    def request_media_files(self, indices: Iterable[int]) -> bool:
        return self._send_list("GET_MEDIA_FILES", indices)

    def request_contacts(self, contact_ids: Iterable[str]) -> bool:
        return self._send_list("GET_CONTACTS", contact_ids)

    def request_messages(self, message_ids: Iterable[str]) -> bool:
        return self._send_list("GET_MESSAGES", message_ids)

    def _send_list(self, command: str, values: Iterable[Any]) -> bool:
        values = [str(v) for v in values]
        if not values:
            return False
        return self.send_command(f"{command}:{','.join(values)}")

    # ------------------------------------------------------------------
    # Agent setup chain
    # ------------------------------------------------------------------
    def setup(self, device_id: str, role: Union[TransferRole, str] = TransferRole.SOURCE) -> bool:
        """Install (if needed), forward, launch and connect to the bridge agent.

        Runs asynchronously; failures are reported through ``setup_failed``
        and ``error`` and are not retried.
        """
        self._abort_setup()
        self.device_id = device_id
        self._setup_role = TransferRole(role)
        self._auto_reconnect = True
        log.info("Setting up bridge agent on %s (port %d)", device_id, self.settings.port)
        self._setup_run(
            "check",
            ["shell", "pm", "list", "packages", self.settings.package],
            self._after_check,
        )
        return self._setup_step is not None

    def _setup_run(self, step: str, args, on_done: Callable[[ToolResult], None]):
        self._setup_step = step
        token = self._setup_token

        def _finished(result: ToolResult):
            if token != self._setup_token:
                return
            self._setup_proc = None
            on_done(result)

        try:
            self._setup_proc = self.tools.adb(args, _finished, serial=self.device_id)
        except ToolNotFoundError as exc:
            self._fail_setup(step, str(exc))

    def _after_check(self, result: ToolResult):
        if not result.ok:
            self._fail_setup("check", result.error_text())
        elif f"package:{self.settings.package}" in result.stdout:
            log.debug("Bridge agent already installed on %s", self.device_id)
            self._setup_forward()
        else:
            self._setup_install()

    def _setup_install(self):
        apk = Path(self.settings.apk_path)
        if not apk.is_file():
            self._fail_setup("install", f"Bridge agent APK not found: {apk}")
            return
        log.info("Installing bridge agent on %s from %s", self.device_id, apk)
        self._setup_run("install", ["install", "-r", str(apk)], self._after_install)

    def _after_install(self, result: ToolResult):
        if result.ok and "Success" in result.stdout:
            self._setup_forward()
        else:
            self._fail_setup("install", result.error_text() if not result.ok
                             else result.stdout.strip() or "install did not report Success")

    def _setup_forward(self):
        self._setup_run("forward", self._forward_args(), self._after_forward)

    def _after_forward(self, result: ToolResult):
        if not result.ok:
            self._fail_setup("forward", result.error_text())
            return
        component = f"{self.settings.package}/{self.settings.activity}"
        self._setup_run(
            "launch",
            ["shell", "am", "start", "-n", component, "-e", "role", self._setup_role.value],
            self._after_launch,
        )

    def _after_launch(self, result: ToolResult):
        if not result.ok:
            self._fail_setup("launch", result.error_text())
            return
        self._setup_step = "connect"
        self._setup_timer = self.loop.call_later(self.settings.launch_settle, self._setup_connect)

    def _setup_connect(self):
        self._setup_timer = None
        self._setup_step = None
        if not self._connect(retry=False):
            self._fail_setup("connect", f"no answer on port {self.settings.port}")

    def _fail_setup(self, step: str, message: str):
        self._setup_step = None
        err = BridgeSetupError(step, message)
        log.warning("%s (device %s)", err, self.device_id)
        self.setup_failed.emit(err)
        self.error.emit(str(err))

    def _abort_setup(self):
        self._setup_token += 1
        self._setup_step = None
        proc, self._setup_proc = self._setup_proc, None
        if proc is not None:
            proc.terminate()
        self._cancel_timer("_setup_timer")
