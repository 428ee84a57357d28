"""Shared fixtures: fake clock, loop pump, scripted tool runner, registries."""

import socket
from pathlib import Path
from unittest.mock import patch

import pytest

from databridge.bridge_client import BridgeProtocolClient, BridgeSettings
from databridge.device_registry import DeviceRegistry
from databridge.events import EventLoop
from databridge.tool_runner import ToolResult, ToolRunner

ADB_DEVICES = """List of devices attached
SRC123         device usb:1-1 product:panther model:Pixel_7 device:panther transport_id:1
DST456         device usb:1-2 product:dm1q model:Galaxy_S23 device:dm1q transport_id:2
UNAUTH9        unauthorized usb:1-3 transport_id:3

"""

BRIDGE_PACKAGE_LINE = "package:com.laniakeapos.bridgeclient\n"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeToolRunner(ToolRunner):
    """ToolRunner that never spawns processes.

    Commands matching a rule (all tokens present in the command line) are
    answered on the next loop pass; the rest stay in ``pending`` until a
    test completes them with ``complete()``.
    """

    def __init__(self, loop):
        super().__init__(loop, base_dir=Path("/nonexistent"), adb_path="/fake/adb")
        self.calls = []
        self.pending = []
        self.rules = []
        self.sync_calls = []
        self.sync_rules = []
        self.idevice_paths = {}

    # -- scripting ------------------------------------------------------
    def on(self, *tokens, stdout="", stderr="", returncode=0):
        self.rules.insert(0, (tokens, returncode, stdout, stderr))

    def on_sync(self, *tokens, stdout="", stderr="", returncode=0):
        self.sync_rules.insert(0, (tokens, returncode, stdout, stderr))

    def complete(self, index=0, returncode=0, stdout="", stderr=""):
        proc, on_finished = self.pending.pop(index)
        self._deliver(proc, on_finished, ToolResult(proc.args, returncode, stdout, stderr))

    def adb_calls(self, *tokens):
        """Adb argument lists (without the binary and ``-s``) containing *tokens*."""
        found = []
        for cmd in self.calls:
            if cmd[0] != "/fake/adb":
                continue
            args = cmd[3:] if len(cmd) > 2 and cmd[1] == "-s" else cmd[1:]
            if all(t in args for t in tokens):
                found.append(args)
        return found

    @staticmethod
    def _match(rules, cmd):
        for tokens, returncode, stdout, stderr in rules:
            if all(t in cmd for t in tokens):
                return ToolResult(list(cmd), returncode, stdout, stderr)
        return None

    # -- ToolRunner overrides -------------------------------------------
    def find_tools(self):
        return {"adb": self.has_adb, "idevice_id": self.has_idevice}

    def idevice_tool_path(self, tool):
        return self.idevice_paths.get(tool)

    def _spawn(self, proc, on_finished, timeout):
        self.calls.append(proc.args)
        result = self._match(self.rules, proc.args)
        if result is None:
            self.pending.append((proc, on_finished))
        else:
            self._deliver(proc, on_finished, result)

    def run_sync(self, cmd, timeout):
        self.sync_calls.append(list(cmd))
        return self._match(self.sync_rules, cmd) or ToolResult(list(cmd), 1, "", "no rule")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def loop(clock):
    return EventLoop(clock=clock)


@pytest.fixture
def pump(loop, clock):
    """Run the loop, advancing the fake clock by *seconds* in small steps."""

    def _pump(seconds: float = 0.0, step: float = 0.05):
        target = clock.now + seconds
        loop.run_pending()
        while clock.now < target:
            clock.now = min(target, clock.now + step)
            loop.run_pending()

    return _pump


@pytest.fixture
def tools(loop):
    return FakeToolRunner(loop)


@pytest.fixture
def make_registry(loop, tools, pump):
    created = []

    def _make(adb_output=ADB_DEVICES, ios_ids=None, ios_trusted=()):
        if adb_output is not None:
            tools.on("devices", "-l", stdout=adb_output)
        else:
            tools.adb_path = None
        if ios_ids is not None:
            tools.idevice_paths = {"idevice_id": "/fake/idevice_id",
                                   "ideviceinfo": "/fake/ideviceinfo"}
            tools.on("/fake/idevice_id", "-l", stdout="".join(f"{u}\n" for u in ios_ids))
            for udid in ios_trusted:
                tools.on_sync("/fake/ideviceinfo", udid, stdout="Test iPhone\n")
        registry = DeviceRegistry(loop, tools, poll_interval=3.0, probe_timeout=1.0,
                                  bridge_settings=BridgeSettings(launch_settle=0.5))
        assert registry.start()
        pump()
        created.append(registry)
        return registry

    yield _make
    for registry in created:
        registry.shutdown()


@pytest.fixture
def registry(make_registry):
    return make_registry()


@pytest.fixture
def peers():
    sockets = []
    yield sockets
    for sock in sockets:
        sock.close()


@pytest.fixture
def connect_fast_path(tools, pump, peers):
    """Bring up the bridge session of *device_id* over a socketpair.

    Returns the agent-side socket.
    """

    def _connect(registry, device_id):
        tools.on("pm", "list", "packages", stdout=BRIDGE_PACKAGE_LINE)
        tools.on("forward")
        tools.on("am", "start")
        host, peer = socket.socketpair()
        peer.settimeout(2.0)
        peers.append(peer)
        with patch.object(BridgeProtocolClient, "_open_socket", return_value=host):
            assert registry.setup_fast_path(device_id)
            pump(1.0)
        assert registry.is_fast_path_connected(device_id)
        return peer

    return _connect


def read_lines(sock, count, timeout=2.0):
    """Read until *count* newline-terminated frames have arrived."""
    sock.settimeout(timeout)
    data = b""
    while data.count(b"\n") < count:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    return data.decode("utf-8").splitlines()
