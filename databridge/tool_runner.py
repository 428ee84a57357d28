"""
tool_runner.py - Invocation of the external device tools.

Handles all direct communication with the command-line tools:
  - Locating adb and the libimobiledevice tools (config, local tools/, PATH)
  - Running a tool asynchronously; completion is delivered on the event loop
  - Short, bounded synchronous probes (iOS authorization checks)
  - Terminating an in-flight invocation with a grace period
"""

import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .events import EventLoop

log = logging.getLogger("databridge.tools")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
ADB_EXE = "adb.exe" if os.name == "nt" else "adb"
IDEVICE_TOOLS = ("idevice_id", "ideviceinfo")
DEFAULT_TIMEOUT = 120


class ToolNotFoundError(RuntimeError):
    """Raised when an invocation needs a tool that was not located."""

    def __init__(self, tool: str):
        super().__init__(f"{tool} not found. Install it or set its path in the config.")
        self.tool = tool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _exe(name: str) -> str:
    return f"{name}.exe" if os.name == "nt" else name


def _find_adb_in_local(base_dir: Path) -> Optional[str]:
    """Look for adb inside a local tools/ or platform-tools/ folder."""
    for local in (base_dir / "tools" / "adb" / ADB_EXE, base_dir / "platform-tools" / ADB_EXE):
        if local.is_file():
            return str(local)
    return None


def _find_idevice_tool(name: str, search_dir: Optional[Path]) -> Optional[str]:
    if search_dir:
        candidate = search_dir / _exe(name)
        if candidate.is_file():
            return str(candidate)
    return shutil.which(name)


# ---------------------------------------------------------------------------
# Results and process handles
# ---------------------------------------------------------------------------
@dataclass
class ToolResult:
    """Outcome of one tool invocation (exit code 0 = success)."""
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def error_text(self) -> str:
        return self.stderr.strip() or f"exit code {self.returncode}"


@dataclass
class ToolProcess:
    """Handle on an asynchronous invocation started by ``ToolRunner.start``."""
    args: List[str]
    popen: Optional[subprocess.Popen] = None
    cancelled: bool = False
    finished: threading.Event = field(default_factory=threading.Event)

    @property
    def running(self) -> bool:
        return not self.finished.is_set()

    def terminate(self, grace: float = 0.5):
        """Stop the process: terminate, wait *grace* seconds, then kill.

        The completion callback is suppressed once this has been called.
        """
        self.cancelled = True
        proc = self.popen
        if proc is None or proc.poll() is not None:
            return
        log.debug("Terminating: %s", " ".join(self.args))
        proc.terminate()
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            log.warning("Process ignored terminate, killing: %s", self.args[0])
            proc.kill()


FinishedCallback = Callable[[ToolResult], None]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
class ToolRunner:
    """Low-level wrapper around adb and the libimobiledevice tools."""

    def __init__(
        self,
        loop: EventLoop,
        base_dir: Optional[Path] = None,
        adb_path: Optional[str] = None,
        idevice_dir: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.loop = loop
        self.base_dir = base_dir or Path(__file__).resolve().parent.parent
        self.timeout = timeout
        self.adb_path: Optional[str] = adb_path or None
        self.idevice_dir: Optional[Path] = Path(idevice_dir) if idevice_dir else None
        self._idevice_paths: Dict[str, Optional[str]] = {}

    # ------------------------------------------------------------------
    # Tool discovery
    # ------------------------------------------------------------------
    def find_tools(self) -> Dict[str, bool]:
        """Locate every tool; returns {tool_name: is_available}."""
        if not (self.adb_path and Path(self.adb_path).is_file()):
            self.adb_path = _find_adb_in_local(self.base_dir) or shutil.which("adb")
        if self.adb_path:
            log.info("adb found at %s", self.adb_path)
        else:
            log.warning("adb not found (looked in tools/adb, platform-tools and PATH)")

        local_idevice = self.idevice_dir or (self.base_dir / "tools" / "libimobiledevice")
        for tool in IDEVICE_TOOLS:
            path = _find_idevice_tool(tool, local_idevice)
            self._idevice_paths[tool] = path
            if path:
                log.info("%s found at %s", tool, path)

        result = {"adb": self.adb_path is not None}
        result.update({t: self._idevice_paths.get(t) is not None for t in IDEVICE_TOOLS})
        return result

    def set_adb_path(self, path: str) -> bool:
        """Use a custom adb binary if it exists and is executable."""
        candidate = Path(path)
        if candidate.is_file() and os.access(candidate, os.X_OK):
            self.adb_path = str(candidate)
            log.info("adb path set to %s", self.adb_path)
            return True
        log.warning("Rejected adb path (missing or not executable): %s", path)
        return False

    @property
    def has_adb(self) -> bool:
        return bool(self.adb_path)

    @property
    def has_idevice(self) -> bool:
        return self.idevice_tool_path("idevice_id") is not None

    def idevice_tool_path(self, tool: str) -> Optional[str]:
        if tool not in self._idevice_paths:
            self._idevice_paths[tool] = _find_idevice_tool(tool, self.idevice_dir)
        return self._idevice_paths[tool]

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------
    def adb_command(self, args: List[str], serial: Optional[str] = None) -> List[str]:
        if not self.adb_path:
            raise ToolNotFoundError("adb")
        cmd = [self.adb_path]
        if serial:
            cmd += ["-s", serial]
        return cmd + list(args)

    def idevice_command(self, tool: str, args: List[str]) -> List[str]:
        path = self.idevice_tool_path(tool)
        if not path:
            raise ToolNotFoundError(tool)
        return [path] + list(args)

    # ------------------------------------------------------------------
    # Asynchronous execution
    # ------------------------------------------------------------------
    def adb(
        self,
        args: List[str],
        on_finished: FinishedCallback,
        serial: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ToolProcess:
        """Start ``adb [-s serial] args``; *on_finished* runs on the loop."""
        return self.start(self.adb_command(args, serial), on_finished, timeout)

    def idevice(
        self,
        tool: str,
        args: List[str],
        on_finished: FinishedCallback,
        timeout: Optional[float] = None,
    ) -> ToolProcess:
        return self.start(self.idevice_command(tool, args), on_finished, timeout)

    def start(
        self,
        cmd: List[str],
        on_finished: FinishedCallback,
        timeout: Optional[float] = None,
    ) -> ToolProcess:
        proc = ToolProcess(args=list(cmd))
        log.debug("Starting: %s", " ".join(cmd))
        self._spawn(proc, on_finished, timeout or self.timeout)
        return proc

    def _spawn(self, proc: ToolProcess, on_finished: FinishedCallback, timeout: float):
        def _worker():
            result = self._execute(proc.args, timeout, proc)
            self._deliver(proc, on_finished, result)

        threading.Thread(target=_worker, daemon=True, name="tool-runner").start()

    def _deliver(self, proc: ToolProcess, on_finished: FinishedCallback, result: ToolResult):
        """Hand *result* to the loop unless the invocation was terminated."""
        proc.finished.set()

        def _complete():
            if proc.cancelled:
                log.debug("Dropping result of terminated process: %s", proc.args[0])
                return
            on_finished(result)

        self.loop.call_soon(_complete)

    # ------------------------------------------------------------------
    # Blocking execution (bounded probes only)
    # ------------------------------------------------------------------
    def run_sync(self, cmd: List[str], timeout: float) -> ToolResult:
        return self._execute(list(cmd), timeout, None)

    def _execute(self, cmd: List[str], timeout: float, proc: Optional[ToolProcess]) -> ToolResult:
        if proc is not None and proc.cancelled:
            return ToolResult(cmd, -1, "", "cancelled")
        try:
            popen = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                creationflags=subprocess.CREATE_NO_WINDOW if os.name == "nt" else 0,
            )
        except OSError as exc:
            log.warning("Failed to start %s: %s", cmd[0], exc)
            return ToolResult(cmd, -1, "", str(exc))

        if proc is not None:
            proc.popen = popen
            if proc.cancelled:
                # terminate() ran before the process existed
                proc.terminate()
        try:
            stdout, stderr = popen.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            popen.kill()
            stdout, stderr = popen.communicate()
            log.warning("Command timed out after %ss: %s", timeout, " ".join(cmd)[:160])
            return ToolResult(cmd, -1, stdout or "", f"timed out after {timeout}s")

        result = ToolResult(cmd, popen.returncode, stdout or "", stderr or "")
        if not result.ok and not (proc is not None and proc.cancelled):
            log.warning("%s returned %d: %s", Path(cmd[0]).name, result.returncode,
                        result.stderr.strip())
        return result
