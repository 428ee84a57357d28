"""
events.py - Observer signals and the single-owner event loop.

Every component of the bridge is driven from one thread that runs
``EventLoop``.  Worker threads (tool invocations, socket readers) never
touch component state directly: they hand their results back with
``call_soon`` and the owning thread continues from there.

  • Signal    : named observer list; ``connect`` / ``disconnect`` / ``emit``
  • Timer     : handle returned by ``call_soon`` / ``call_later``
  • EventLoop : ready queue + timer heap, driven by ``run_forever``,
                ``run_until`` or (tests) ``run_pending``
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Tuple

log = logging.getLogger("databridge.events")


# ---------------------------------------------------------------------------
# Signal
# ---------------------------------------------------------------------------
class Signal:
    """A named event that any number of slots can subscribe to."""

    def __init__(self, name: str):
        self.name = name
        self._slots: List[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<Signal {self.name} slots={len(self._slots)}>"

    def connect(self, slot: Callable[..., Any]):
        with self._lock:
            self._slots.append(slot)

    def disconnect(self, slot: Callable[..., Any]) -> bool:
        """Remove one registration of *slot*. Returns False if absent."""
        with self._lock:
            try:
                self._slots.remove(slot)
            except ValueError:
                return False
        return True

    def disconnect_all(self):
        with self._lock:
            self._slots.clear()

    @property
    def slot_count(self) -> int:
        return len(self._slots)

    def emit(self, *args: Any):
        with self._lock:
            slots = list(self._slots)
        for slot in slots:
            try:
                slot(*args)
            except Exception:
                log.exception("Slot error in signal %s", self.name)


class SignalGroup:
    """Remembers (signal, slot) pairs so they can be torn down together."""

    def __init__(self):
        self._pairs: List[Tuple[Signal, Callable[..., Any]]] = []

    def __bool__(self) -> bool:
        return bool(self._pairs)

    def connect(self, signal: Signal, slot: Callable[..., Any]):
        signal.connect(slot)
        self._pairs.append((signal, slot))

    def disconnect_all(self):
        for signal, slot in self._pairs:
            signal.disconnect(slot)
        self._pairs.clear()


# ---------------------------------------------------------------------------
# Timer handle
# ---------------------------------------------------------------------------
class Timer:
    """Handle on a scheduled callback; ``cancel()`` prevents it from running."""

    __slots__ = ("when", "callback", "args", "_cancelled", "_done")

    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple[Any, ...]):
        self.when = when
        self.callback = callback
        self.args = args
        self._cancelled = False
        self._done = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._done)

    def _run(self):
        if self._cancelled:
            return
        self._done = True
        try:
            self.callback(*self.args)
        except Exception:
            log.exception("Error in scheduled callback %r", self.callback)


# ---------------------------------------------------------------------------
# Event loop
# ---------------------------------------------------------------------------
class EventLoop:
    """Single-owner callback loop with one-shot timers.

    ``clock`` is injectable so tests can drive timers deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._ready: Deque[Timer] = deque()
        self._timers: List[Tuple[float, int, Timer]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._running = False

    # -- scheduling ---------------------------------------------------------
    def time(self) -> float:
        return self._clock()

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> Timer:
        """Schedule *callback* on the loop thread (thread-safe)."""
        handle = Timer(self._clock(), callback, args)
        with self._cond:
            self._ready.append(handle)
            self._cond.notify()
        return handle

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Timer:
        """Schedule *callback* after *delay* seconds (thread-safe)."""
        handle = Timer(self._clock() + max(0.0, delay), callback, args)
        with self._cond:
            heapq.heappush(self._timers, (handle.when, next(self._seq), handle))
            self._cond.notify()
        return handle

    # -- execution ----------------------------------------------------------
    def _collect(self) -> List[Timer]:
        """Pop everything runnable right now (ready queue + due timers)."""
        now = self._clock()
        with self._cond:
            batch = list(self._ready)
            self._ready.clear()
            while self._timers and self._timers[0][0] <= now:
                batch.append(heapq.heappop(self._timers)[2])
        return batch

    def run_pending(self) -> int:
        """Run callbacks until nothing is runnable at the current time.

        Never blocks. Returns the number of callbacks executed.
        """
        count = 0
        while True:
            batch = self._collect()
            if not batch:
                return count
            for handle in batch:
                if not handle.cancelled:
                    handle._run()
                    count += 1

    def _wait_time(self) -> Optional[float]:
        with self._cond:
            if self._ready:
                return 0.0
            if self._timers:
                return max(0.0, self._timers[0][0] - self._clock())
        return None

    def _wait(self, limit: Optional[float]):
        delay = self._wait_time()
        if delay is None:
            delay = limit
        elif limit is not None:
            delay = min(delay, limit)
        if delay is not None and delay <= 0:
            return
        with self._cond:
            if not self._ready:
                self._cond.wait(timeout=delay)

    def run_forever(self):
        """Run until ``stop()`` is called."""
        self._running = True
        while self._running:
            self.run_pending()
            if self._running:
                self._wait(0.5)

    def run_until(self, predicate: Callable[[], bool], timeout: Optional[float] = None) -> bool:
        """Run until *predicate* is true, ``stop()`` is called or *timeout* elapses.

        Returns the final value of *predicate*.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        self._running = True
        try:
            while self._running:
                self.run_pending()
                if predicate():
                    return True
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return predicate()
                self._wait(min(remaining, 0.5) if remaining is not None else 0.5)
            return predicate()
        finally:
            self._running = False

    def stop(self):
        with self._cond:
            self._running = False
            self._cond.notify_all()

    @property
    def pending_timers(self) -> int:
        with self._cond:
            return sum(1 for _, _, h in self._timers if h.active)
