"""Tests for signals and the event loop."""

import threading

from databridge.events import EventLoop, Signal, SignalGroup


class TestSignal:
    def test_emit_calls_slots_in_order(self):
        sig = Signal("test")
        calls = []
        sig.connect(lambda v: calls.append(("a", v)))
        sig.connect(lambda v: calls.append(("b", v)))
        sig.emit(1)
        assert calls == [("a", 1), ("b", 1)]

    def test_disconnect(self):
        sig = Signal("test")
        calls = []
        slot = calls.append
        sig.connect(slot)
        assert sig.disconnect(slot) is True
        assert sig.disconnect(slot) is False
        sig.emit("x")
        assert calls == []

    def test_failing_slot_does_not_stop_others(self, caplog):
        sig = Signal("boom")
        calls = []

        def bad():
            raise ValueError("bad slot")

        sig.connect(bad)
        sig.connect(lambda: calls.append("ok"))
        sig.emit()
        assert calls == ["ok"]
        assert "Slot error in signal boom" in caplog.text

    def test_slot_may_disconnect_itself_during_emit(self):
        sig = Signal("test")
        calls = []

        def once():
            calls.append(1)
            sig.disconnect(once)

        sig.connect(once)
        sig.emit()
        sig.emit()
        assert calls == [1]

    def test_group_disconnects_everything(self):
        a, b = Signal("a"), Signal("b")
        group = SignalGroup()
        assert not group
        group.connect(a, lambda: None)
        group.connect(b, lambda: None)
        assert group
        group.disconnect_all()
        assert a.slot_count == 0 and b.slot_count == 0
        assert not group


class TestEventLoop:
    def test_call_soon_runs_in_fifo_order(self, loop):
        calls = []
        loop.call_soon(calls.append, 1)
        loop.call_soon(calls.append, 2)
        assert loop.run_pending() == 2
        assert calls == [1, 2]

    def test_timers_fire_when_due(self, loop, clock):
        calls = []
        loop.call_later(2.0, calls.append, "late")
        loop.call_later(1.0, calls.append, "early")
        loop.run_pending()
        assert calls == []
        clock.advance(1.0)
        loop.run_pending()
        assert calls == ["early"]
        clock.advance(1.0)
        loop.run_pending()
        assert calls == ["early", "late"]

    def test_cancelled_timer_never_runs(self, loop, clock):
        calls = []
        timer = loop.call_later(1.0, calls.append, "x")
        assert timer.active
        timer.cancel()
        assert not timer.active
        assert loop.pending_timers == 0
        clock.advance(5)
        loop.run_pending()
        assert calls == []

    def test_callbacks_scheduled_while_running_run_in_same_pass(self, loop):
        calls = []
        loop.call_soon(lambda: loop.call_soon(calls.append, "nested"))
        loop.run_pending()
        assert calls == ["nested"]

    def test_callback_errors_are_logged(self, loop, caplog):
        def bad():
            raise RuntimeError("oops")

        loop.call_soon(bad)
        loop.run_pending()
        assert "Error in scheduled callback" in caplog.text

    def test_run_until_wakes_on_cross_thread_call_soon(self):
        loop = EventLoop()
        done = []
        threading.Timer(0.05, lambda: loop.call_soon(done.append, True)).start()
        assert loop.run_until(lambda: bool(done), timeout=2.0) is True

    def test_run_until_times_out(self):
        loop = EventLoop()
        assert loop.run_until(lambda: False, timeout=0.1) is False

    def test_stop_ends_run_forever(self):
        loop = EventLoop()
        loop.call_later(0.05, loop.stop)
        loop.run_forever()
