"""Tests for device polling, diffing and bridge session ownership."""

from databridge.device_registry import DeviceRegistry
from databridge.models import DevicePlatform

from conftest import ADB_DEVICES

ONLY_SOURCE = """List of devices attached
SRC123         device usb:1-1 product:panther model:Pixel_7 device:panther transport_id:1
"""

ALL_AUTHORIZED = ADB_DEVICES.replace("UNAUTH9        unauthorized", "UNAUTH9        device")


def _record(registry):
    events = []
    registry.device_connected.connect(lambda d: events.append(("connected", d.id)))
    registry.device_disconnected.connect(lambda i: events.append(("disconnected", i)))
    registry.device_authorization_changed.connect(
        lambda i, ok: events.append(("authorization", i, ok)))
    return events


class TestPolling:
    def test_initial_listing(self, loop, tools, pump):
        registry = DeviceRegistry(loop, tools)
        tools.on("devices", "-l", stdout=ADB_DEVICES)
        events = _record(registry)
        updates = []
        registry.device_list_updated.connect(lambda: updates.append(1))
        assert registry.start()
        pump()
        assert events == [("connected", "SRC123"), ("connected", "DST456"),
                          ("connected", "UNAUTH9")]
        assert updates == [1]
        src = registry.get_device("SRC123")
        assert src.platform == DevicePlatform.ANDROID and src.authorized
        assert src.friendly_name() == "panther (Pixel_7)"
        assert not registry.get_device("UNAUTH9").authorized
        registry.shutdown()

    def test_removed_devices_are_reported(self, registry, tools, pump):
        events = _record(registry)
        tools.on("devices", "-l", stdout=ONLY_SOURCE)
        pump(3.0)
        assert events == [("disconnected", "DST456"), ("disconnected", "UNAUTH9")]
        assert [d.id for d in registry.list_devices()] == ["SRC123"]

    def test_authorization_change(self, registry, tools, pump):
        events = _record(registry)
        tools.on("devices", "-l", stdout=ALL_AUTHORIZED)
        pump(3.0)
        assert events == [("authorization", "UNAUTH9", True)]
        assert registry.get_device("UNAUTH9").authorized

    def test_unchanged_snapshot_emits_only_list_update(self, registry, pump):
        events = _record(registry)
        updates = []
        registry.device_list_updated.connect(lambda: updates.append(1))
        pump(3.0)
        assert events == []
        assert updates == [1]

    def test_listing_in_flight_is_not_restarted(self, loop, tools, pump):
        registry = DeviceRegistry(loop, tools, poll_interval=1.0)
        registry.start()
        pump(3.0)
        assert len(tools.adb_calls("devices", "-l")) == 1
        tools.complete(stdout=ONLY_SOURCE)
        pump(1.0)
        assert len(tools.adb_calls("devices", "-l")) == 2
        registry.shutdown()

    def test_failed_listing_keeps_known_devices(self, registry, tools, pump):
        tools.on("devices", "-l", returncode=1, stderr="adb server version mismatch")
        pump(3.0)
        assert len(registry.list_devices()) == 3

    def test_stop_cancels_polling(self, registry, tools, pump):
        registry.stop()
        before = len(tools.calls)
        pump(10.0)
        assert len(tools.calls) == before

    def test_returned_devices_are_copies(self, registry):
        dev = registry.get_device("SRC123")
        dev.authorized = False
        assert registry.get_device("SRC123").authorized
        assert registry.get_device("nope") is None


class TestIos:
    def test_trusted_device_is_authorized(self, make_registry):
        registry = make_registry(adb_output=None, ios_ids=["udid-1", "udid-2"],
                                 ios_trusted=["udid-1"])
        devices = {d.id: d for d in registry.list_devices()}
        assert devices["udid-1"].is_ios and devices["udid-1"].authorized
        assert not devices["udid-2"].authorized
        assert devices["udid-1"].model == "iPhone/iPad"

    def test_untrusted_device_is_probed_again(self, make_registry, tools, pump):
        registry = make_registry(adb_output=None, ios_ids=["udid-1"])
        assert len(tools.sync_calls) == 1
        events = _record(registry)
        tools.on_sync("/fake/ideviceinfo", "udid-1", stdout="Test iPhone\n")
        pump(3.0)
        assert len(tools.sync_calls) == 2
        assert events == [("authorization", "udid-1", True)]
        pump(3.0)
        assert len(tools.sync_calls) == 2

    def test_platforms_are_diffed_separately(self, make_registry, tools, pump):
        registry = make_registry(ios_ids=["udid-1"], ios_trusted=["udid-1"])
        events = _record(registry)
        tools.on("/fake/idevice_id", "-l", stdout="")
        pump(3.0)
        assert events == [("disconnected", "udid-1")]
        assert registry.get_device("SRC123") is not None


class TestTools:
    def test_start_fails_without_any_tool(self, loop, tools):
        tools.adb_path = None
        registry = DeviceRegistry(loop, tools)
        errors = []
        registry.error.connect(errors.append)
        assert not registry.start()
        assert len(errors) == 2

    def test_set_adb_path(self, registry, tmp_path):
        changed = []
        registry.adb_path_changed.connect(changed.append)
        assert not registry.set_adb_path(str(tmp_path / "missing-adb"))
        adb = tmp_path / "adb"
        adb.write_text("#!/bin/sh\n")
        adb.chmod(0o755)
        assert registry.set_adb_path(str(adb))
        assert changed == [str(adb)]

    def test_authorize_device_gives_guidance(self, registry):
        hints = []
        registry.error.connect(hints.append)
        assert registry.authorize_device("SRC123")
        assert not registry.authorize_device("UNAUTH9")
        assert "Allow USB debugging" in hints[0]
        assert not registry.authorize_device("missing")


class TestFastPath:
    def test_requires_authorized_android_device(self, make_registry, tools):
        registry = make_registry(ios_ids=["udid-1"], ios_trusted=["udid-1"])
        errors = []
        registry.fast_path_error.connect(lambda i, m: errors.append(i))
        assert not registry.setup_fast_path("udid-1")
        assert not registry.setup_fast_path("UNAUTH9")
        assert errors == ["UNAUTH9"]
        assert tools.adb_calls("pm", "list") == []

    def test_each_session_gets_its_own_port(self, registry):
        assert registry.setup_fast_path("SRC123")
        assert registry.setup_fast_path("DST456")
        assert registry.get_session("SRC123").settings.port == 38300
        assert registry.get_session("DST456").settings.port == 38301
        assert registry.setup_fast_path("SRC123")
        assert registry.get_session("SRC123").settings.port == 38300

    def test_connected_session_signals(self, registry, connect_fast_path):
        connected = []
        registry.fast_path_connected.connect(connected.append)
        connect_fast_path(registry, "SRC123")
        assert connected == ["SRC123"]
        assert registry.is_fast_path_connected("SRC123")

    def test_vanished_device_closes_its_session(self, registry, connect_fast_path,
                                                tools, pump):
        lost = []
        registry.fast_path_disconnected.connect(lost.append)
        connect_fast_path(registry, "DST456")
        tools.on("devices", "-l", stdout=ONLY_SOURCE)
        pump(3.0)
        assert lost == ["DST456"]
        assert registry.get_session("DST456") is None
        assert not registry.is_fast_path_connected("DST456")
