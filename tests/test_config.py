"""Tests for the JSON configuration."""

import json

from databridge.bridge_client import BridgeSettings
from databridge.config import DEFAULT_CONFIG, Config


def test_defaults_are_written_when_missing(tmp_path):
    path = tmp_path / "config.json"
    config = Config(path)
    assert path.exists()
    assert config.get("bridge.port") == 38300
    assert config.get("transfer.dest_root") == "/sdcard/MobileDataBridge/"
    assert config.get("nope.missing", "fallback") == "fallback"


def test_partial_file_is_merged_with_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"bridge": {"port": 40000}}), encoding="utf-8")
    config = Config(path)
    assert config.get("bridge.port") == 40000
    assert config.get("bridge.device_port") == 38300
    assert config.get("devices.poll_interval") == DEFAULT_CONFIG["devices"]["poll_interval"]


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    config = Config(path)
    assert config.get("app.name") == "Mobile Data Bridge"


def test_set_persists(tmp_path):
    path = tmp_path / "config.json"
    Config(path).set("tools.adb_path", "/opt/adb")
    assert Config(path).get("tools.adb_path") == "/opt/adb"
    assert json.loads(path.read_text(encoding="utf-8"))["tools"]["adb_path"] == "/opt/adb"


def test_defaults_are_not_shared_between_instances(tmp_path):
    Config(tmp_path / "a.json").set("bridge.port", 1)
    assert Config(tmp_path / "b.json").get("bridge.port") == 38300


def test_bridge_settings_from_config(tmp_path):
    config = Config(tmp_path / "config.json")
    config.set("bridge.max_reconnect_attempts", 7)
    settings = BridgeSettings.from_config(config)
    assert settings.max_reconnect_attempts == 7
    assert settings.package == "com.laniakeapos.bridgeclient"
    assert BridgeSettings.from_config(config, port=39000).port == 39000
