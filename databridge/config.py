"""
config.py - Application configuration and settings.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger("databridge.config")

DEFAULT_CONFIG = {
    "app": {
        "name": "Mobile Data Bridge",
        "version": "0.4.0",
    },
    "tools": {
        "adb_path": "",
        "libimobiledevice_dir": "",
        "probe_timeout": 3.0,
        "command_timeout": 120,
    },
    "devices": {
        "poll_interval": 3.0,
    },
    "bridge": {
        "package": "com.laniakeapos.bridgeclient",
        "activity": ".MainActivity",
        "apk_path": "tools/bridgeclient.apk",
        "port": 38300,
        "device_port": 38300,
        "connect_timeout": 5.0,
        "reconnect_interval": 5.0,
        "max_reconnect_attempts": 3,
        "ping_interval": 10.0,
        "command_pacing": 0.1,
        "launch_settle": 1.0,
    },
    "analysis": {
        "photo_dir": "/sdcard/DCIM/Camera/",
        "video_dir": "/sdcard/DCIM/Camera/",
        "auto_fast_path": True,
    },
    "transfer": {
        "dest_root": "/sdcard/MobileDataBridge/",
        "simulated_item_delay": 0.1,
        "terminate_grace": 0.5,
        "temp_dir": "",
    },
}


class Config:
    """Application configuration manager."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or (
            Path(__file__).resolve().parent.parent / "config.json"
        )
        self._data: Dict[str, Any] = {}
        self.load()

    def load(self):
        """Load config from file, creating defaults if needed."""
        if self.config_path.exists():
            try:
                self._data = json.loads(
                    self.config_path.read_text(encoding="utf-8")
                )
                # Merge with defaults for any missing keys
                self._data = self._deep_merge(DEFAULT_CONFIG, self._data)
                log.info("Config loaded from %s", self.config_path)
            except (OSError, ValueError) as exc:
                log.warning("Failed to load config: %s. Using defaults.", exc)
                self._data = copy.deepcopy(DEFAULT_CONFIG)
        else:
            self._data = copy.deepcopy(DEFAULT_CONFIG)
            self.save()

    def save(self):
        """Save current config to file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(
                json.dumps(self._data, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as exc:
            log.warning("Failed to save config: %s", exc)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a config value using dot notation (e.g., 'bridge.port')."""
        keys = key.split(".")
        value = self._data
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any):
        """Set a config value using dot notation."""
        keys = key.split(".")
        d = self._data
        for k in keys[:-1]:
            if k not in d or not isinstance(d[k], dict):
                d[k] = {}
            d = d[k]
        d[keys[-1]] = value
        self.save()

    def _deep_merge(self, base: dict, override: dict) -> dict:
        """Deep merge override into base."""
        result = copy.deepcopy(base)
        for k, v in override.items():
            if k in result and isinstance(result[k], dict) and isinstance(v, dict):
                result[k] = self._deep_merge(result[k], v)
            else:
                result[k] = v
        return result
