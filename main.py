#!/usr/bin/env python3
"""
Mobile Data Bridge - Android/iOS content analysis & transfer
Main entry point.
"""

import sys
import argparse
import logging
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

from databridge.bridge_client import BridgeSettings
from databridge.config import Config
from databridge.content_analyzer import ContentAnalyzer
from databridge.device_registry import DeviceRegistry
from databridge.events import EventLoop
from databridge.log_setup import setup_logging
from databridge.statistics import TransferStatistics
from databridge.tool_runner import ToolRunner
from databridge.transfer_engine import TransferEngine
from databridge.utils import format_bytes, format_duration

log = logging.getLogger("databridge")


class Services:
    """The wired service graph, driven by one event loop."""

    def __init__(self, config: Config):
        self.config = config
        self.loop = EventLoop()
        self.tools = ToolRunner(
            self.loop, ROOT,
            adb_path=config.get("tools.adb_path") or None,
            idevice_dir=config.get("tools.libimobiledevice_dir") or None,
            timeout=config.get("tools.command_timeout", 120),
        )
        self.registry = DeviceRegistry(
            self.loop, self.tools,
            poll_interval=config.get("devices.poll_interval", 3.0),
            probe_timeout=config.get("tools.probe_timeout", 3.0),
            bridge_settings=BridgeSettings.from_config(config),
        )
        self.analyzer = ContentAnalyzer(
            self.loop, self.tools, self.registry,
            photo_dir=config.get("analysis.photo_dir"),
            video_dir=config.get("analysis.video_dir"),
            auto_fast_path=config.get("analysis.auto_fast_path", True),
        )
        self.engine = TransferEngine(
            self.loop, self.tools, self.registry, self.analyzer,
            dest_root=config.get("transfer.dest_root"),
            item_delay=config.get("transfer.simulated_item_delay", 0.1),
            terminate_grace=config.get("transfer.terminate_grace", 0.5),
            temp_dir=config.get("transfer.temp_dir") or None,
        )

    def wait_for_devices(self, timeout: float):
        """Run until every available listing tool reported once."""
        expected = int(self.registry.adb_available) + int(self.registry.idevice_available)
        seen = []
        self.registry.device_list_updated.connect(lambda: seen.append(1))
        self.loop.run_until(lambda: len(seen) >= expected, timeout)

    def setup_fast_path(self, serials, timeout: float):
        pending = {s for s in serials if self.registry.setup_fast_path(s)}
        done = set()
        self.registry.fast_path_connected.connect(done.add)
        self.registry.fast_path_error.connect(lambda s, msg: done.add(s))
        self.loop.run_until(lambda: pending <= done, timeout)
        for serial in pending:
            state = "connected" if self.registry.is_fast_path_connected(serial) else "unavailable"
            print(f"  Fast path {serial}: {state}")

    def analyze(self, serial: str, quick: bool, timeout: float) -> bool:
        finished = []
        self.analyzer.analysis_complete.connect(
            lambda device_id: device_id == serial and finished.append(True))
        self.analyzer.analysis_error.connect(
            lambda device_id, category, msg: device_id == serial and print(f"  ! {category}: {msg}"))
        if not self.analyzer.analyze(serial, quick):
            return False
        return self.loop.run_until(lambda: bool(finished), timeout)


def _print_devices(services: Services):
    devices = services.registry.list_devices()
    if not devices:
        print("No devices connected.")
        return
    print(f"\n{'Serial':<28} {'Platform':<10} {'Authorized':<12} {'Model':<24}")
    print("-" * 76)
    for d in devices:
        print(f"{d.id:<28} {d.platform.value:<10} {str(d.authorized):<12} {d.friendly_name():<24}")


def _print_content(services: Services, serial: str):
    print(f"\n{'Category':<14} {'Items':>7} {'Size':>12}  Status")
    print("-" * 60)
    for category in ("photos", "videos", "music", "documents", "applications",
                     "contacts", "messages", "calls"):
        content = services.analyzer.get_content_set(serial, category)
        if not content.supported and not content.error_message:
            continue
        status = "ok" if content.supported else f"unsupported: {content.error_message}"
        print(f"{category:<14} {len(content.items):>7} {format_bytes(content.total_size):>12}  {status}")


def _run_transfer(services: Services, source: str, target: str, categories, clear: bool,
                  timeout: float) -> bool:
    engine = services.engine
    stats = TransferStatistics(engine)
    result = []

    engine.overall_progress_changed.connect(
        lambda pct: print(f"\r  {stats.status_text():<70}", end="", flush=True))
    engine.task_failed.connect(lambda category, msg: print(f"\n  ! {category}: {msg}"))
    engine.failed.connect(lambda msg: print(f"ERROR: {msg}"))
    engine.finished.connect(lambda ok, msg: result.append(ok))

    if not engine.start(source, target, categories, clear):
        return False
    try:
        services.loop.run_until(lambda: bool(result), timeout)
    except KeyboardInterrupt:
        engine.cancel()
    if engine.is_active():
        engine.cancel()
    print()
    for row in stats.rows:
        print(f"  {row.text()}")
    print(stats.summary())
    return bool(result and result[0])


def main():
    parser = argparse.ArgumentParser(
        description="Mobile Data Bridge - analyze and transfer content between phones",
    )
    parser.add_argument(
        "--list-devices", action="store_true",
        help="List attached Android and iOS devices",
    )
    parser.add_argument(
        "--analyze", metavar="SERIAL",
        help="Analyze the content of a device",
    )
    parser.add_argument(
        "--quick", action="store_true",
        help="Quick analysis (skip per-category scan tracking)",
    )
    parser.add_argument(
        "--transfer", nargs=2, metavar=("SOURCE", "TARGET"),
        help="Transfer content from SOURCE to TARGET",
    )
    parser.add_argument(
        "--categories", nargs="+", default=["photos", "contacts"],
        help="Categories to transfer (default: photos contacts)",
    )
    parser.add_argument(
        "--clear-destination", action="store_true",
        help="Remove previously transferred files on the target first",
    )
    parser.add_argument(
        "--fast-path", action="store_true",
        help="Set up the bridge agent on Android devices before working",
    )
    parser.add_argument(
        "--wait", type=float, default=5.0, metavar="SECONDS",
        help="How long to wait for devices and the bridge agent",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="Path of the JSON config file",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Verbose logs",
    )
    args = parser.parse_args()

    if not (args.list_devices or args.analyze or args.transfer):
        parser.print_help()
        return

    # Setup
    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level)

    config = Config(Path(args.config)) if args.config else Config()
    services = Services(config)
    services.registry.error.connect(lambda msg: print(f"WARNING: {msg}"))

    if not services.registry.start():
        print("ERROR: neither adb nor idevice_id could be found.")
        print("Install Android platform-tools and/or libimobiledevice, or set their paths in the config.")
        sys.exit(1)

    exit_code = 0
    try:
        services.wait_for_devices(args.wait)

        if args.list_devices:
            _print_devices(services)

        serials = []
        if args.analyze:
            serials.append(args.analyze)
        if args.transfer:
            serials.extend(args.transfer)
        if args.fast_path and serials:
            services.setup_fast_path(serials, args.wait * 3)

        if args.analyze:
            print(f"Analyzing {args.analyze}...")
            if services.analyze(args.analyze, args.quick, timeout=600):
                _print_content(services, args.analyze)
            else:
                print("Analysis failed or timed out.")
                exit_code = 1

        if args.transfer:
            source, target = args.transfer
            print(f"Analyzing source {source}...")
            if not services.analyze(source, args.quick, timeout=600):
                print("Could not analyze the source device.")
                exit_code = 1
            else:
                print(f"Transferring {', '.join(args.categories)}: {source} -> {target}")
                started = services.loop.time()
                ok = _run_transfer(services, source, target, args.categories,
                                   args.clear_destination, timeout=24 * 3600)
                print(f"{'Transfer completed' if ok else 'Transfer did not complete'} "
                      f"in {format_duration(services.loop.time() - started)}.")
                exit_code = 0 if ok else 1
    finally:
        services.registry.shutdown()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
