from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .ble_adapter import DEFAULT_DEVICE_PREFIX, MATCH_EXACT, MATCH_SUBSTRING
from .controller import SessionController, run
from .location import (
    LocationProvider,
    MockLocationProvider,
    NullLocationProvider,
    StaticLocationProvider,
)
from .session import POLL_INTERVAL, SCAN_TIMEOUT, SessionConfig

logger = logging.getLogger(__name__)


def _build_location(args: argparse.Namespace) -> LocationProvider:
    if args.latitude is not None and args.longitude is not None:
        return StaticLocationProvider(args.latitude, args.longitude, args.accuracy)
    if args.mock:
        return MockLocationProvider()
    return NullLocationProvider()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="vc-sens-logger",
        description="Log temperature/humidity from a VC_SENS BLE sensor, paired with position, to CSV.",
    )
    parser.add_argument(
        "--device-name",
        default="",
        help=f"Advertised name of the sensor (e.g. {DEFAULT_DEVICE_PREFIX}_123456)",
    )
    parser.add_argument(
        "--match",
        default=MATCH_EXACT,
        choices=[MATCH_EXACT, MATCH_SUBSTRING],
        help="Name matching mode for the scan (default: exact, case-insensitive)",
    )
    parser.add_argument(
        "--log-dir",
        default="logs",
        help="Directory for session CSV files (default: ./logs)",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=SCAN_TIMEOUT,
        help="Scan timeout in seconds",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=POLL_INTERVAL,
        help="Seconds between samples",
    )
    parser.add_argument("--latitude", type=float, default=None, help="Fixed latitude")
    parser.add_argument("--longitude", type=float, default=None, help="Fixed longitude")
    parser.add_argument(
        "--accuracy", type=float, default=0.0, help="Accuracy (m) of the fixed position"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8050,
        help="Dashboard server port (default: 8050)",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use a simulated sensor and position (no BLE device required)",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Log without the dashboard until Ctrl+C (requires --device-name)",
    )

    args = parser.parse_args()

    level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            file_handler = logging.FileHandler(args.log_file, encoding="utf-8")
            handlers.append(file_handler)
        except OSError:
            # Keep running with stderr only
            pass
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )

    from .ble_adapter import BleakAdapter, MockBleAdapter, BleAdapter

    adapter: BleAdapter
    device_name = args.device_name
    if args.mock:
        logger.info("Using simulated sensor (no BLE device required)")
        adapter = MockBleAdapter()
        device_name = device_name or f"{DEFAULT_DEVICE_PREFIX}_MOCK"
    else:
        adapter = BleakAdapter()

    config = SessionConfig(
        scan_timeout=args.scan_timeout,
        poll_interval=args.poll_interval,
        match=args.match,
    )
    controller = SessionController(adapter, _build_location(args), config)
    log_dir = Path(args.log_dir)

    if args.headless:
        if not device_name:
            parser.error("--headless requires --device-name")
        from .log_files import generate_csv_file_path

        path = generate_csv_file_path(log_dir, device_name)
        logger.info("Logging %s to %s", device_name, path)
        raise SystemExit(run(controller, device_name, path))

    from .dashboard import create_app

    logger.info("Open http://localhost:%d in your browser", args.port)
    try:
        dashboard = create_app(controller, log_dir, default_device=device_name)
        dashboard.run(host="0.0.0.0", port=args.port)
    except KeyboardInterrupt:
        logger.info("Shutting down dashboard...")
    except Exception as e:
        logger.error("Failed to start dashboard: %s", e)
        raise SystemExit(1)
