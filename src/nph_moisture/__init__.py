from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from .moisture_sensor import MoistureSensor, print_readings, run
from .protocol import (
    CHARACTERISTIC_UUID,
    DEVICE_NAME,
    PAYLOAD_SIZE,
    SERVICE_UUID,
    CharacteristicNotFoundError,
    DeviceNotFoundError,
    MoistureSensorError,
    NotSetUpError,
    PayloadSizeError,
    ServiceNotFoundError,
    TransportError,
    decode_measurement,
    encode_measurement,
)
from .transport import (
    Advertisement,
    BleakTransport,
    BleTransport,
    MockPeripheral,
    MockTransport,
)

__all__ = [
    "Advertisement",
    "BleTransport",
    "BleakTransport",
    "CHARACTERISTIC_UUID",
    "CharacteristicNotFoundError",
    "DEVICE_NAME",
    "DeviceNotFoundError",
    "MockPeripheral",
    "MockTransport",
    "MoistureSensor",
    "MoistureSensorError",
    "NotSetUpError",
    "PAYLOAD_SIZE",
    "PayloadSizeError",
    "SERVICE_UUID",
    "ServiceNotFoundError",
    "TransportError",
    "decode_measurement",
    "encode_measurement",
    "main",
    "print_readings",
    "run",
]

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nph-moisture",
        description="Find an NPH moisture sensor over BLE, read its measurement and print it to stdout.",
    )
    parser.add_argument(
        "--device-name",
        default=DEVICE_NAME,
        help=f"Advertised name of the sensor (default: {DEVICE_NAME})",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=None,
        help="Scan timeout in seconds (default: wait until the sensor is found)",
    )
    parser.add_argument(
        "--adapter",
        default=None,
        help="Bluetooth adapter to use, e.g. hci0 (default: system default)",
    )
    parser.add_argument(
        "--count",
        type=_positive_int,
        default=1,
        help="Number of readings to take over one connection (default: 1)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=1.0,
        help="Seconds between readings when --count > 1 (default: 1.0)",
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
        "--mock",
        action="store_true",
        help="Use a simulated sensor instead of the Bluetooth adapter",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    # Readings go to stdout, logs to stderr/file
    level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {args.log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
    logger.debug("Arguments: %s", vars(args))

    code = run(
        args.device_name,
        scan_timeout=args.scan_timeout,
        adapter=args.adapter,
        count=args.count,
        interval=args.interval,
        mock=args.mock,
    )
    raise SystemExit(code)
