#!/usr/bin/env python3
"""
BLE connection diagnostics and troubleshooting tool for NPH moisture sensors.
"""

import argparse
import asyncio
import logging
import platform
import subprocess
import sys

from bleak import BleakScanner
from bleak.exc import BleakError

from nph_moisture import DEVICE_NAME, MoistureSensor, MoistureSensorError

# Configure logging for diagnostics tool
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",  # Simple format for user-friendly output
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def check_bluetooth_status() -> bool:
    """Check if Bluetooth is available and powered."""
    logger.info("Checking Bluetooth status...")

    system = platform.system().lower()

    if system == "darwin":
        command = ["system_profiler", "SPBluetoothDataType"]
        marker = "State: On"
    elif system == "linux":
        command = ["bluetoothctl", "show"]
        marker = "Powered: yes"
    else:
        logger.warning(f"Bluetooth status check not implemented for {system}")
        return True

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Could not check Bluetooth status on {system}: {e}")
        return True  # Assume it's working

    if marker in result.stdout:
        logger.info(f"Bluetooth is powered on ({system})")
        return True
    logger.error(f"Bluetooth appears to be powered off ({system})")
    return False


async def scan_for_devices(device_name: str, duration: float = 10.0) -> bool:
    """List nearby BLE devices and report whether ``device_name`` was seen."""
    logger.info(f"Scanning for BLE devices for {duration}s...")

    try:
        devices_adv = await BleakScanner.discover(timeout=duration, return_adv=True)
    except BleakError as e:
        logger.error(f"Error during BLE scan: {e}")
        return False

    if not devices_adv:
        logger.error("No BLE devices found")
        logger.info("Troubleshooting:")
        logger.info("   - Make sure the sensor is powered on")
        logger.info("   - Move closer to the sensor")
        return False

    logger.info(f"Found {len(devices_adv)} BLE device(s):")
    target_seen = False
    for dev, adv in devices_adv.values():
        name = adv.local_name or dev.name or "Unknown"
        logger.info(f"   {name} ({dev.address}) RSSI: {adv.rssi}dBm")
        if name == device_name:
            target_seen = True
            logger.info("      ^ target sensor")

    if not target_seen:
        logger.warning(f"\nNo device advertising as '{device_name}' found")
    return target_seen


async def test_sensor_read(device_name: str, scan_timeout: float) -> None:
    """Attempt one full find/connect/read/disconnect cycle."""
    logger.info(f"\nTesting connection to '{device_name}'...")

    try:
        sensor = await MoistureSensor.find(device_name, scan_timeout=scan_timeout)
        logger.info(f"Located {sensor.address}, connecting...")
        async with sensor:
            value = await sensor.read()
            logger.info(f"Reading: {value!r}")
        logger.info("Connection test succeeded")
    except MoistureSensorError as e:
        logger.error(f"Connection test failed: {type(e).__name__}: {e}")


async def main(device_name: str, scan_duration: float) -> None:
    """Run BLE diagnostics."""
    logger.info("NPH Moisture Sensor BLE Diagnostics")
    logger.info("=" * 40)

    if not check_bluetooth_status():
        logger.error("\nBluetooth issues detected. Please enable Bluetooth and try again.")
        return

    await scan_for_devices(device_name, duration=scan_duration)
    await test_sensor_read(device_name, scan_timeout=scan_duration)

    logger.info("\nDiagnostics complete")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--device-name", default=DEVICE_NAME)
    parser.add_argument("--scan-duration", type=float, default=15.0)
    args = parser.parse_args()

    try:
        asyncio.run(main(args.device_name, args.scan_duration))
    except KeyboardInterrupt:
        logger.info("\nDiagnostics cancelled by user")
