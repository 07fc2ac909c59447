"""Wire protocol of the NPH Automation moisture sensor.

The sensor exposes a single GATT service carrying one readable
characteristic. Each read returns the current measurement as the raw bit
pattern of an IEEE-754 binary64 value in little-endian byte order, with no
scaling or unit metadata.

This module holds the protocol constants, the error hierarchy shared by the
client and transports, and the payload codec.
"""

from __future__ import annotations

import struct


# Moisture sensor GATT UUIDs
SERVICE_UUID = "a255a717-1559-4ded-9a62-0b285f9a5c8a"
CHARACTERISTIC_UUID = "6fe14a79-6e62-491b-b2e0-174762f9ac9b"

# Measurement payload: little-endian binary64
PAYLOAD_FORMAT = "<d"
PAYLOAD_SIZE = struct.calcsize(PAYLOAD_FORMAT)

DEVICE_NAME = "MS1"


class MoistureSensorError(RuntimeError):
    """Base class for every error raised by this package."""


class DeviceNotFoundError(MoistureSensorError):
    """No matching peripheral, service or characteristic was found."""


class NotSetUpError(MoistureSensorError):
    """A read was attempted before the sensor was connected and set up."""

    def __init__(self, message: str = "device was not set up") -> None:
        super().__init__(message)


class TransportError(MoistureSensorError):
    """The underlying BLE stack reported a failure."""


class PayloadSizeError(TransportError):
    """The characteristic returned a payload of unexpected length."""

    def __init__(self, size: int, expected: int = PAYLOAD_SIZE) -> None:
        super().__init__(
            f"Unexpected payload size: got {size} bytes, expected {expected}"
        )
        self.size = size
        self.expected = expected


class ServiceNotFoundError(TransportError, DeviceNotFoundError):
    """The connected device does not expose the moisture service."""


class CharacteristicNotFoundError(TransportError, DeviceNotFoundError):
    """The moisture service does not expose the measurement characteristic."""


def decode_measurement(payload: bytes) -> float:
    """Decode an 8-byte measurement payload into a float.

    The bytes are read as a little-endian unsigned 64-bit integer and those
    bits are reinterpreted as a binary64 value, so NaN payloads and negative
    zero survive unchanged.

    Args:
        payload: Raw characteristic value.

    Returns:
        The measurement value.

    Raises:
        PayloadSizeError: If ``payload`` is not exactly 8 bytes long.
    """
    if len(payload) != PAYLOAD_SIZE:
        raise PayloadSizeError(len(payload))
    (value,) = struct.unpack(PAYLOAD_FORMAT, bytes(payload))
    return value


def encode_measurement(value: float) -> bytes:
    """Encode a float into the 8-byte wire payload (inverse of decode)."""
    return struct.pack(PAYLOAD_FORMAT, value)
