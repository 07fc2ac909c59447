"""Client driver for the NPH Automation moisture sensor.

A ``MoistureSensor`` binds to one BLE peripheral selected by its advertised
local name and walks it through a short lifecycle:

1. **Locate**: ``MoistureSensor.find()`` scans until a peripheral with the
   exact name advertises, then records its address.
2. **Connect**: ``connect()`` opens a link and resolves the moisture GATT
   service and measurement characteristic.
3. **Read**: ``read()`` fetches the 8-byte payload and decodes it.
4. **Disconnect**: ``disconnect()`` releases the link. The address is kept,
   so the same instance can connect again without rescanning.

All BLE work is delegated to a ``BleTransport``; the default is
``BleakTransport``. The instance is meant to be driven by a single caller
and carries no internal locking.

Example:
    >>> sensor = await MoistureSensor.find("MS1", scan_timeout=30.0)
    >>> async with sensor:
    ...     print(await sensor.read())
"""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Any, Optional, Type

from .protocol import (
    CHARACTERISTIC_UUID,
    DEVICE_NAME,
    PAYLOAD_SIZE,
    SERVICE_UUID,
    CharacteristicNotFoundError,
    DeviceNotFoundError,
    MoistureSensorError,
    NotSetUpError,
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

logger = logging.getLogger(__name__)


async def _scan_for_name(
    transport: BleTransport, target_name: str, timeout: Optional[float]
) -> Advertisement:
    """Scan until a peripheral advertising ``target_name`` is seen.

    The scan callback may fire on the transport's own thread, so the match is
    handed to the waiting coroutine through a one-shot future resolved on
    the caller's loop. Only the first match is kept.

    Args:
        transport: Transport to scan with.
        target_name: Exact advertised local name to match.
        timeout: Seconds to wait for a match, or None to wait indefinitely.

    Returns:
        The matching advertisement.

    Raises:
        DeviceNotFoundError: If ``timeout`` elapses without a match.
        TransportError: If the adapter cannot be enabled or the scan cannot
            be started.
    """
    await transport.enable()

    loop = asyncio.get_running_loop()
    found: asyncio.Future[Advertisement] = loop.create_future()

    def resolve(adv: Advertisement) -> None:
        if not found.done():
            found.set_result(adv)

    def on_advertisement(adv: Advertisement) -> None:
        logger.debug(
            "Device discovered: addr=%s name=%s rssi=%s", adv.address, adv.name, adv.rssi
        )
        if adv.name == target_name and not found.done():
            loop.call_soon_threadsafe(resolve, adv)

    if timeout is None:
        logger.info("Searching for '%s' (no timeout)...", target_name)
    else:
        logger.info("Searching for '%s' (timeout=%.1fs)...", target_name, timeout)

    await transport.start_scan(on_advertisement)
    try:
        if timeout is None:
            adv = await found
        else:
            try:
                adv = await asyncio.wait_for(found, timeout=timeout)
            except asyncio.TimeoutError as e:
                raise DeviceNotFoundError(
                    f"No device advertising as '{target_name}' found within {timeout:.1f}s"
                ) from e
    finally:
        try:
            await transport.stop_scan()
        except TransportError as e:
            logger.warning("Failed to stop scanning: %s", e)
        else:
            logger.info("Scanning stopped")

    logger.info("Found device %s (%s)", target_name, adv.address)
    return adv


class MoistureSensor:
    """One moisture sensor peripheral, addressed by name.

    Instances are normally created through ``find()``, which performs the
    discovery scan. The constructor is public for callers that already know
    the address (for example from a previous ``find()``).

    Attributes:
        transport: Transport used for every BLE operation on this sensor.
    """

    def __init__(self, name: str, address: str, transport: BleTransport) -> None:
        self._name = name
        self._address = address
        self.transport = transport
        self._link: Optional[Any] = None
        self._service: Optional[Any] = None
        self._characteristic: Optional[Any] = None
        self._connected = False

    @classmethod
    async def find(
        cls,
        name: str = DEVICE_NAME,
        transport: Optional[BleTransport] = None,
        *,
        scan_timeout: Optional[float] = None,
    ) -> "MoistureSensor":
        """Locate the sensor advertising ``name`` and return a client for it.

        Args:
            name: Exact advertised local name of the sensor.
            transport: BLE transport to use. Defaults to a new
                ``BleakTransport`` on the platform's default adapter.
            scan_timeout: Maximum seconds to scan. None (the default) blocks
                until the sensor shows up.

        Returns:
            A located, not yet connected sensor.

        Raises:
            DeviceNotFoundError: If ``scan_timeout`` elapses without a match.
            TransportError: If the scan cannot be performed.
        """
        if transport is None:
            transport = BleakTransport()
        adv = await _scan_for_name(transport, name, scan_timeout)
        return cls(name, adv.address, transport)

    @property
    def name(self) -> str:
        return self._name

    @property
    def address(self) -> str:
        return self._address

    @property
    def connected(self) -> bool:
        return self._connected

    def __repr__(self) -> str:
        return (
            f"MoistureSensor(name={self._name!r}, address={self._address!r}, "
            f"connected={self._connected})"
        )

    async def connect(self) -> None:
        """Connect to the sensor and resolve its measurement characteristic.

        The sensor only counts as connected once both the link and the GATT
        setup succeed. On failure the error propagates and ``connected``
        stays False; a link that opened but failed setup is kept so that
        ``disconnect()`` can release it.

        Raises:
            TransportError: If the link cannot be established or GATT
                discovery fails.
            ServiceNotFoundError: If the device lacks the moisture service.
            CharacteristicNotFoundError: If the service lacks the
                measurement characteristic.
        """
        if self._connected:
            logger.debug("%s already connected", self._name)
            return

        if self._link is not None:
            # Left over from a connect whose setup failed
            logger.info("Releasing unconfigured link to %s", self._address)
            await self.transport.disconnect(self._link)
            self._link = None

        logger.info("Connecting to %s (%s)", self._name, self._address)
        self._link = await self.transport.connect(self._address)
        await self._setup()
        self._connected = True
        logger.info("Connected to %s", self._name)

    async def _setup(self) -> None:
        services = await self.transport.discover_services(self._link, [SERVICE_UUID])
        if not services:
            raise ServiceNotFoundError(
                f"Service {SERVICE_UUID} not found on {self._address}"
            )
        service = services[0]

        chars = await self.transport.discover_characteristics(
            service, [CHARACTERISTIC_UUID]
        )
        if not chars:
            raise CharacteristicNotFoundError(
                f"Characteristic {CHARACTERISTIC_UUID} not found on {self._address}"
            )

        self._service = service
        self._characteristic = chars[0]
        logger.debug("GATT setup complete for %s", self._address)

    async def read(self) -> float:
        """Read the current measurement.

        Returns:
            The decoded measurement value.

        Raises:
            NotSetUpError: If the sensor is not connected. The transport is
                not touched in that case.
            PayloadSizeError: If the device returned other than 8 bytes.
            TransportError: If the read itself fails.
        """
        if self._service is None or self._characteristic is None:
            raise NotSetUpError()

        payload = await self.transport.read_characteristic(
            self._characteristic, PAYLOAD_SIZE
        )
        logger.debug("Raw payload from %s: %s", self._address, payload.hex(" "))
        return decode_measurement(payload)

    async def disconnect(self) -> None:
        """Disconnect from the sensor, keeping its name and address.

        Does nothing if no link is held. On failure the sensor state is left
        untouched and the error propagates.

        Raises:
            TransportError: If the transport fails to tear down the link.
        """
        if self._link is None:
            return

        await self.transport.disconnect(self._link)
        self._link = None
        self._service = None
        self._characteristic = None
        self._connected = False
        logger.info("Disconnected from %s", self._name)

    async def __aenter__(self) -> "MoistureSensor":
        try:
            await self.connect()
        except MoistureSensorError:
            if self._link is not None:
                try:
                    await self.disconnect()
                except TransportError as e:
                    logger.warning("Cleanup after failed connect failed: %s", e)
            raise
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is None:
            await self.disconnect()
            return
        try:
            await self.disconnect()
        except TransportError as e:
            logger.warning("Disconnect after error failed: %s", e)


MOCK_ADDRESS = "00:11:22:33:44:55"
MOCK_VALUE = 42.5


def create_mock_transport(device_name: str = DEVICE_NAME) -> MockTransport:
    """Build a ``MockTransport`` advertising one sensor named ``device_name``."""
    return MockTransport(
        [
            MockPeripheral(
                name=device_name,
                address=MOCK_ADDRESS,
                payload=encode_measurement(MOCK_VALUE),
            )
        ],
        advertise_interval=0.05,
    )


async def print_readings(
    device_name: str = DEVICE_NAME,
    *,
    transport: Optional[BleTransport] = None,
    scan_timeout: Optional[float] = None,
    count: int = 1,
    interval: float = 1.0,
) -> None:
    """Find the sensor, print ``count`` readings to stdout, and disconnect.

    Args:
        device_name: Advertised name of the sensor.
        transport: Transport to use; defaults to ``BleakTransport``.
        scan_timeout: Discovery timeout in seconds, None to wait forever.
        count: Number of readings taken over the same connection.
        interval: Seconds between consecutive readings.
    """
    sensor = await MoistureSensor.find(
        device_name, transport, scan_timeout=scan_timeout
    )
    async with sensor:
        for i in range(count):
            if i:
                await asyncio.sleep(interval)
            value = await sensor.read()
            logger.debug("Reading %d/%d: %r", i + 1, count, value)
            print(value)


def run(
    device_name: str = DEVICE_NAME,
    *,
    scan_timeout: Optional[float] = None,
    adapter: Optional[str] = None,
    count: int = 1,
    interval: float = 1.0,
    mock: bool = False,
) -> int:
    """Synchronous wrapper around ``print_readings`` for command-line use.

    Returns:
        int: Exit code:
            0: All readings printed and the sensor disconnected.
            1: Discovery, connection, read or disconnect failed.
            130: Keyboard interrupt (SIGINT/Ctrl+C).
    """
    transport: BleTransport
    if mock:
        logger.info("Using mock transport (no BLE device required)")
        transport = create_mock_transport(device_name)
    else:
        transport = BleakTransport(adapter=adapter)

    try:
        asyncio.run(
            print_readings(
                device_name,
                transport=transport,
                scan_timeout=scan_timeout,
                count=count,
                interval=interval,
            )
        )
        return 0
    except KeyboardInterrupt:
        return 130
    except MoistureSensorError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
