"""BLE transport collaborators for the moisture sensor client.

The client never talks to a Bluetooth stack directly. It consumes a narrow
set of capabilities (scan, connect, GATT discovery, read, disconnect)
through the ``BleTransport`` interface, which keeps the radio adapter an
explicit dependency instead of process-wide state.

Two implementations ship with the package:

- ``BleakTransport``: production transport on top of the cross-platform
  Bleak library.
- ``MockTransport``: in-memory simulation of one or more advertising
  peripherals, used by the ``--mock`` CLI option and by the test suite.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

from .protocol import (
    CHARACTERISTIC_UUID,
    SERVICE_UUID,
    TransportError,
    encode_measurement,
)

logger = logging.getLogger(__name__)

# Errors raised by Bleak and the platform backends it wraps
_BLE_ERRORS = (BleakError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class Advertisement:
    """One advertisement report delivered by a scan.

    Attributes:
        name: Advertised local name, or None if the packet carried none.
        address: Peripheral address (MAC on Linux/Windows, UUID on macOS).
        rssi: Received signal strength in dBm, when the backend reports it.
    """

    name: Optional[str]
    address: str
    rssi: Optional[int] = None


AdvertisementCallback = Callable[[Advertisement], None]


class BleTransport(ABC):
    """Abstract BLE stack consumed by ``MoistureSensor``.

    Every method is a coroutine and must raise ``TransportError`` (or a
    subclass) on failure. Handles returned by ``connect``,
    ``discover_services`` and ``discover_characteristics`` are opaque to the
    caller and only ever passed back into the same transport.

    The scan callback may be invoked from the transport's own execution
    context; callers must not assume it runs on their event loop thread.
    """

    @abstractmethod
    async def enable(self) -> None:
        """Prepare the radio adapter for scanning."""
        pass

    @abstractmethod
    async def start_scan(self, callback: AdvertisementCallback) -> None:
        """Start scanning and report every advertisement to ``callback``.

        The call returns once scanning is running; advertisements keep
        arriving until ``stop_scan`` is awaited.
        """
        pass

    @abstractmethod
    async def stop_scan(self) -> None:
        """Stop a running scan. Safe to call when no scan is running."""
        pass

    @abstractmethod
    async def connect(self, address: str) -> Any:
        """Establish a link to ``address`` and return its handle."""
        pass

    @abstractmethod
    async def discover_services(self, link: Any, uuids: Sequence[str]) -> list[Any]:
        """Return the services of ``link`` matching any of ``uuids``.

        An empty list means no service matched; it is not an error at this
        level.
        """
        pass

    @abstractmethod
    async def discover_characteristics(
        self, service: Any, uuids: Sequence[str]
    ) -> list[Any]:
        """Return the characteristics of ``service`` matching any of ``uuids``."""
        pass

    @abstractmethod
    async def read_characteristic(self, characteristic: Any, length: int) -> bytes:
        """Read the value of ``characteristic``.

        Args:
            characteristic: Handle from ``discover_characteristics``.
            length: Number of bytes the caller expects. Transports whose
                stack cannot bound a read return the full value and leave
                length validation to the caller.
        """
        pass

    @abstractmethod
    async def disconnect(self, link: Any) -> None:
        """Tear down ``link``."""
        pass


def _uuid_set(uuids: Iterable[str]) -> set[str]:
    return {u.lower() for u in uuids}


# Bleak's GATT objects do not reference their client, so handles carry it
@dataclass(frozen=True)
class BleakServiceHandle:
    client: BleakClient
    service: BleakGATTService


@dataclass(frozen=True)
class BleakCharacteristicHandle:
    client: BleakClient
    characteristic: BleakGATTCharacteristic


class BleakTransport(BleTransport):
    """``BleTransport`` backed by Bleak.

    Bleak has no explicit "enable" step; the adapter is powered on demand by
    the platform backend. ``enable`` therefore only creates the scanner, so
    backend or adapter problems surface there as ``TransportError``.

    Links are ``BleakClient`` instances. Services and characteristics are
    the GATT objects Bleak resolves while connecting, wrapped together with
    their client in ``BleakServiceHandle``/``BleakCharacteristicHandle``.
    """

    def __init__(
        self, adapter: Optional[str] = None, connect_timeout: float = 10.0
    ) -> None:
        """Create a transport bound to one radio adapter.

        Args:
            adapter: Backend adapter name (e.g. ``"hci0"`` on BlueZ). None
                selects the platform default.
            connect_timeout: Seconds Bleak waits for a connection to be
                established.
        """
        self._adapter = adapter
        self._connect_timeout = connect_timeout
        self._scanner: Optional[BleakScanner] = None
        self._callback: Optional[AdvertisementCallback] = None
        self._scanning = False

    def _backend_kwargs(self) -> dict[str, Any]:
        return {"adapter": self._adapter} if self._adapter else {}

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData) -> None:
        callback = self._callback
        if callback is None:
            return
        callback(
            Advertisement(
                # Prefer the name from the current packet over the cached one
                name=adv.local_name or device.name,
                address=device.address,
                rssi=adv.rssi,
            )
        )

    async def enable(self) -> None:
        if self._scanner is not None:
            return
        try:
            self._scanner = BleakScanner(
                detection_callback=self._on_detection, **self._backend_kwargs()
            )
        except _BLE_ERRORS as e:
            raise TransportError(f"BLE adapter initialization failed: {e}") from e
        logger.debug("BLE scanner created (adapter=%s)", self._adapter or "default")

    async def start_scan(self, callback: AdvertisementCallback) -> None:
        await self.enable()
        assert self._scanner is not None
        self._callback = callback
        try:
            await self._scanner.start()
        except _BLE_ERRORS as e:
            self._callback = None
            raise TransportError(f"BLE scan failed to start: {e}") from e
        self._scanning = True

    async def stop_scan(self) -> None:
        self._callback = None
        if self._scanner is None or not self._scanning:
            return
        self._scanning = False
        try:
            await self._scanner.stop()
        except _BLE_ERRORS as e:
            raise TransportError(f"BLE scan failed to stop: {e}") from e

    async def connect(self, address: str) -> BleakClient:
        client = BleakClient(
            address, timeout=self._connect_timeout, **self._backend_kwargs()
        )
        try:
            await client.connect()
        except _BLE_ERRORS as e:
            raise TransportError(f"Connection to {address} failed: {e}") from e
        if not client.is_connected:
            raise TransportError(f"Connection to {address} failed.")
        return client

    async def discover_services(
        self, link: BleakClient, uuids: Sequence[str]
    ) -> list[BleakServiceHandle]:
        wanted = _uuid_set(uuids)
        try:
            services = list(link.services)
        except _BLE_ERRORS as e:
            raise TransportError(f"Service discovery failed: {e}") from e
        return [
            BleakServiceHandle(client=link, service=s)
            for s in services
            if s.uuid.lower() in wanted
        ]

    async def discover_characteristics(
        self, service: BleakServiceHandle, uuids: Sequence[str]
    ) -> list[BleakCharacteristicHandle]:
        wanted = _uuid_set(uuids)
        return [
            BleakCharacteristicHandle(client=service.client, characteristic=c)
            for c in service.service.characteristics
            if c.uuid.lower() in wanted
        ]

    async def read_characteristic(
        self, characteristic: BleakCharacteristicHandle, length: int
    ) -> bytes:
        try:
            data = await characteristic.client.read_gatt_char(
                characteristic.characteristic
            )
        except _BLE_ERRORS as e:
            raise TransportError(f"Characteristic read failed: {e}") from e
        logger.debug("Read %d bytes (expected %d)", len(data), length)
        return bytes(data)

    async def disconnect(self, link: BleakClient) -> None:
        try:
            await link.disconnect()
        except _BLE_ERRORS as e:
            raise TransportError(f"Disconnect failed: {e}") from e


@dataclass
class MockPeripheral:
    """Simulated moisture sensor for ``MockTransport``.

    Attributes:
        name: Advertised local name (None advertises without a name).
        address: Peripheral address reported in advertisements.
        payload: Bytes returned by characteristic reads. Not validated, so a
            wrong-sized payload can be used to exercise error paths.
        rssi: Reported signal strength.
        has_service: Whether the moisture service is exposed.
        has_characteristic: Whether the measurement characteristic is exposed.
    """

    name: Optional[str]
    address: str
    payload: bytes = field(default_factory=lambda: encode_measurement(0.0))
    rssi: int = -60
    has_service: bool = True
    has_characteristic: bool = True


@dataclass
class MockLink:
    peripheral: MockPeripheral
    open: bool = True


@dataclass(frozen=True)
class MockService:
    link: MockLink
    uuid: str


@dataclass(frozen=True)
class MockCharacteristic:
    link: MockLink
    uuid: str


class MockTransport(BleTransport):
    """In-memory ``BleTransport`` for demos and tests.

    Advertisements for every registered peripheral are delivered in turn
    from a background task while a scan is running. Every call is appended
    to ``calls`` so tests can assert which transport operations were made.

    Failures can be injected per operation name: an operation listed in
    ``fail_on`` raises ``TransportError`` instead of running.
    """

    def __init__(
        self,
        peripherals: Iterable[MockPeripheral] = (),
        *,
        advertise_interval: float = 0.01,
        fail_on: Iterable[str] = (),
    ) -> None:
        self.peripherals: list[MockPeripheral] = list(peripherals)
        self.fail_on: set[str] = set(fail_on)
        self.calls: list[str] = []
        self.links: list[MockLink] = []
        self._advertise_interval = advertise_interval
        self._scan_task: Optional[asyncio.Task[None]] = None
        self.enabled = False

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise TransportError(f"Simulated {operation} failure")

    def _find(self, address: str) -> MockPeripheral:
        for p in self.peripherals:
            if p.address == address:
                return p
        raise TransportError(f"Device with address {address} was not found")

    @property
    def scanning(self) -> bool:
        return self._scan_task is not None

    async def _advertise(self, callback: AdvertisementCallback) -> None:
        while True:
            for p in list(self.peripherals):
                callback(Advertisement(name=p.name, address=p.address, rssi=p.rssi))
                await asyncio.sleep(self._advertise_interval)
            if not self.peripherals:
                await asyncio.sleep(self._advertise_interval)

    async def enable(self) -> None:
        self._record("enable")
        self.enabled = True

    async def start_scan(self, callback: AdvertisementCallback) -> None:
        self._record("start_scan")
        if self._scan_task is not None:
            raise TransportError("Scan already in progress")
        self._scan_task = asyncio.create_task(self._advertise(callback))

    async def stop_scan(self) -> None:
        self._record("stop_scan")
        task, self._scan_task = self._scan_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def connect(self, address: str) -> MockLink:
        self._record("connect")
        link = MockLink(self._find(address))
        self.links.append(link)
        return link

    async def discover_services(
        self, link: MockLink, uuids: Sequence[str]
    ) -> list[MockService]:
        self._record("discover_services")
        if not link.open:
            raise TransportError("Link is closed")
        if not link.peripheral.has_service or SERVICE_UUID not in _uuid_set(uuids):
            return []
        return [MockService(link, SERVICE_UUID)]

    async def discover_characteristics(
        self, service: MockService, uuids: Sequence[str]
    ) -> list[MockCharacteristic]:
        self._record("discover_characteristics")
        peripheral = service.link.peripheral
        if not peripheral.has_characteristic or CHARACTERISTIC_UUID not in _uuid_set(
            uuids
        ):
            return []
        return [MockCharacteristic(service.link, CHARACTERISTIC_UUID)]

    async def read_characteristic(
        self, characteristic: MockCharacteristic, length: int
    ) -> bytes:
        self._record("read_characteristic")
        if not characteristic.link.open:
            raise TransportError("Link is closed")
        return bytes(characteristic.link.peripheral.payload)

    async def disconnect(self, link: MockLink) -> None:
        self._record("disconnect")
        link.open = False
