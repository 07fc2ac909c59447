"""Tests for the MoistureSensor lifecycle against the in-memory transport.

Categories:
1. Discovery - name matching, timeouts, scan cleanup, transport failures
2. Connect/setup - GATT resolution and typed errors for missing handles
3. Read - precondition checks, decode, payload validation
4. Disconnect/reconnect - state reset and reuse without rediscovery
5. Context manager - connect on enter, release on exit
"""

import asyncio
import threading
from typing import Optional

import pytest

from nph_moisture import (
    Advertisement,
    CharacteristicNotFoundError,
    DeviceNotFoundError,
    MockPeripheral,
    MockTransport,
    MoistureSensor,
    NotSetUpError,
    PayloadSizeError,
    ServiceNotFoundError,
    TransportError,
    encode_measurement,
)

from .conftest import SENSOR_ADDRESS


class ThreadedScanTransport(MockTransport):
    """Delivers advertisements from a foreign thread, like native BLE stacks."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._thread: Optional[threading.Thread] = None

    async def start_scan(self, callback) -> None:
        self.calls.append("start_scan")

        def emit() -> None:
            for p in self.peripherals:
                callback(Advertisement(name=p.name, address=p.address, rssi=p.rssi))

        self._thread = threading.Thread(target=emit)
        self._thread.start()

    async def stop_scan(self) -> None:
        self.calls.append("stop_scan")
        if self._thread is not None:
            self._thread.join()


class TestFind:
    def test_finds_sensor_by_exact_name(self, transport: MockTransport) -> None:
        """A matching advertisement yields a located, unconnected sensor."""
        sensor = asyncio.run(MoistureSensor.find("MS1", transport))

        assert sensor.name == "MS1"
        assert sensor.address == SENSOR_ADDRESS
        assert not sensor.connected
        assert sensor.transport is transport

    def test_scan_is_stopped_after_match(self, transport: MockTransport) -> None:
        asyncio.run(MoistureSensor.find("MS1", transport))

        assert transport.calls == ["enable", "start_scan", "stop_scan"]
        assert not transport.scanning

    def test_skips_other_devices(self, peripheral: MockPeripheral) -> None:
        """Only the exact local name matches; look-alikes are ignored."""
        transport = MockTransport(
            [
                MockPeripheral(name=None, address="11:11:11:11:11:11"),
                MockPeripheral(name="MS10", address="22:22:22:22:22:22"),
                MockPeripheral(name="ms1", address="33:33:33:33:33:33"),
                peripheral,
            ],
            advertise_interval=0.001,
        )

        sensor = asyncio.run(MoistureSensor.find("MS1", transport))

        assert sensor.address == SENSOR_ADDRESS

    def test_first_match_wins(self) -> None:
        transport = MockTransport(
            [
                MockPeripheral(name="MS1", address="11:11:11:11:11:11"),
                MockPeripheral(name="MS1", address="22:22:22:22:22:22"),
            ],
            advertise_interval=0.001,
        )

        sensor = asyncio.run(MoistureSensor.find("MS1", transport))

        assert sensor.address == "11:11:11:11:11:11"

    def test_timeout_raises_not_found(self) -> None:
        """With a timeout configured, an absent sensor fails after ~timeout."""
        transport = MockTransport(
            [MockPeripheral(name="MS2", address="22:22:22:22:22:22")],
            advertise_interval=0.001,
        )
        loop_time = {}

        async def scenario() -> None:
            loop = asyncio.get_running_loop()
            loop_time["start"] = loop.time()
            try:
                await MoistureSensor.find("MS1", transport, scan_timeout=0.1)
            finally:
                loop_time["end"] = loop.time()

        with pytest.raises(DeviceNotFoundError, match="MS1"):
            asyncio.run(scenario())

        assert loop_time["end"] - loop_time["start"] >= 0.09
        assert transport.calls[-1] == "stop_scan"
        assert not transport.scanning

    def test_enable_failure_propagates(self, transport: MockTransport) -> None:
        transport.fail_on.add("enable")

        with pytest.raises(TransportError, match="enable"):
            asyncio.run(MoistureSensor.find("MS1", transport))

        assert "start_scan" not in transport.calls

    def test_scan_start_failure_propagates(self, transport: MockTransport) -> None:
        transport.fail_on.add("start_scan")

        with pytest.raises(TransportError, match="start_scan"):
            asyncio.run(MoistureSensor.find("MS1", transport))

    def test_stop_scan_failure_does_not_mask_result(
        self, transport: MockTransport
    ) -> None:
        """A failed stop is logged; the located sensor is still returned."""
        transport.fail_on.add("stop_scan")

        sensor = asyncio.run(MoistureSensor.find("MS1", transport))

        assert sensor.address == SENSOR_ADDRESS

    def test_callback_from_foreign_thread(self, peripheral: MockPeripheral) -> None:
        """Matches reported off the event loop thread still resolve the wait."""
        transport = ThreadedScanTransport([peripheral])

        sensor = asyncio.run(MoistureSensor.find("MS1", transport, scan_timeout=5.0))

        assert sensor.address == SENSOR_ADDRESS
        assert transport.calls[-1] == "stop_scan"


class TestConnect:
    def test_connect_resolves_gatt_handles(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        asyncio.run(sensor.connect())

        assert sensor.connected
        assert transport.calls == [
            "connect",
            "discover_services",
            "discover_characteristics",
        ]

    def test_connect_twice_keeps_single_link(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        async def scenario() -> None:
            await sensor.connect()
            await sensor.connect()

        asyncio.run(scenario())

        assert transport.calls.count("connect") == 1

    def test_link_failure(self, sensor: MoistureSensor, transport: MockTransport) -> None:
        transport.fail_on.add("connect")

        with pytest.raises(TransportError):
            asyncio.run(sensor.connect())

        assert not sensor.connected

    def test_missing_service_is_typed_error(
        self, sensor: MoistureSensor, peripheral: MockPeripheral
    ) -> None:
        """Zero matching services raises instead of indexing an empty list."""
        peripheral.has_service = False

        with pytest.raises(ServiceNotFoundError) as info:
            asyncio.run(sensor.connect())

        assert isinstance(info.value, DeviceNotFoundError)
        assert isinstance(info.value, TransportError)
        assert not sensor.connected

    def test_missing_characteristic_is_typed_error(
        self, sensor: MoistureSensor, peripheral: MockPeripheral
    ) -> None:
        peripheral.has_characteristic = False

        with pytest.raises(CharacteristicNotFoundError):
            asyncio.run(sensor.connect())

        assert not sensor.connected

    def test_discovery_failure_propagates(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        transport.fail_on.add("discover_services")

        with pytest.raises(TransportError):
            asyncio.run(sensor.connect())

        assert not sensor.connected

    def test_failed_setup_leaves_link_for_caller(
        self,
        sensor: MoistureSensor,
        transport: MockTransport,
        peripheral: MockPeripheral,
    ) -> None:
        """A failed setup is not rolled back; disconnect() releases the link."""
        peripheral.has_service = False

        async def scenario() -> None:
            with pytest.raises(ServiceNotFoundError):
                await sensor.connect()
            assert transport.links[0].open
            await sensor.disconnect()

        asyncio.run(scenario())

        assert not transport.links[0].open

    def test_retry_after_failed_setup_replaces_stale_link(
        self,
        sensor: MoistureSensor,
        transport: MockTransport,
        peripheral: MockPeripheral,
    ) -> None:
        peripheral.has_service = False

        async def scenario() -> None:
            with pytest.raises(ServiceNotFoundError):
                await sensor.connect()
            peripheral.has_service = True
            await sensor.connect()

        asyncio.run(scenario())

        assert sensor.connected
        assert [link.open for link in transport.links] == [False, True]


class TestRead:
    def test_read_before_connect_is_not_set_up(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        """Reading an unconnected sensor never reaches the transport."""
        with pytest.raises(NotSetUpError):
            asyncio.run(sensor.read())

        assert transport.calls == []

    def test_read_after_failed_connect_is_not_set_up(
        self, sensor: MoistureSensor, peripheral: MockPeripheral
    ) -> None:
        peripheral.has_characteristic = False

        async def scenario() -> None:
            with pytest.raises(CharacteristicNotFoundError):
                await sensor.connect()
            await sensor.read()

        with pytest.raises(NotSetUpError):
            asyncio.run(scenario())

    def test_reads_one_point_zero(self, sensor: MoistureSensor) -> None:
        async def scenario() -> float:
            await sensor.connect()
            return await sensor.read()

        assert asyncio.run(scenario()) == 1.0

    def test_reads_current_payload(
        self, sensor: MoistureSensor, peripheral: MockPeripheral
    ) -> None:
        async def scenario() -> list[float]:
            await sensor.connect()
            values = [await sensor.read()]
            peripheral.payload = encode_measurement(37.125)
            values.append(await sensor.read())
            return values

        assert asyncio.run(scenario()) == [1.0, 37.125]

    def test_short_payload_is_transport_error(
        self, sensor: MoistureSensor, peripheral: MockPeripheral
    ) -> None:
        """A 4-byte value raises and yields no measurement."""
        peripheral.payload = b"\x00\x00\xf0\x3f"
        result = []

        async def scenario() -> None:
            await sensor.connect()
            result.append(await sensor.read())

        with pytest.raises(PayloadSizeError) as info:
            asyncio.run(scenario())

        assert isinstance(info.value, TransportError)
        assert info.value.size == 4
        assert result == []

    def test_read_failure_propagates(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        async def scenario() -> None:
            await sensor.connect()
            transport.fail_on.add("read_characteristic")
            await sensor.read()

        with pytest.raises(TransportError, match="read_characteristic"):
            asyncio.run(scenario())

        assert sensor.connected


class TestDisconnect:
    def test_disconnect_resets_state(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        """After disconnect the sensor reports idle and reads fail fast."""

        async def scenario() -> None:
            await sensor.connect()
            assert sensor.connected
            await sensor.disconnect()
            assert not sensor.connected
            calls = len(transport.calls)
            with pytest.raises(NotSetUpError):
                await sensor.read()
            assert len(transport.calls) == calls

        asyncio.run(scenario())

        assert sensor.name == "MS1"
        assert sensor.address == SENSOR_ADDRESS

    def test_disconnect_without_link_is_noop(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        asyncio.run(sensor.disconnect())

        assert transport.calls == []

    def test_disconnect_failure_keeps_state(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        async def scenario() -> float:
            await sensor.connect()
            transport.fail_on.add("disconnect")
            with pytest.raises(TransportError):
                await sensor.disconnect()
            return await sensor.read()

        assert asyncio.run(scenario()) == 1.0
        assert sensor.connected

    def test_reconnect_without_rediscovery(
        self, transport: MockTransport
    ) -> None:
        """The same instance reconnects with fresh handles and no new scan."""

        async def scenario() -> float:
            sensor = await MoistureSensor.find("MS1", transport)
            await sensor.connect()
            await sensor.disconnect()
            await sensor.connect()
            assert sensor.connected
            return await sensor.read()

        assert asyncio.run(scenario()) == 1.0
        assert transport.calls.count("start_scan") == 1
        assert transport.calls.count("connect") == 2
        assert [link.open for link in transport.links] == [False, True]


class TestContextManager:
    def test_connects_and_disconnects(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        async def scenario() -> float:
            async with sensor as s:
                assert s is sensor
                assert sensor.connected
                return await sensor.read()

        assert asyncio.run(scenario()) == 1.0
        assert not sensor.connected
        assert transport.calls[-1] == "disconnect"

    def test_disconnects_when_body_raises(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        async def scenario() -> None:
            async with sensor:
                raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            asyncio.run(scenario())

        assert not sensor.connected
        assert not transport.links[0].open

    def test_body_error_not_masked_by_disconnect_error(
        self, sensor: MoistureSensor, transport: MockTransport
    ) -> None:
        async def scenario() -> None:
            async with sensor:
                transport.fail_on.add("disconnect")
                raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            asyncio.run(scenario())

    def test_failed_setup_releases_link(
        self,
        sensor: MoistureSensor,
        transport: MockTransport,
        peripheral: MockPeripheral,
    ) -> None:
        peripheral.has_characteristic = False

        async def scenario() -> None:
            async with sensor:
                pass

        with pytest.raises(CharacteristicNotFoundError):
            asyncio.run(scenario())

        assert not transport.links[0].open
        assert not sensor.connected
