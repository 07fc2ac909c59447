"""Shared fixtures for the moisture sensor test suite."""

import pytest

from nph_moisture import MockPeripheral, MockTransport, MoistureSensor, encode_measurement

SENSOR_ADDRESS = "AA:BB:CC:DD:EE:01"


@pytest.fixture
def peripheral() -> MockPeripheral:
    """A well-behaved sensor named MS1 reporting 1.0."""
    return MockPeripheral(
        name="MS1", address=SENSOR_ADDRESS, payload=encode_measurement(1.0)
    )


@pytest.fixture
def transport(peripheral: MockPeripheral) -> MockTransport:
    return MockTransport([peripheral], advertise_interval=0.001)


@pytest.fixture
def sensor(transport: MockTransport) -> MoistureSensor:
    """A located, unconnected sensor bound to the mock transport."""
    return MoistureSensor("MS1", SENSOR_ADDRESS, transport)
