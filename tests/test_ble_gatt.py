from __future__ import annotations

import asyncio
import sys
import types
from types import SimpleNamespace

import pytest

from rewardctl.core.errors import (
    CapabilityMissing,
    DeviceNotFound,
    HandshakeTimeout,
    LinkClosed,
    TransportUnavailable,
    WriteRejected,
)
from rewardctl.core.model import ChannelRole, DetectedDevice
from rewardctl.transports.ble_gatt import BleakDeviceLink, BleakPeripheralScanner

PUMP = DetectedDevice(address="C0:FF:EE:00:11:22", name="BLENano_PumpRFID_Setta")
SERVICE = "0000a000-0000-1000-8000-00805f9b34fb"
CHANNELS = {
    ChannelRole.CONNECTION: "0000a001-0000-1000-8000-00805f9b34fb",
    ChannelRole.PUMP_DURATION: "0000a002-0000-1000-8000-00805f9b34fb",
    ChannelRole.PUMP_ACK: "0000a003-0000-1000-8000-00805f9b34fb",
    ChannelRole.RFID: "0000a004-0000-1000-8000-00805f9b34fb",
}


class FakeBleakDeviceNotFoundError(Exception):
    pass


class FakeService:
    def __init__(self, uuids: list[str]) -> None:
        self.characteristics = {
            uuid: SimpleNamespace(uuid=uuid, handle=index + 10) for index, uuid in enumerate(uuids)
        }

    def get_characteristic(self, uuid: str):
        return self.characteristics.get(uuid)


class FakeServices:
    def __init__(self, services: dict[str, FakeService]) -> None:
        self._services = services

    def get_service(self, uuid: str):
        return self._services.get(uuid)


class FakeBleakClient:
    instances: list[FakeBleakClient] = []
    connect_error: Exception | None = None
    connect_leaves_disconnected = False
    characteristic_uuids: list[str] = list(CHANNELS.values())

    def __init__(self, address: str, disconnected_callback=None, timeout: float = 10.0) -> None:
        self.address = address
        self.disconnected_callback = disconnected_callback
        self.timeout = timeout
        self.is_connected = False
        self.services = FakeServices({SERVICE: FakeService(type(self).characteristic_uuids)})
        self.writes: list[tuple[str, bytes, bool]] = []
        self.notify_callbacks = {}
        self.write_error: Exception | None = None
        self.drop_on_write = False
        self.disconnect_calls = 0
        FakeBleakClient.instances.append(self)

    async def connect(self) -> None:
        if type(self).connect_error is not None:
            raise type(self).connect_error
        self.is_connected = not type(self).connect_leaves_disconnected

    async def write_gatt_char(self, characteristic, data: bytes, response: bool = True) -> None:
        if self.write_error is not None:
            if self.drop_on_write:
                self.is_connected = False
            raise self.write_error
        self.writes.append((characteristic.uuid, bytes(data), response))

    async def start_notify(self, characteristic, callback) -> None:
        self.notify_callbacks[characteristic.uuid] = callback

    async def stop_notify(self, characteristic) -> None:
        self.notify_callbacks.pop(characteristic.uuid, None)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.drop()

    def drop(self) -> None:
        self.is_connected = False
        if self.disconnected_callback is not None:
            self.disconnected_callback(self)


class FakeBleakScanner:
    @staticmethod
    async def discover(timeout: float = 5.0):
        return [
            SimpleNamespace(address="c0:ff:ee:00:11:22", name="BLENano_PumpRFID_Setta"),
            SimpleNamespace(address="00:11:22:33:44:55", name=None),
        ]


@pytest.fixture
def fake_bleak(monkeypatch):
    FakeBleakClient.instances = []
    FakeBleakClient.connect_error = None
    FakeBleakClient.connect_leaves_disconnected = False
    FakeBleakClient.characteristic_uuids = list(CHANNELS.values())
    bleak = types.ModuleType("bleak")
    bleak.BleakClient = FakeBleakClient
    bleak.BleakScanner = FakeBleakScanner
    exc = types.ModuleType("bleak.exc")
    exc.BleakDeviceNotFoundError = FakeBleakDeviceNotFoundError
    bleak.exc = exc
    monkeypatch.setitem(sys.modules, "bleak", bleak)
    monkeypatch.setitem(sys.modules, "bleak.exc", exc)
    return bleak


def _link(lost: list[str]) -> BleakDeviceLink:
    return BleakDeviceLink(PUMP, on_link_lost=lost.append, connect_timeout_s=1.0)


@pytest.mark.asyncio
async def test_missing_bleak_is_reported(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "bleak", None)
    with pytest.raises(TransportUnavailable):
        await BleakPeripheralScanner().discover(timeout_s=1.0)


@pytest.mark.asyncio
async def test_scanner_normalizes_devices(fake_bleak) -> None:
    devices = await BleakPeripheralScanner().discover(timeout_s=1.0)
    assert devices == [
        DetectedDevice(address="C0:FF:EE:00:11:22", name="BLENano_PumpRFID_Setta"),
        DetectedDevice(address="00:11:22:33:44:55", name="<unknown-device>"),
    ]


@pytest.mark.asyncio
async def test_open_discover_write_and_notify(fake_bleak) -> None:
    lost: list[str] = []
    received: list[bytes] = []
    link = _link(lost)

    await link.open()
    capabilities = await link.discover(SERVICE, CHANNELS)
    await link.subscribe(capabilities.pump_ack, received.append)
    await link.write(capabilities.pump_duration, b"\x00\x64", response=True)

    client = FakeBleakClient.instances[-1]
    assert client.timeout == 1.0
    assert client.writes == [(CHANNELS[ChannelRole.PUMP_DURATION], b"\x00\x64", True)]
    client.notify_callbacks[CHANNELS[ChannelRole.PUMP_ACK]](None, bytearray(b"\x01\x02\x03\x04"))
    assert received == [b"\x01\x02\x03\x04"]
    assert capabilities.pump_duration.generation == capabilities.generation

    await link.close()
    assert lost == []
    assert not link.is_open


@pytest.mark.asyncio
async def test_connect_errors_are_mapped(fake_bleak) -> None:
    FakeBleakClient.connect_error = FakeBleakDeviceNotFoundError("gone")
    with pytest.raises(DeviceNotFound):
        await _link([]).open()

    FakeBleakClient.connect_error = asyncio.TimeoutError()
    with pytest.raises(HandshakeTimeout):
        await _link([]).open()

    FakeBleakClient.connect_error = OSError("adapter off")
    with pytest.raises(TransportUnavailable):
        await _link([]).open()


@pytest.mark.asyncio
async def test_missing_characteristic_is_reported(fake_bleak) -> None:
    FakeBleakClient.characteristic_uuids = [
        CHANNELS[ChannelRole.CONNECTION],
        CHANNELS[ChannelRole.PUMP_DURATION],
        CHANNELS[ChannelRole.PUMP_ACK],
    ]
    link = _link([])
    await link.open()

    with pytest.raises(CapabilityMissing) as exc:
        await link.discover(SERVICE, CHANNELS)
    assert exc.value.channel_id == CHANNELS[ChannelRole.RFID]

    with pytest.raises(CapabilityMissing):
        await link.discover("0000b000-0000-1000-8000-00805f9b34fb", CHANNELS)
    await link.close()


@pytest.mark.asyncio
async def test_handles_from_previous_connection_are_rejected(fake_bleak) -> None:
    link = _link([])
    await link.open()
    old = await link.discover(SERVICE, CHANNELS)
    await link.close()

    await link.open()
    new = await link.discover(SERVICE, CHANNELS)

    assert new.generation > old.generation
    with pytest.raises(LinkClosed):
        await link.write(old.pump_duration, b"\x00\x64")
    await link.write(new.pump_duration, b"\x00\x64")
    await link.close()


@pytest.mark.asyncio
async def test_unexpected_disconnect_signals_once(fake_bleak) -> None:
    lost: list[str] = []
    link = _link(lost)
    await link.open()
    client = FakeBleakClient.instances[-1]

    client.drop()
    client.drop()

    assert lost == ["C0:FF:EE:00:11:22 disconnected"]
    await link.close()
    assert len(lost) == 1


@pytest.mark.asyncio
async def test_write_failures_are_mapped(fake_bleak) -> None:
    link = _link([])
    await link.open()
    capabilities = await link.discover(SERVICE, CHANNELS)
    client = FakeBleakClient.instances[-1]

    client.write_error = RuntimeError("ATT error 0x03")
    with pytest.raises(WriteRejected):
        await link.write(capabilities.pump_duration, b"\x00\x64")

    client.drop_on_write = True
    with pytest.raises(LinkClosed):
        await link.write(capabilities.pump_duration, b"\x00\x64")

    with pytest.raises(LinkClosed):
        await link.write(capabilities.pump_duration, b"\x00\x64")
    await link.close()


@pytest.mark.asyncio
async def test_failed_connect_releases_client(fake_bleak) -> None:
    lost: list[str] = []
    FakeBleakClient.connect_error = asyncio.TimeoutError()
    with pytest.raises(HandshakeTimeout):
        await _link(lost).open()
    assert FakeBleakClient.instances[-1].disconnect_calls == 1

    FakeBleakClient.connect_error = None
    FakeBleakClient.connect_leaves_disconnected = True
    link = _link(lost)
    with pytest.raises(TransportUnavailable):
        await link.open()
    assert FakeBleakClient.instances[-1].disconnect_calls == 1
    assert not link.is_open
    assert lost == []
