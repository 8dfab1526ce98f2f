from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from rewardctl.core.connection import ConnectionManager
from rewardctl.core.errors import CapabilityMissing, LinkClosed, LinkError
from rewardctl.core.model import (
    CapabilitySet,
    Channel,
    ChannelRole,
    DetectedDevice,
    GattLayout,
    PeripheralIdentity,
    PeripheralProfile,
    TimingSpec,
)

PUMP = DetectedDevice(address="C0:FF:EE:00:11:22", name="BLENano_PumpRFID_Setta")


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeScanner:
    def __init__(self, devices: list[DetectedDevice] | None = None) -> None:
        self.devices = [PUMP] if devices is None else devices
        self.calls = 0

    async def discover(self, *, timeout_s: float) -> list[DetectedDevice]:
        self.calls += 1
        return list(self.devices)


class FakeLink:
    def __init__(self, peripheral: FakePeripheral, device: DetectedDevice, on_link_lost: Callable[[str], None]) -> None:
        self.peripheral = peripheral
        self.device = device
        self.on_link_lost = on_link_lost
        self.generation = 0
        self.handlers: dict[ChannelRole, Callable[[bytes], None]] = {}
        self.opened = False
        self.closed = False

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    async def open(self) -> None:
        self.peripheral.open_calls += 1
        if self.peripheral.open_failures:
            raise self.peripheral.open_failures.pop(0)
        if self.peripheral.fail_opens is not None:
            raise self.peripheral.fail_opens
        self.peripheral.generation += 1
        self.generation = self.peripheral.generation
        self.opened = True

    async def discover(self, service_uuid: str, channel_uuids: Mapping[ChannelRole, str]) -> CapabilitySet:
        channels = {}
        for index, role in enumerate(ChannelRole):
            if role in self.peripheral.missing:
                raise CapabilityMissing(channel_uuids[role])
            channels[role] = Channel(
                role=role,
                uuid=channel_uuids[role],
                handle=self.generation * 10 + index,
                generation=self.generation,
            )
        return CapabilitySet(
            generation=self.generation,
            connection=channels[ChannelRole.CONNECTION],
            pump_duration=channels[ChannelRole.PUMP_DURATION],
            pump_ack=channels[ChannelRole.PUMP_ACK],
            rfid=channels[ChannelRole.RFID],
        )

    async def write(self, channel: Channel, payload: bytes, *, response: bool = True) -> None:
        if not self.is_open:
            raise LinkClosed("link is closed")
        if channel.generation != self.generation:
            raise LinkClosed("stale handle")
        if channel.role in self.peripheral.held_roles:
            await self.peripheral.release_writes.wait()
        if self.peripheral.write_failures:
            raise self.peripheral.write_failures.pop(0)
        self.peripheral.writes.append((channel.role, payload, channel.generation))
        if self.peripheral.on_write is not None:
            self.peripheral.on_write(channel.role, payload)

    async def subscribe(self, channel: Channel, handler: Callable[[bytes], None]) -> None:
        self.handlers[channel.role] = handler

    async def close(self) -> None:
        self.closed = True
        self.handlers.clear()

    def lose(self, reason: str = "radio dropped") -> None:
        if not self.is_open:
            return
        self.closed = True
        self.on_link_lost(reason)


class FakePeripheral:
    """Link factory that hands out scriptable fake links."""

    def __init__(self) -> None:
        self.links: list[FakeLink] = []
        self.open_calls = 0
        self.open_failures: list[LinkError] = []
        self.fail_opens: LinkError | None = None
        self.missing: set[ChannelRole] = set()
        self.write_failures: list[LinkError] = []
        self.writes: list[tuple[ChannelRole, bytes, int]] = []
        self.on_write: Callable[[ChannelRole, bytes], None] | None = None
        self.held_roles: set[ChannelRole] = set()
        self.release_writes = asyncio.Event()
        self.generation = 0

    def __call__(
        self,
        device: DetectedDevice,
        *,
        on_link_lost: Callable[[str], None],
        connect_timeout_s: float,
    ) -> FakeLink:
        link = FakeLink(self, device, on_link_lost)
        self.links.append(link)
        return link

    @property
    def link(self) -> FakeLink:
        return self.links[-1]

    def notify(self, role: ChannelRole, data: bytes) -> None:
        self.link.handlers[role](data)

    def writes_to(self, role: ChannelRole) -> list[bytes]:
        return [payload for written_role, payload, _ in self.writes if written_role is role]


def make_profile(**timing: float) -> PeripheralProfile:
    values = {
        "keepalive_interval_s": 3600.0,
        "ack_timeout_s": 2.0,
        "reconnect_base_delay_s": 1.0,
        "reconnect_max_attempts": 3,
    }
    values.update(timing)
    return PeripheralProfile(
        id="test_pump",
        name="Test Pump",
        identity=PeripheralIdentity(name_prefix=("BLENano_",)),
        gatt=GattLayout(
            service_uuid="0000a000-0000-1000-8000-00805f9b34fb",
            channels={
                ChannelRole.CONNECTION: "0000a001-0000-1000-8000-00805f9b34fb",
                ChannelRole.PUMP_DURATION: "0000a002-0000-1000-8000-00805f9b34fb",
                ChannelRole.PUMP_ACK: "0000a003-0000-1000-8000-00805f9b34fb",
                ChannelRole.RFID: "0000a004-0000-1000-8000-00805f9b34fb",
            },
        ),
        timing=TimingSpec(**values),
    )


@pytest.fixture(autouse=True)
def isolated_profile_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    return tmp_path / "cfg" / "rewardctl" / "profiles"


@pytest.fixture
def write_profile(isolated_profile_dirs: Path) -> Callable[[str, str], Path]:
    def _write(name: str, content: str) -> Path:
        isolated_profile_dirs.mkdir(parents=True, exist_ok=True)
        path = isolated_profile_dirs / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def peripheral() -> FakePeripheral:
    return FakePeripheral()


@pytest.fixture
def manager_factory(
    scanner: FakeScanner,
    peripheral: FakePeripheral,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> Callable[..., ConnectionManager]:
    def _make(**timing: float) -> ConnectionManager:
        return ConnectionManager(
            make_profile(**timing),
            scanner=scanner,
            link_factory=peripheral,
            clock=clock,
            sleep=sleep,
        )

    return _make
