"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Mapping
from typing import Any

from rewardctl.core.errors import (
    CapabilityMissing,
    DeviceNotFound,
    HandshakeTimeout,
    LinkClosed,
    TransportUnavailable,
    WriteRejected,
)
from rewardctl.core.model import CapabilitySet, Channel, ChannelRole, DetectedDevice
from rewardctl.transports.base import LinkLostCallback, NotificationHandler

LOGGER = logging.getLogger(__name__)

# Shared across links so a handle from a previous connection never matches a new one.
_GENERATIONS = itertools.count(1)


def _import_bleak() -> Any:
    try:
        import bleak  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise TransportUnavailable(
            "BLE transport requires 'bleak'. Install dependency and retry."
        ) from exc
    return bleak


class BleakPeripheralScanner:
    async def discover(self, *, timeout_s: float) -> list[DetectedDevice]:
        bleak = _import_bleak()
        try:
            found = await bleak.BleakScanner.discover(timeout=timeout_s)
        except Exception as exc:
            raise TransportUnavailable(f"BLE scan failed: {exc}") from exc
        return [DetectedDevice(address=d.address.upper(), name=d.name or "<unknown-device>") for d in found]


class BleakDeviceLink:
    def __init__(
        self,
        device: DetectedDevice,
        *,
        on_link_lost: LinkLostCallback,
        connect_timeout_s: float = 10.0,
    ) -> None:
        self.device = device
        self._on_link_lost = on_link_lost
        self._connect_timeout_s = connect_timeout_s
        self._client: Any = None
        self._generation = 0
        self._characteristics: dict[ChannelRole, Any] = {}
        self._subscribed: list[Any] = []
        self._closing = False
        self._lost_signalled = False

    @property
    def is_open(self) -> bool:
        return bool(self._client is not None and self._client.is_connected)

    async def open(self) -> None:
        bleak = _import_bleak()
        from bleak.exc import BleakDeviceNotFoundError  # type: ignore

        self._closing = False
        self._lost_signalled = False
        client = bleak.BleakClient(
            self.device.address,
            disconnected_callback=self._handle_disconnect,
            timeout=self._connect_timeout_s,
        )
        try:
            await client.connect()
        except Exception as exc:
            await self._abandon(client)
            if isinstance(exc, BleakDeviceNotFoundError):
                raise DeviceNotFound(f"BLE device {self.device.address} not found") from exc
            if isinstance(exc, asyncio.TimeoutError):
                raise HandshakeTimeout(
                    f"BLE connect to {self.device.address} timed out after {self._connect_timeout_s}s"
                ) from exc
            raise TransportUnavailable(f"BLE connect failed for {self.device.address}: {exc}") from exc

        if not client.is_connected:
            await self._abandon(client)
            raise TransportUnavailable(f"BLE connect failed for {self.device.address}")
        self._client = client
        self._generation = next(_GENERATIONS)
        LOGGER.info("Connected to %s (%s), link generation %d", self.device.name, self.device.address, self._generation)

    async def discover(self, service_uuid: str, channel_uuids: Mapping[ChannelRole, str]) -> CapabilitySet:
        client = self._require_client()
        service = client.services.get_service(service_uuid)
        if service is None:
            raise CapabilityMissing(service_uuid, f"Service {service_uuid} not found on {self.device.address}")

        self._characteristics = {}
        channels: dict[ChannelRole, Channel] = {}
        for role in ChannelRole:
            uuid = channel_uuids[role]
            characteristic = service.get_characteristic(uuid)
            if characteristic is None:
                raise CapabilityMissing(uuid, f"Characteristic {uuid} ({role.value}) not found on {self.device.address}")
            self._characteristics[role] = characteristic
            channels[role] = Channel(role=role, uuid=uuid, handle=characteristic.handle, generation=self._generation)

        return CapabilitySet(
            generation=self._generation,
            connection=channels[ChannelRole.CONNECTION],
            pump_duration=channels[ChannelRole.PUMP_DURATION],
            pump_ack=channels[ChannelRole.PUMP_ACK],
            rfid=channels[ChannelRole.RFID],
        )

    async def write(self, channel: Channel, payload: bytes, *, response: bool = True) -> None:
        client = self._require_client()
        characteristic = self._characteristic_for(channel)
        try:
            await client.write_gatt_char(characteristic, payload, response=response)
        except Exception as exc:
            if not client.is_connected:
                raise LinkClosed(f"Link to {self.device.address} closed during write: {exc}") from exc
            raise WriteRejected(f"BLE write to {channel.role.value} rejected: {exc}") from exc

    async def subscribe(self, channel: Channel, handler: NotificationHandler) -> None:
        client = self._require_client()
        characteristic = self._characteristic_for(channel)

        def _notify_handler(_: Any, data: bytearray) -> None:
            handler(bytes(data))

        try:
            await client.start_notify(characteristic, _notify_handler)
        except Exception as exc:
            raise CapabilityMissing(channel.uuid, f"Could not subscribe to {channel.role.value}: {exc}") from exc
        self._subscribed.append(characteristic)

    async def close(self) -> None:
        self._closing = True
        client = self._client
        self._client = None
        subscribed = self._subscribed
        self._subscribed = []
        self._characteristics = {}
        if client is None:
            return

        try:
            if client.is_connected:
                for characteristic in subscribed:
                    try:
                        await client.stop_notify(characteristic)
                    except Exception as exc:
                        LOGGER.debug("stop_notify failed during close: %s", exc)
        finally:
            try:
                await client.disconnect()
            except Exception as exc:
                LOGGER.debug("BLE disconnect raised during close: %s", exc)
        LOGGER.info("Closed link to %s", self.device.address)

    async def _abandon(self, client: Any) -> None:
        """Release a client whose connect attempt failed, possibly half-way."""
        self._closing = True
        try:
            await client.disconnect()
        except Exception as exc:
            LOGGER.debug("BLE disconnect raised after failed connect: %s", exc)

    def _handle_disconnect(self, _client: Any) -> None:
        if self._closing or self._lost_signalled:
            return
        self._lost_signalled = True
        self._characteristics = {}
        LOGGER.warning("BLE link to %s lost", self.device.address)
        self._on_link_lost(f"{self.device.address} disconnected")

    def _require_client(self) -> Any:
        if self._client is None or not self._client.is_connected:
            raise LinkClosed(f"Link to {self.device.address} is not open")
        return self._client

    def _characteristic_for(self, channel: Channel) -> Any:
        if channel.generation != self._generation:
            raise LinkClosed(
                f"Stale {channel.role.value} handle from link generation {channel.generation} "
                f"(current {self._generation})"
            )
        characteristic = self._characteristics.get(channel.role)
        if characteristic is None:
            raise LinkClosed(f"Channel {channel.role.value} is not available on this link")
        return characteristic


def bleak_link_factory(
    device: DetectedDevice,
    *,
    on_link_lost: LinkLostCallback,
    connect_timeout_s: float,
) -> BleakDeviceLink:
    return BleakDeviceLink(device, on_link_lost=on_link_lost, connect_timeout_s=connect_timeout_s)
