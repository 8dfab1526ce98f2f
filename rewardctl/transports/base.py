"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Protocol

from rewardctl.core.model import CapabilitySet, Channel, ChannelRole, DetectedDevice

NotificationHandler = Callable[[bytes], None]
LinkLostCallback = Callable[[str], None]


class DeviceLink(Protocol):
    """One transport-level connection to one peripheral.

    ``on_link_lost`` (given to the factory) must be called exactly once per
    unexpected disconnect and never for an explicit ``close()``.
    """

    @property
    def is_open(self) -> bool: ...

    async def open(self) -> None:
        """Connect; raises TransportUnavailable, DeviceNotFound or HandshakeTimeout."""

    async def discover(self, service_uuid: str, channel_uuids: Mapping[ChannelRole, str]) -> CapabilitySet:
        """Resolve all channels for this connection; raises CapabilityMissing."""

    async def write(self, channel: Channel, payload: bytes, *, response: bool = True) -> None:
        """Write to a channel; raises WriteRejected or LinkClosed."""

    async def subscribe(self, channel: Channel, handler: NotificationHandler) -> None:
        """Invoke ``handler`` with every notification until ``close()``."""

    async def close(self) -> None:
        """Tear down subscriptions and release the transport. Idempotent."""


class LinkFactory(Protocol):
    def __call__(
        self,
        device: DetectedDevice,
        *,
        on_link_lost: LinkLostCallback,
        connect_timeout_s: float,
    ) -> DeviceLink: ...


class Scanner(Protocol):
    async def discover(self, *, timeout_s: float) -> list[DetectedDevice]:
        """Return devices currently advertising."""
