"""Stable public API for experiment code built on top of rewardctl.

This module is the supported integration surface for trial loops and status
displays. Avoid importing from private/internal modules unless intentionally
depending on non-stable internals.
"""

from __future__ import annotations

from dataclasses import dataclass

from rewardctl.core.errors import (
    CapabilityMissing,
    DeviceNotFound,
    DeviceSelectionError,
    EncodingOverflow,
    HandshakeTimeout,
    LinkClosed,
    LinkError,
    MalformedFrame,
    ProfileLoadError,
    ProfileResolutionError,
    ProfileValidationError,
    ReconnectBudgetExhausted,
    RewardctlError,
    TransportUnavailable,
    WriteRejected,
)
from rewardctl.core.model import (
    ConnectionState,
    DeliveryOutcome,
    DeliveryStatus,
    DetectedDevice,
    PeripheralProfile,
    RfidRead,
    StatusSnapshot,
)
from rewardctl.core.connection import StatusListener
from rewardctl.core.router import RfidListener
from rewardctl.core.service import RewardService
from rewardctl.transports.base import LinkFactory, Scanner

__all__ = [
    "RewardctlError",
    "ProfileLoadError",
    "ProfileResolutionError",
    "ProfileValidationError",
    "DeviceSelectionError",
    "LinkError",
    "TransportUnavailable",
    "DeviceNotFound",
    "HandshakeTimeout",
    "CapabilityMissing",
    "WriteRejected",
    "LinkClosed",
    "EncodingOverflow",
    "MalformedFrame",
    "ReconnectBudgetExhausted",
    "ConnectionState",
    "DeliveryOutcome",
    "DeliveryStatus",
    "DetectedDevice",
    "PeripheralProfile",
    "RfidRead",
    "StatusSnapshot",
    "PairingResult",
    "RewardClient",
]


@dataclass(frozen=True)
class PairingResult:
    """Device and profile the client is now connected to."""

    device: DetectedDevice
    profile: PeripheralProfile


class RewardClient:
    """Public client for driving the reward peripheral from a trial loop.

    A `RewardClient` wraps profile loading, pairing, reconnection and the
    single-slot reward command behind a stable async API. ``deliver_reward``
    never raises for hardware problems; inspect the returned outcome instead.
    """

    def __init__(
        self,
        profile_id: str | None = None,
        *,
        scanner: Scanner | None = None,
        link_factory: LinkFactory | None = None,
    ) -> None:
        self._service = RewardService(profile_id, scanner=scanner, link_factory=link_factory)

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def runtime_warnings(self) -> tuple[str, ...]:
        return self._service.runtime_warnings

    @property
    def state(self) -> ConnectionState:
        return self._service.state

    def list_profiles(self) -> list[PeripheralProfile]:
        return self._service.list_profiles()

    def status(self) -> StatusSnapshot:
        return self._service.status()

    def on_status(self, listener: StatusListener) -> None:
        self._service.add_status_listener(listener)

    def on_rfid(self, listener: RfidListener) -> None:
        self._service.add_rfid_listener(listener)

    async def pair(self, *, device_hint: str | None = None) -> PairingResult:
        device = await self._service.pair(device_hint)
        return PairingResult(device=device, profile=self._service.profile)

    def retry(self) -> None:
        self._service.retry()

    async def deliver_reward(self, duration_ms: int) -> DeliveryOutcome:
        return await self._service.deliver_reward(duration_ms)

    async def deliver_rewards(self, duration_ms: int, count: int, *, gap_s: float = 0.0) -> list[DeliveryOutcome]:
        return await self._service.deliver_rewards(duration_ms, count, gap_s=gap_s)

    async def close(self) -> None:
        await self._service.close()

    async def __aenter__(self) -> RewardClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
