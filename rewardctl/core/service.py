"""Service layer used by the trial loop, CLI and future UI frontends."""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import time
from collections.abc import Awaitable, Callable

from rewardctl.core.codec import encode_duration
from rewardctl.core.connection import ConnectionManager, StatusListener
from rewardctl.core.device_match import match_score
from rewardctl.core.errors import EncodingOverflow, LinkError, ProfileResolutionError
from rewardctl.core.model import (
    ChannelRole,
    ConnectionState,
    DeliveryOutcome,
    DeliveryStatus,
    DetectedDevice,
    PeripheralProfile,
    StatusSnapshot,
)
from rewardctl.core.profile_loader import load_profiles
from rewardctl.core.router import NotificationRouter, RfidListener
from rewardctl.transports.base import LinkFactory, Scanner
from rewardctl.transports.ble_gatt import BleakPeripheralScanner, bleak_link_factory

LOGGER = logging.getLogger(__name__)
DEFAULT_PROFILE_ID = "blenano_pump_rfid"


class RewardService:
    def __init__(
        self,
        profile_id: str | None = None,
        *,
        scanner: Scanner | None = None,
        link_factory: LinkFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        loaded = load_profiles()
        self.profiles = loaded.profiles
        self.load_warnings = loaded.warnings
        self.runtime_warnings = _runtime_warnings()
        self.profile = self.resolve_profile(profile_id)
        self.scanner = scanner or BleakPeripheralScanner()
        self.router = NotificationRouter(clock=clock)
        self.manager = ConnectionManager(
            self.profile,
            scanner=self.scanner,
            link_factory=link_factory or bleak_link_factory,
            router=self.router,
            clock=clock,
            sleep=sleep,
        )

    def list_profiles(self) -> list[PeripheralProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.id)

    def resolve_profile(self, profile_id: str | None) -> PeripheralProfile:
        if profile_id:
            profile = self.profiles.get(profile_id)
            if profile is None:
                available = ", ".join(sorted(self.profiles))
                raise ProfileResolutionError(f"Unknown profile '{profile_id}'. Available: {available}")
            return profile
        if DEFAULT_PROFILE_ID in self.profiles:
            return self.profiles[DEFAULT_PROFILE_ID]
        if len(self.profiles) == 1:
            return next(iter(self.profiles.values()))
        raise ProfileResolutionError("No default profile available. Use --profile to choose one.")

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    def status(self) -> StatusSnapshot:
        return self.manager.status()

    def add_status_listener(self, listener: StatusListener) -> None:
        self.manager.add_status_listener(listener)

    def add_rfid_listener(self, listener: RfidListener) -> None:
        self.router.add_rfid_listener(listener)

    async def scan(self) -> list[tuple[DetectedDevice, bool]]:
        """Return nearby devices with whether each matches the active profile."""
        devices = await self.scanner.discover(timeout_s=self.profile.timing.scan_timeout_s)
        return [(device, match_score(device, self.profile.identity) > 0) for device in devices]

    async def pair(self, device_hint: str | None = None) -> DetectedDevice:
        return await self.manager.pair(device_hint)

    def retry(self) -> None:
        self.manager.retry()

    async def close(self) -> None:
        await self.manager.close()

    async def deliver_reward(self, duration_ms: int) -> DeliveryOutcome:
        """Pulse the pump for ``duration_ms`` and wait for its acknowledgment.

        Never raises for command-level failures: the outcome's status says
        whether the reward was confirmed. A timed-out command is not retried.
        """
        if self.manager.state is not ConnectionState.READY:
            LOGGER.warning("Reward of %s ms not sent: peripheral %s", duration_ms, self.manager.state.value)
            return DeliveryOutcome(DeliveryStatus.NOT_CONNECTED, duration_ms, detail=self.manager.state.value)

        pending = self.router.pending
        if pending is not None:
            LOGGER.warning("Reward of %s ms rejected: %d ms reward still pending", duration_ms, pending.duration_ms)
            return DeliveryOutcome(
                DeliveryStatus.BUSY,
                duration_ms,
                detail=f"{pending.duration_ms} ms reward pending",
            )

        try:
            frame = encode_duration(duration_ms)
        except EncodingOverflow as exc:
            LOGGER.warning("Reward rejected: %s", exc)
            return DeliveryOutcome(DeliveryStatus.INVALID_DURATION, duration_ms, detail=str(exc))

        timeout_s = self.profile.timing.ack_timeout_s
        command, waiter = self.router.arm(duration_ms, timeout_s)
        written = False

        async def _write_then_wait() -> float:
            nonlocal written
            await self.manager.write(ChannelRole.PUMP_DURATION, frame)
            written = True
            LOGGER.info("Wrote pump duration %d ms (%s)", duration_ms, frame.hex())
            return await waiter

        # The deadline covers waiting for the write lock, the write itself and the ack.
        remaining_s = max(command.correlation_deadline - self.router.now(), 0.0)
        try:
            latency_ms = await asyncio.wait_for(_write_then_wait(), timeout=remaining_s)
        except LinkError as exc:
            LOGGER.warning("Could not write pump duration %d ms: %s", duration_ms, exc)
            return DeliveryOutcome(DeliveryStatus.WRITE_FAILED, duration_ms, detail=str(exc))
        except asyncio.TimeoutError:
            if written:
                detail = f"no acknowledgment within {timeout_s}s"
            else:
                detail = f"pump duration write did not complete within {timeout_s}s"
            LOGGER.warning("Reward of %d ms timed out: %s", duration_ms, detail)
            return DeliveryOutcome(DeliveryStatus.TIMED_OUT, duration_ms, detail=detail)
        finally:
            self.router.disarm(command)
        return DeliveryOutcome(DeliveryStatus.DELIVERED, duration_ms, latency_ms=latency_ms)

    async def deliver_rewards(self, duration_ms: int, count: int, *, gap_s: float = 0.0) -> list[DeliveryOutcome]:
        """Deliver ``count`` pulses in sequence, stopping at the first one not delivered."""
        outcomes: list[DeliveryOutcome] = []
        for index in range(count):
            if index and gap_s > 0:
                await asyncio.sleep(gap_s)
            outcome = await self.deliver_reward(duration_ms)
            outcomes.append(outcome)
            if not outcome.delivered:
                break
        return outcomes


def _runtime_warnings() -> tuple[str, ...]:
    warnings: list[str] = []
    if importlib.util.find_spec("bleak") is None:
        warnings.append("Python environment is missing 'bleak'; BLE pairing and rewards will fail.")
    return tuple(warnings)
