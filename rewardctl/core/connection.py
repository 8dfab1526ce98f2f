"""Connection lifecycle for one reward peripheral.

The manager is the single owner of :class:`ConnectionState`. Link callbacks,
the keepalive pinger, and failed writes only *signal* a lost link; every state
change goes through :meth:`ConnectionManager._transition`, and the slow parts
(pairing, reconnecting, closing) are serialized by one lifecycle lock so two
reconnect attempts can never overlap.

Reconnect policy: the first attempt runs immediately; after failed attempt
``k`` the manager waits ``base_delay * 2 ** (k - 1)`` seconds, until
``max_attempts`` attempts have failed and the state becomes ``FAILED``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from functools import partial

from rewardctl.core.device_match import apply_hint, matching_devices
from rewardctl.core.errors import (
    DeviceNotFound,
    DeviceSelectionError,
    HandshakeTimeout,
    InvalidTransition,
    LinkClosed,
    LinkError,
    ReconnectBudgetExhausted,
    RewardctlError,
)
from rewardctl.core.keepalive import KeepalivePinger
from rewardctl.core.model import (
    CapabilitySet,
    ChannelRole,
    ConnectionState,
    DetectedDevice,
    NotificationKind,
    PeripheralProfile,
    RetryBudget,
    StatusSnapshot,
)
from rewardctl.core.router import NotificationRouter
from rewardctl.transports.base import DeviceLink, LinkFactory, Scanner

LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[StatusSnapshot], None]

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.SCANNING}),
    ConnectionState.SCANNING: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.DISCOVERING_CAPABILITIES, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.DISCOVERING_CAPABILITIES: frozenset({ConnectionState.READY, ConnectionState.DISCONNECTED}),
    ConnectionState.READY: frozenset({ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED}),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.READY, ConnectionState.FAILED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.FAILED: frozenset(
        {ConnectionState.SCANNING, ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED}
    ),
}


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class ConnectionManager:
    def __init__(
        self,
        profile: PeripheralProfile,
        *,
        scanner: Scanner,
        link_factory: LinkFactory,
        router: NotificationRouter | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.profile = profile
        self._scanner = scanner
        self._link_factory = link_factory
        self._sleep = sleep
        self.router = router or NotificationRouter(clock=clock)
        self.router.set_update_callback(self._publish)

        self._state = ConnectionState.DISCONNECTED
        self._budget = RetryBudget(
            max_attempts=profile.timing.reconnect_max_attempts,
            base_delay_s=profile.timing.reconnect_base_delay_s,
        )
        self._device: DetectedDevice | None = None
        self._link: DeviceLink | None = None
        self._capabilities: CapabilitySet | None = None
        self._lifecycle_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._listeners: list[StatusListener] = []
        self._pinger = KeepalivePinger(
            write=partial(self.write, ChannelRole.CONNECTION),
            is_busy=self.is_busy,
            on_failure=self.signal_link_lost,
            interval_s=profile.timing.keepalive_interval_s,
            value=profile.timing.keepalive_value,
        )
        self.last_error: RewardctlError | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def device(self) -> DetectedDevice | None:
        return self._device

    @property
    def capabilities(self) -> CapabilitySet | None:
        return self._capabilities

    @property
    def budget(self) -> RetryBudget:
        return self._budget

    @property
    def keepalive_running(self) -> bool:
        return self._pinger.running

    def is_busy(self) -> bool:
        return self.router.pending is not None or self._write_lock.locked()

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def status(self) -> StatusSnapshot:
        return StatusSnapshot(
            state=self._state,
            last_ack_latency_ms=self.router.last_ack_latency_ms,
            last_rfid_tag=self.router.last_rfid_tag,
            retry_attempts_remaining=self._budget.remaining,
            device=self._device,
        )

    async def pair(self, device_hint: str | None = None) -> DetectedDevice:
        """Scan, connect and discover; raises to the operator on any failure."""
        async with self._lifecycle_lock:
            if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                raise InvalidTransition(f"Cannot pair while {self._state.value}")
            self.last_error = None
            self._transition(ConnectionState.SCANNING, "pair requested")
            try:
                device = await self._select_device(device_hint)
            except (RewardctlError, asyncio.CancelledError) as exc:
                self._transition(ConnectionState.DISCONNECTED, f"scan ended: {_describe(exc)}")
                raise

            self._device = device
            self._transition(ConnectionState.CONNECTING, f"selected {device.name} ({device.address})")
            try:
                link = await self._open_link(device)
            except (LinkError, asyncio.CancelledError) as exc:
                self._transition(ConnectionState.DISCONNECTED, f"connect failed: {_describe(exc)}")
                raise

            self._transition(ConnectionState.DISCOVERING_CAPABILITIES, "link open")
            try:
                await self._discover_capabilities(link)
            except (LinkError, asyncio.CancelledError) as exc:
                self._transition(ConnectionState.DISCONNECTED, f"discovery failed: {_describe(exc)}")
                raise

            self._enter_ready("paired")
            return device

    def signal_link_lost(self, reason: str) -> None:
        """Entry point for radio disconnects, keepalive failures and dead writes."""
        if self._state is not ConnectionState.READY:
            LOGGER.debug("Ignoring link-lost signal while %s: %s", self._state.value, reason)
            return
        self._transition(ConnectionState.RECONNECTING, reason)
        self._budget.reset()
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    def retry(self) -> None:
        """Operator retry after the reconnect budget ran out."""
        if self._state is not ConnectionState.FAILED:
            raise InvalidTransition(f"Retry is only possible from failed state, not {self._state.value}")
        if self._device is None:
            raise InvalidTransition("No paired device to retry; pair first")
        self.last_error = None
        self._budget.reset()
        self._transition(ConnectionState.RECONNECTING, "operator retry")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def wait_reconnected(self) -> ConnectionState:
        """Wait for an in-progress reconnect sequence to finish and return the state."""
        task = self._reconnect_task
        if task is not None:
            await asyncio.wait([task])
        return self._state

    async def write(self, role: ChannelRole, payload: bytes) -> None:
        capabilities = self._capabilities
        link = self._link
        if self._state is not ConnectionState.READY or capabilities is None or link is None:
            raise LinkClosed(f"Cannot write {role.value} while {self._state.value}")
        if not link.is_open:
            # The radio dropped before its disconnect callback reached us.
            self.signal_link_lost(f"link closed before {role.value} write")
            raise LinkClosed(f"Link is not open for {role.value} write")

        async with self._write_lock:
            if self._capabilities is not capabilities:
                raise LinkClosed(f"Link changed before {role.value} write")
            try:
                await link.write(
                    capabilities.channel(role),
                    payload,
                    response=self.profile.gatt.write_with_response,
                )
            except LinkClosed as exc:
                self.signal_link_lost(str(exc))
                raise

    async def close(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        async with self._lifecycle_lock:
            self._pinger.stop()
            await self._drop_link()
            if self._state is not ConnectionState.DISCONNECTED:
                self._transition(ConnectionState.DISCONNECTED, "closed by operator")

    def _transition(self, new_state: ConnectionState, reason: str = "") -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise InvalidTransition(f"Illegal transition {self._state.value} -> {new_state.value}")
        old_state = self._state
        self._state = new_state
        if old_state is ConnectionState.READY:
            # Handles die with the connection; drop them before anything can rediscover.
            self._pinger.stop()
            self._capabilities = None
        LOGGER.info("Connection %s -> %s%s", old_state.value, new_state.value, f" ({reason})" if reason else "")
        self._publish()

    def _enter_ready(self, reason: str) -> None:
        self._budget.reset()
        self._transition(ConnectionState.READY, reason)
        self._pinger.start()

    async def _reconnect(self) -> None:
        async with self._lifecycle_lock:
            await self._drop_link()
            budget = self._budget
            device = self._device
            if device is None:
                self.last_error = InvalidTransition("No paired device to reconnect to")
                LOGGER.error("%s", self.last_error)
                self._transition(ConnectionState.FAILED, str(self.last_error))
                return
            while self._state is ConnectionState.RECONNECTING:
                budget.attempts_made += 1
                LOGGER.info(
                    "Reconnect attempt %d/%d to %s",
                    budget.attempts_made,
                    budget.max_attempts,
                    device.address,
                )
                self._publish()
                try:
                    link = await self._open_link(device)
                    await self._discover_capabilities(link)
                except LinkError as exc:
                    LOGGER.warning("Reconnect attempt %d failed: %s", budget.attempts_made, exc)
                    if budget.exhausted:
                        self.last_error = ReconnectBudgetExhausted(
                            f"Could not reconnect to {device.address} after {budget.attempts_made} attempts"
                        )
                        LOGGER.error("%s", self.last_error)
                        self._transition(ConnectionState.FAILED, str(self.last_error))
                        return
                    delay = budget.record_failure()
                    LOGGER.warning("Retrying in %.1fs (%d tries left)", delay, budget.remaining)
                    await self._sleep(delay)
                    continue
                self._enter_ready(f"reconnected after {budget.attempts_made} attempt(s)")
                return

    async def _select_device(self, device_hint: str | None) -> DetectedDevice:
        identity = self.profile.identity
        devices = await self._scanner.discover(timeout_s=self.profile.timing.scan_timeout_s)
        candidates = apply_hint(matching_devices(devices, identity), device_hint)
        if not candidates:
            wanted = ", ".join(identity.name_prefix)
            suffix = f" and '{device_hint}'" if device_hint else ""
            raise DeviceNotFound(f"No peripheral found matching name prefix {wanted}{suffix}")
        if len(candidates) > 1:
            candidate_desc = ", ".join(f"{d.address} ({d.name})" for d in candidates)
            raise DeviceSelectionError(
                f"Multiple candidate peripherals found: {candidate_desc}. Use --device to choose one."
            )
        return candidates[0]

    async def _open_link(self, device: DetectedDevice) -> DeviceLink:
        link = self._link_factory(
            device,
            on_link_lost=self.signal_link_lost,
            connect_timeout_s=self.profile.timing.connect_timeout_s,
        )
        try:
            await link.open()
        except (LinkError, asyncio.CancelledError):
            await link.close()
            raise
        self._link = link
        return link

    async def _discover_capabilities(self, link: DeviceLink) -> CapabilitySet:
        try:
            capabilities = await asyncio.wait_for(
                self._discover_and_subscribe(link),
                timeout=self.profile.timing.connect_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            await self._drop_link()
            raise HandshakeTimeout(
                f"Capability discovery timed out after {self.profile.timing.connect_timeout_s}s"
            ) from exc
        except (LinkError, asyncio.CancelledError):
            await self._drop_link()
            raise
        self._capabilities = capabilities
        return capabilities

    async def _discover_and_subscribe(self, link: DeviceLink) -> CapabilitySet:
        gatt = self.profile.gatt
        capabilities = await link.discover(gatt.service_uuid, gatt.channels)
        await link.subscribe(capabilities.pump_ack, partial(self.router.dispatch, NotificationKind.PUMP_ACK))
        await link.subscribe(capabilities.rfid, partial(self.router.dispatch, NotificationKind.RFID_READ))
        LOGGER.info("Discovered channels on link generation %d", capabilities.generation)
        return capabilities

    async def _drop_link(self) -> None:
        link = self._link
        self._link = None
        self._capabilities = None
        if link is not None:
            await link.close()

    def _publish(self) -> None:
        snapshot = self.status()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                LOGGER.exception("Status listener failed")
