"""Dispatch of inbound pump-ack and RFID notifications."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from rewardctl.core.codec import decode_notification
from rewardctl.core.errors import MalformedFrame
from rewardctl.core.model import NotificationEvent, NotificationKind, PendingCommand, RfidRead

LOGGER = logging.getLogger(__name__)

RfidListener = Callable[[RfidRead], None]


class NotificationRouter:
    """Owns the single pending-command slot and correlates acks to it.

    The protocol carries no correlation id, so an ack always belongs to the
    most recently issued command, and only while that command's deadline has
    not passed.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_update: Callable[[], None] | None = None,
    ) -> None:
        self._clock = clock
        self._on_update = on_update
        self._pending: PendingCommand | None = None
        self._waiter: asyncio.Future[float] | None = None
        self._last_rfid_at: float | None = None
        self._rfid_listeners: list[RfidListener] = []
        self.last_ack_latency_ms: float | None = None
        self.last_rfid_tag: str | None = None

    @property
    def pending(self) -> PendingCommand | None:
        return self._pending

    def now(self) -> float:
        return self._clock()

    def set_update_callback(self, callback: Callable[[], None] | None) -> None:
        self._on_update = callback

    def add_rfid_listener(self, listener: RfidListener) -> None:
        self._rfid_listeners.append(listener)

    def arm(self, duration_ms: int, timeout_s: float) -> tuple[PendingCommand, asyncio.Future[float]]:
        """Open the pending slot; the returned future resolves to the ack latency in ms."""
        if self._pending is not None:
            raise RuntimeError("A reward command is already pending")
        issued_at = self._clock()
        command = PendingCommand(
            duration_ms=duration_ms,
            issued_at=issued_at,
            correlation_deadline=issued_at + timeout_s,
        )
        self._pending = command
        self._waiter = asyncio.get_running_loop().create_future()
        return command, self._waiter

    def disarm(self, command: PendingCommand) -> None:
        """Drop ``command`` if it is still the pending one. Late acks are discarded afterwards."""
        if self._pending is not command:
            return
        waiter = self._waiter
        self._pending = None
        self._waiter = None
        if waiter is not None and not waiter.done():
            waiter.cancel()

    def dispatch(self, kind: NotificationKind, data: bytes) -> None:
        received_at = self._clock()
        try:
            event = decode_notification(kind, data, received_at)
        except MalformedFrame as exc:
            LOGGER.warning("Dropping malformed frame: %s", exc)
            return

        if event.kind is NotificationKind.PUMP_ACK:
            self._on_pump_ack(event)
        else:
            self._on_rfid(event)

    def _on_pump_ack(self, event: NotificationEvent) -> None:
        command = self._pending
        if command is None:
            LOGGER.info("Discarding unmatched pump ack %s", event.hex)
            return
        if event.received_at > command.correlation_deadline:
            LOGGER.info(
                "Discarding pump ack %s received after the %d ms command expired",
                event.hex,
                command.duration_ms,
            )
            return

        latency_ms = (event.received_at - command.issued_at) * 1000.0
        waiter = self._waiter
        self._pending = None
        self._waiter = None
        self.last_ack_latency_ms = latency_ms
        LOGGER.info("Pump ack %s for %d ms reward, latency %.0f ms", event.hex, command.duration_ms, latency_ms)
        if waiter is not None and not waiter.done():
            waiter.set_result(latency_ms)
        self._notify_update()

    def _on_rfid(self, event: NotificationEvent) -> None:
        previous = self._last_rfid_at
        self._last_rfid_at = event.received_at
        interval_ms = None if previous is None else (event.received_at - previous) * 1000.0
        read = RfidRead(tag=event.payload, interval_ms=interval_ms, received_at=event.received_at)
        self.last_rfid_tag = read.tag_hex
        if interval_ms is None:
            LOGGER.info("RFID tag %s", read.tag_hex)
        else:
            LOGGER.info("RFID tag %s, interval %.0f ms", read.tag_hex, interval_ms)

        for listener in list(self._rfid_listeners):
            try:
                listener(read)
            except Exception:
                LOGGER.exception("RFID listener failed")
        self._notify_update()

    def _notify_update(self) -> None:
        if self._on_update is not None:
            self._on_update()
