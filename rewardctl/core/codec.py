"""Fixed-width frames exchanged with the pump peripheral."""

from __future__ import annotations

from rewardctl.core.errors import EncodingOverflow, MalformedFrame
from rewardctl.core.model import NotificationEvent, NotificationKind

DURATION_FRAME_BYTES = 2
PUMP_ACK_BYTES = 4
RFID_TAG_BYTES = 13
MAX_DURATION_MS = 0xFFFF

# Pump firmware reads the high byte first.
_BYTE_ORDER = "big"

_NOTIFICATION_SIZES = {
    NotificationKind.PUMP_ACK: PUMP_ACK_BYTES,
    NotificationKind.RFID_READ: RFID_TAG_BYTES,
}


def encode_duration(ms: int) -> bytes:
    if isinstance(ms, bool) or not isinstance(ms, int):
        raise EncodingOverflow(f"Duration must be an integer number of milliseconds, got {ms!r}")
    if ms < 0 or ms > MAX_DURATION_MS:
        raise EncodingOverflow(f"Duration {ms} ms does not fit in {DURATION_FRAME_BYTES} bytes (0..{MAX_DURATION_MS})")
    return ms.to_bytes(DURATION_FRAME_BYTES, _BYTE_ORDER)


def decode_duration(frame: bytes) -> int:
    if len(frame) != DURATION_FRAME_BYTES:
        raise MalformedFrame(f"Duration frame must be {DURATION_FRAME_BYTES} bytes, got {len(frame)}")
    return int.from_bytes(frame, _BYTE_ORDER)


def encode_keepalive(value: int) -> bytes:
    """Keepalive frames share the duration layout but go to the connection channel."""
    return encode_duration(value)


def decode_notification(kind: NotificationKind, data: bytes, received_at: float) -> NotificationEvent:
    expected = _NOTIFICATION_SIZES[kind]
    payload = bytes(data)
    if len(payload) != expected:
        raise MalformedFrame(
            f"{kind.value} notification must be {expected} bytes, got {len(payload)} ({payload.hex() or '<empty>'})"
        )
    return NotificationEvent(kind=kind, payload=payload, received_at=received_at)
