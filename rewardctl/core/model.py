"""Core data models used across loader, connection manager, service, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING_CAPABILITIES = "discovering_capabilities"
    READY = "ready"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ChannelRole(str, Enum):
    CONNECTION = "connection"
    PUMP_DURATION = "pump_duration"
    PUMP_ACK = "pump_ack"
    RFID = "rfid"


class NotificationKind(str, Enum):
    PUMP_ACK = "pump_ack"
    RFID_READ = "rfid_read"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    TIMED_OUT = "timed_out"
    NOT_CONNECTED = "not_connected"
    BUSY = "busy"
    WRITE_FAILED = "write_failed"
    INVALID_DURATION = "invalid_duration"


@dataclass(frozen=True)
class PeripheralIdentity:
    name_prefix: tuple[str, ...]
    address_prefix: tuple[str, ...] = ()


@dataclass(frozen=True)
class GattLayout:
    service_uuid: str
    channels: dict[ChannelRole, str]
    write_with_response: bool = True


@dataclass(frozen=True)
class TimingSpec:
    keepalive_interval_s: float = 5.0
    keepalive_value: int = 200
    ack_timeout_s: float = 2.0
    connect_timeout_s: float = 10.0
    scan_timeout_s: float = 5.0
    reconnect_base_delay_s: float = 2.0
    reconnect_max_attempts: int = 100


@dataclass(frozen=True)
class PeripheralProfile:
    id: str
    name: str
    identity: PeripheralIdentity
    gatt: GattLayout
    timing: TimingSpec = field(default_factory=TimingSpec)


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str


@dataclass(frozen=True)
class Channel:
    role: ChannelRole
    uuid: str
    handle: int
    generation: int


@dataclass(frozen=True)
class CapabilitySet:
    """The four characteristics of one connection.

    Handles are only valid for the connection that produced them; the link
    refuses any channel whose ``generation`` is not its current one.
    """

    generation: int
    connection: Channel
    pump_duration: Channel
    pump_ack: Channel
    rfid: Channel

    def channel(self, role: ChannelRole) -> Channel:
        return {
            ChannelRole.CONNECTION: self.connection,
            ChannelRole.PUMP_DURATION: self.pump_duration,
            ChannelRole.PUMP_ACK: self.pump_ack,
            ChannelRole.RFID: self.rfid,
        }[role]


@dataclass(frozen=True)
class PendingCommand:
    duration_ms: int
    issued_at: float
    correlation_deadline: float


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    payload: bytes
    received_at: float

    @property
    def hex(self) -> str:
        return self.payload.hex()


@dataclass(frozen=True)
class RfidRead:
    tag: bytes
    interval_ms: float | None
    received_at: float

    @property
    def tag_hex(self) -> str:
        return self.tag.hex()


@dataclass
class RetryBudget:
    max_attempts: int
    base_delay_s: float
    attempts_made: int = 0
    next_delay_s: float = 0.0

    def __post_init__(self) -> None:
        self.next_delay_s = self.base_delay_s

    @property
    def remaining(self) -> int:
        return max(self.max_attempts - self.attempts_made, 0)

    @property
    def exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts

    def record_failure(self) -> float:
        """Return the delay to wait before the next attempt and double it."""
        delay = self.next_delay_s
        self.next_delay_s *= 2
        return delay

    def reset(self) -> None:
        self.attempts_made = 0
        self.next_delay_s = self.base_delay_s


@dataclass(frozen=True)
class DeliveryOutcome:
    status: DeliveryStatus
    duration_ms: int
    latency_ms: float | None = None
    detail: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED


@dataclass(frozen=True)
class StatusSnapshot:
    state: ConnectionState
    last_ack_latency_ms: float | None
    last_rfid_tag: str | None
    retry_attempts_remaining: int
    device: DetectedDevice | None = None
