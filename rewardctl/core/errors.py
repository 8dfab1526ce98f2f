"""Domain-specific errors for rewardctl."""


class RewardctlError(Exception):
    """Base error for rewardctl."""


class ProfileValidationError(RewardctlError):
    """Raised when a profile file does not conform to schema or semantics."""


class ProfileLoadError(RewardctlError):
    """Raised when loading profile sources fails."""


class ProfileResolutionError(RewardctlError):
    """Raised when a requested profile cannot be found."""


class DeviceSelectionError(RewardctlError):
    """Raised when scan results cannot be narrowed to a single peripheral."""


class InvalidTransition(RewardctlError):
    """Raised when the connection state machine is driven out of order."""


class LinkError(RewardctlError):
    """Base transport error."""


class TransportUnavailable(LinkError):
    """Raised when the BLE stack or adapter cannot be used."""


class DeviceNotFound(LinkError):
    """Raised when no matching peripheral is reachable."""


class HandshakeTimeout(LinkError):
    """Raised when connecting or discovering services takes too long."""


class CapabilityMissing(LinkError):
    """Raised when a required characteristic is absent on the peripheral."""

    def __init__(self, channel_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Required channel {channel_id} not found on peripheral")
        self.channel_id = channel_id


class WriteRejected(LinkError):
    """Raised when the peripheral or the stack refuses a write."""


class LinkClosed(LinkError):
    """Raised when writing through a closed link or a stale channel handle."""


class CodecError(RewardctlError):
    """Base wire-format error."""


class EncodingOverflow(CodecError):
    """Raised when a value does not fit in its fixed-width frame."""


class MalformedFrame(CodecError):
    """Raised when an inbound frame has an unexpected length."""


class ReconnectBudgetExhausted(RewardctlError):
    """Raised (and recorded) when every reconnect attempt has failed."""
