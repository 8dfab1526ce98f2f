"""Scan-result-to-profile matching logic."""

from __future__ import annotations

from collections.abc import Iterable

from rewardctl.core.model import DetectedDevice, PeripheralIdentity


def _address_prefix_match(address: str, identity: PeripheralIdentity) -> bool:
    upper_address = address.upper()
    return any(upper_address.startswith(prefix) for prefix in identity.address_prefix)


def _name_prefix_match(name: str, identity: PeripheralIdentity) -> bool:
    return any(name.startswith(prefix) for prefix in identity.name_prefix)


def match_score(device: DetectedDevice, identity: PeripheralIdentity) -> int:
    address_match = _address_prefix_match(device.address, identity)
    name_match = _name_prefix_match(device.name, identity)
    if address_match and name_match:
        return 3
    if name_match:
        return 2
    if address_match:
        return 1
    return 0


def matching_devices(devices: Iterable[DetectedDevice], identity: PeripheralIdentity) -> list[DetectedDevice]:
    """Return matching devices, best score first, keeping scan order within a score."""
    scored = [(match_score(device, identity), index, device) for index, device in enumerate(devices)]
    return [device for score, _, device in sorted(scored, key=lambda s: (-s[0], s[1])) if score > 0]


def apply_hint(devices: list[DetectedDevice], hint: str | None) -> list[DetectedDevice]:
    if not hint:
        return devices
    lowered = hint.lower()
    return [
        d
        for d in devices
        if lowered in d.address.lower() or lowered in d.name.lower()
    ]
