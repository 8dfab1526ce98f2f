"""Profile loading and validation for YAML-based peripheral profiles."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from rewardctl.core.errors import ProfileLoadError, ProfileValidationError
from rewardctl.core.model import ChannelRole, GattLayout, PeripheralIdentity, PeripheralProfile, TimingSpec

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_BLUETOOTH_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ProfileValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedProfiles:
    profiles: dict[str, PeripheralProfile]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("rewardctl.schemas").joinpath("profile.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _profile_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "rewardctl/profiles", xdg_data / "rewardctl/profiles"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProfileLoadError(f"Could not read profile file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ProfileValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ProfileValidationError(f"Profile file {path} must contain a mapping at root")
    return loaded


def normalize_uuid(value: str, *, context: str) -> str:
    """Return the lowercase 128-bit form of a 16-, 32- or 128-bit UUID string."""
    normalized = str(value).strip().lower()
    if normalized.startswith("0x"):
        normalized = normalized[2:]
    if not _UUID_RE.match(normalized):
        raise ProfileValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    if len(normalized) == 4:
        return f"0000{normalized}{_BLUETOOTH_BASE_UUID_SUFFIX}"
    if len(normalized) == 8:
        return f"{normalized}{_BLUETOOTH_BASE_UUID_SUFFIX}"
    return normalized


def _normalize_address_prefix(prefix: str) -> str:
    return prefix.strip().upper()


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise ProfileValidationError(f"{context} must be boolean true/false")


def _build_timing(doc: dict[str, Any], profile_id: str) -> TimingSpec:
    defaults = TimingSpec()
    timing = TimingSpec(
        keepalive_interval_s=float(doc.get("keepalive_interval_s", defaults.keepalive_interval_s)),
        keepalive_value=int(doc.get("keepalive_value", defaults.keepalive_value)),
        ack_timeout_s=float(doc.get("ack_timeout_s", defaults.ack_timeout_s)),
        connect_timeout_s=float(doc.get("connect_timeout_s", defaults.connect_timeout_s)),
        scan_timeout_s=float(doc.get("scan_timeout_s", defaults.scan_timeout_s)),
        reconnect_base_delay_s=float(doc.get("reconnect_base_delay_s", defaults.reconnect_base_delay_s)),
        reconnect_max_attempts=int(doc.get("reconnect_max_attempts", defaults.reconnect_max_attempts)),
    )
    if not 0 <= timing.keepalive_value <= 0xFFFF:
        raise ProfileValidationError(f"{profile_id}.timing.keepalive_value must fit in 16 bits")
    return timing


def _build_profile(doc: dict[str, Any], source: Path | Traversable) -> PeripheralProfile:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ProfileValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    profile_id = doc["id"]
    gatt = doc["gatt"]
    channels = {
        role: normalize_uuid(gatt["channels"][role.value], context=f"{profile_id}.gatt.channels.{role.value}")
        for role in ChannelRole
    }
    if len(set(channels.values())) != len(channels):
        raise ProfileValidationError(f"{profile_id}.gatt.channels must use distinct UUIDs")

    return PeripheralProfile(
        id=profile_id,
        name=doc["name"],
        identity=PeripheralIdentity(
            name_prefix=tuple(doc["match"].get("name_prefix", [])),
            address_prefix=tuple(_normalize_address_prefix(p) for p in doc["match"].get("address_prefix", [])),
        ),
        gatt=GattLayout(
            service_uuid=normalize_uuid(gatt["service_uuid"], context=f"{profile_id}.gatt.service_uuid"),
            channels=channels,
            write_with_response=_normalize_bool(
                gatt.get("write_with_response", True),
                context=f"{profile_id}.gatt.write_with_response",
            ),
        ),
        timing=_build_timing(doc.get("timing", {}), profile_id),
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("rewardctl.profiles")
    return [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _profile_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_profiles() -> LoadedProfiles:
    profiles: dict[str, PeripheralProfile] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_profile_paths(), key=lambda p: p.name):
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        profiles[profile.id] = profile

    for path in _iter_user_profile_paths():
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        if profile.id in profiles:
            warning = f"User profile '{profile.id}' overrides packaged profile"
            LOGGER.warning(warning)
            warnings.append(warning)
        profiles[profile.id] = profile

    return LoadedProfiles(profiles=profiles, warnings=tuple(warnings))
