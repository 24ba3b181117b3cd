"""Build an InstallPlan and SystemSettings from CLI flags and an optional JSON file."""
from __future__ import annotations

import json
import os
import re
from typing import Any, Dict, Optional

from .errors import ConfigError
from .model import GIB, MIB, HomeSizing, InstallPlan, SystemSettings

_UNITS = {
    "": 1,
    "b": 1,
    "k": 1024,
    "m": MIB,
    "g": GIB,
    "t": 1024 * GIB,
}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)(?:i?b)?\s*$", re.I)

PLAN_KEYS = ("device", "esp_size", "root_size", "home_reserve", "vg", "mapper",
             "mount_root", "luks_label")
SETTINGS_KEYS = ("hostname", "timezone", "locale", "keymap", "font", "username")


def parse_size(value: Any) -> int:
    """Parse ``20G``, ``256MiB``, ``1g`` or a plain byte count; units are binary."""

    if isinstance(value, bool):
        raise ConfigError(f"invalid size {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ConfigError(f"size must not be negative: {value}")
        return value
    m = _SIZE_RE.match(str(value))
    if not m:
        raise ConfigError(f"invalid size {value!r}")
    number, unit = m.groups()
    return int(float(number) * _UNITS[unit.lower()])


def load_config_file(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(os.path.expanduser(path), "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file {path} not found", target=path) from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"config file {path} is not valid JSON: {exc}", target=path) from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must hold a JSON object", target=path)
    unknown = sorted(set(data) - set(PLAN_KEYS) - set(SETTINGS_KEYS))
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}", target=path)
    return data


def _merged(args: Any, config: Dict[str, Any], keys) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for key in keys:
        cli_value = getattr(args, key, None)
        if cli_value is not None:
            merged[key] = cli_value
        elif config.get(key) is not None:
            merged[key] = config[key]
    return merged


def plan_from_args(args: Any, config: Optional[Dict[str, Any]] = None) -> InstallPlan:
    values = _merged(args, config or {}, PLAN_KEYS)
    if "device" not in values:
        raise ConfigError("no target device given")
    kwargs: Dict[str, Any] = {"device": values["device"]}
    if "esp_size" in values:
        kwargs["esp_bytes"] = parse_size(values["esp_size"])
    if "root_size" in values:
        kwargs["root_bytes"] = parse_size(values["root_size"])
    if "home_reserve" in values:
        kwargs["home"] = HomeSizing.minus_reserve(parse_size(values["home_reserve"]))
    for key, field in (("vg", "vg_name"), ("mapper", "mapper_name"),
                       ("mount_root", "mount_root"), ("luks_label", "luks_label")):
        if key in values:
            kwargs[field] = values[key]
    return InstallPlan(**kwargs)


def settings_from_args(args: Any, config: Optional[Dict[str, Any]] = None) -> SystemSettings:
    return SystemSettings(**_merged(args, config or {}, SETTINGS_KEYS))


def read_secret_file(path: str) -> str:
    """Read a secret, dropping only the trailing newline an editor adds."""

    try:
        with open(os.path.expanduser(path), "r", encoding="utf-8") as fh:
            secret = fh.read()
    except OSError as exc:
        raise ConfigError(f"cannot read secret file {path}: {exc.strerror}", target=path) from exc
    secret = secret.rstrip("\r\n")
    if not secret:
        raise ConfigError(f"secret file {path} is empty", target=path)
    return secret
