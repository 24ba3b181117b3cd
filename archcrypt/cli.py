"""CLI entrypoint for the encrypted Arch installer."""

from __future__ import annotations

import argparse
import getpass
import json
import sys
import time
from dataclasses import asdict
from typing import Any, Dict, Optional

from . import pipeline, preflight, safety
from .config import load_config_file, plan_from_args, read_secret_file, settings_from_args
from .errors import (
    AlreadyMountedError,
    ConfigError,
    DeviceNotFoundError,
    EncryptionSetupError,
    FormatError,
    InsufficientSpaceError,
    MountError,
    NotConfirmedError,
    PartitioningError,
    PreflightError,
    ProvisionError,
    SystemSetupError,
    VolumeError,
    WrongPassphraseError,
)
from .executil import append_jsonl, resolve_log_path, trace
from .model import MIB, Flags, InstallPlan
from .mounts import ESP_OPTIONS
from .partitioning import layout_for

RESULT_CODES: Dict[str, int] = {
    "PLAN_OK": 0,
    "PROVISION_OK": 0,
    "INSTALL_OK": 0,
    "FAIL_CONFIG": 2,
    "FAIL_NOT_CONFIRMED": 2,
    "FAIL_DEVICE_BUSY": 2,
    "FAIL_PREFLIGHT": 3,
    "FAIL_PARTITIONING": 4,
    "FAIL_LUKS": 5,
    "FAIL_WRONG_PASSPHRASE": 5,
    "FAIL_LVM": 6,
    "FAIL_INSUFFICIENT_SPACE": 6,
    "FAIL_MKFS": 7,
    "FAIL_MOUNT": 7,
    "FAIL_SYSTEM": 8,
    "FAIL_GENERIC": 9,
    "FAIL_UNHANDLED": 12,
    "FAIL_INVALID_DEVICE": 13,
}

ERROR_KINDS = {
    DeviceNotFoundError: "FAIL_INVALID_DEVICE",
    AlreadyMountedError: "FAIL_DEVICE_BUSY",
    NotConfirmedError: "FAIL_NOT_CONFIRMED",
    PreflightError: "FAIL_PREFLIGHT",
    PartitioningError: "FAIL_PARTITIONING",
    WrongPassphraseError: "FAIL_WRONG_PASSPHRASE",
    EncryptionSetupError: "FAIL_LUKS",
    InsufficientSpaceError: "FAIL_INSUFFICIENT_SPACE",
    VolumeError: "FAIL_LVM",
    FormatError: "FAIL_MKFS",
    MountError: "FAIL_MOUNT",
    SystemSetupError: "FAIL_SYSTEM",
    ConfigError: "FAIL_CONFIG",
}

PASSPHRASE_ATTEMPTS = 3
CLI_START_MONO = time.perf_counter()


def result_kind_for(exc: BaseException) -> str:
    for cls in type(exc).__mro__:
        if cls in ERROR_KINDS:
            return ERROR_KINDS[cls]
    if isinstance(exc, ProvisionError):
        return "FAIL_GENERIC"
    return "FAIL_UNHANDLED"


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None, exit_code: Optional[int] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _error_payload(exc: ProvisionError) -> Dict[str, Any]:
    extra: Dict[str, Any] = {"stage": exc.stage, "why": str(exc)}
    if exc.target:
        extra["target"] = exc.target
    if exc.state:
        extra["state"] = exc.state
    return extra


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="archcrypt", description="Install Arch Linux on LUKS-encrypted LVM")
    parser.add_argument("device", nargs="?")
    parser.add_argument("--config", default=None, help="JSON file with plan/system settings")
    parser.add_argument("--esp-size", dest="esp_size", default=None)
    parser.add_argument("--root-size", dest="root_size", default=None)
    parser.add_argument("--home-reserve", dest="home_reserve", default=None,
                        help="space left free in the VG after home (0 = use all)")
    parser.add_argument("--vg", default=None)
    parser.add_argument("--mapper", default=None)
    parser.add_argument("--mount-root", dest="mount_root", default=None)
    parser.add_argument("--luks-label", dest="luks_label", default=None)
    parser.add_argument("--passphrase-file", default=None)
    parser.add_argument("--hostname", default=None)
    parser.add_argument("--timezone", default=None)
    parser.add_argument("--locale", default=None)
    parser.add_argument("--keymap", default=None)
    parser.add_argument("--font", default=None)
    parser.add_argument("--username", default=None)
    parser.add_argument("--user-password-file", default=None)
    parser.add_argument("--root-password-file", default=None)
    parser.add_argument("--plan", action="store_true", help="print the plan and exit")
    parser.add_argument("--provision-only", action="store_true",
                        help="stop after the disk is mounted under the mount root")
    parser.add_argument("--skip-preflight", action="store_true")
    parser.add_argument("--yes", dest="assume_yes", action="store_true")
    return parser


def plan_payload(plan: InstallPlan) -> Dict[str, Any]:
    table = layout_for(plan)
    return {
        "device": plan.device,
        "vg": plan.vg_name,
        "mapper": plan.mapper_name,
        "root_mib": plan.root_bytes // MIB,
        "home_policy": plan.home.describe(),
        "partitions": table.as_dict()["partitions"],
        "mounts": [
            {"mountpoint": "/", "source": f"/dev/{plan.vg_name}/root", "fstype": plan.root_fstype},
            {"mountpoint": "/boot", "source": table.esp.path, "fstype": plan.esp_fstype,
             "options": list(ESP_OPTIONS)},
            {"mountpoint": "/home", "source": f"/dev/{plan.vg_name}/home", "fstype": plan.home_fstype},
        ],
        "mount_root": plan.mount_root,
    }


def _confirmation(device: str, assume_yes: bool) -> Optional[str]:
    if assume_yes:
        return "yes"
    if not sys.stdin.isatty():
        return None
    print(f"WARNING: this will completely wipe {device}!", file=sys.stderr)
    return input("Are you sure you want to continue? (yes/no): ")


def _passphrase(path: Optional[str]) -> str:
    if path:
        return read_secret_file(path)
    if not sys.stdin.isatty():
        raise ConfigError("no --passphrase-file given and stdin is not a terminal")
    first = getpass.getpass("Disk encryption passphrase: ")
    second = getpass.getpass("Repeat passphrase: ")
    if not first or first != second:
        raise ConfigError("passphrases are empty or do not match")
    return first


def _reprompt(device: str):
    if not sys.stdin.isatty():
        return None

    def ask(attempt: int) -> str:
        return getpass.getpass(f"Passphrase rejected; passphrase for {device} ({attempt + 1}/{PASSPHRASE_ATTEMPTS}): ")

    return ask


def _passwords(args: argparse.Namespace, username: Optional[str]) -> Dict[str, str]:
    passwords: Dict[str, str] = {}
    if args.root_password_file:
        passwords["root"] = read_secret_file(args.root_password_file)
    if args.user_password_file:
        if not username:
            raise ConfigError("--user-password-file needs --username")
        passwords[username] = read_secret_file(args.user_password_file)
    return passwords


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    flags = Flags(
        plan=args.plan,
        assume_yes=args.assume_yes,
        provision_only=args.provision_only,
        skip_preflight=args.skip_preflight,
    )
    try:
        config = load_config_file(args.config)
        plan = plan_from_args(args, config)
        settings = settings_from_args(args, config)
    except ConfigError as exc:
        _emit_result("FAIL_CONFIG", extra=_error_payload(exc))

    trace("cli.args", device=plan.device, flags=asdict(flags))

    if flags.plan:
        _emit_result("PLAN_OK", extra={"plan": plan_payload(plan), "system": asdict(settings)})

    try:
        if not flags.skip_preflight:
            preflight.run_preflight(network=not flags.provision_only)
        confirmation = _confirmation(plan.device, flags.assume_yes)
        if not safety.is_affirmative(confirmation):
            raise NotConfirmedError(
                f"refusing to wipe {plan.device} without an explicit 'yes'",
                target=plan.device,
            )
        passphrase = _passphrase(args.passphrase_file)
        passwords = _passwords(args, settings.username)
        ask = _reprompt(plan.device)
        if flags.provision_only:
            result = pipeline.provision(plan, passphrase, confirmation, ask=ask)
            kind = "PROVISION_OK"
        else:
            result = pipeline.install(plan, settings, passphrase, confirmation, ask=ask, passwords=passwords)
            kind = "INSTALL_OK"
    except ProvisionError as exc:
        _emit_result(result_kind_for(exc), extra=_error_payload(exc))

    _emit_result(kind, extra=result.summary())
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except KeyboardInterrupt:
        _emit_result("FAIL_GENERIC", extra={"why": "interrupted"}, exit_code=130)
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc), "type": type(exc).__name__})
    return 0


if __name__ == "__main__":
    sys.exit(main())
