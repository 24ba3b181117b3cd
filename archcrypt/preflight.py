"""Live-environment checks run before any disk is touched."""
from __future__ import annotations

import os

from .errors import PreflightError
from .executil import TOOL_ERRORS, describe_failure, run, trace, warn

EFI_DIR = "/sys/firmware/efi"


def require_root():
    if os.geteuid() != 0:
        raise PreflightError("archcrypt must be run as root")


def require_uefi(efi_dir: str = EFI_DIR) -> int | None:
    if not os.path.isdir(efi_dir):
        raise PreflightError("UEFI boot mode required (no /sys/firmware/efi)")
    size_path = os.path.join(efi_dir, "fw_platform_size")
    try:
        with open(size_path, "r", encoding="utf-8") as fh:
            size = int(fh.read().strip())
    except (OSError, ValueError):
        size = None
    if size != 64:
        warn("preflight.uefi_not_64bit", fw_platform_size=size)
    return size


def check_network(host: str = "archlinux.org"):
    try:
        ok = run(["ping", "-c", "3", host], check=False, timeout=30.0).rc == 0
    except TOOL_ERRORS as exc:
        warn("preflight.ping_failed", host=host, error=describe_failure(exc))
        ok = False
    if not ok:
        raise PreflightError(f"no network connectivity to {host}", target=host)


def sync_clock():
    try:
        res = run(["timedatectl", "set-ntp", "true"], check=False)
    except TOOL_ERRORS as exc:
        warn("preflight.ntp_failed", error=describe_failure(exc))
        return
    trace("preflight.ntp", rc=res.rc)


def run_preflight(network: bool = True) -> dict:
    require_root()
    platform = require_uefi()
    if network:
        check_network()
    sync_clock()
    return {"uefi_platform_size": platform, "network": network}
