"""Bootstrap the base system and configure it inside arch-chroot."""
from __future__ import annotations

import os
from typing import Sequence

from . import boot_plumbing
from .errors import SystemSetupError
from .executil import TOOL_ERRORS, describe_failure, failure_state, info, run
from .model import EncryptedVolume, LogicalVolume, SystemSettings

# the minimum the LUKS-on-LVM layout needs to boot and be administered
BASE_PACKAGES = ("base", "linux", "linux-firmware", "lvm2", "sudo", "networkmanager")


def _step(name: str, cmd: Sequence[str], timeout: float = 600.0, input: str | None = None):
    try:
        return run(cmd, check=True, timeout=timeout, input=input, retry_on_timeout=False)
    except TOOL_ERRORS as exc:
        raise SystemSetupError(
            f"{name} failed: {describe_failure(exc)}",
            target=name,
            state=failure_state(exc),
        ) from exc


def chroot(mnt: str, *cmd: str, name: str | None = None, timeout: float = 600.0, input: str | None = None):
    return _step(name or cmd[0], ["arch-chroot", mnt, *cmd], timeout=timeout, input=input)


def pacstrap(mnt: str, packages: Sequence[str] = BASE_PACKAGES):
    _step("pacstrap", ["pacstrap", "-K", mnt, *packages], timeout=3600.0)
    info("system.pacstrap", mnt=mnt, packages=list(packages))


def genfstab(mnt: str) -> str:
    res = _step("genfstab", ["genfstab", "-U", mnt])
    return boot_plumbing.append_fstab(mnt, res.out or "")


def set_timezone(mnt: str, timezone: str):
    zone = os.path.join("/usr/share/zoneinfo", timezone)
    if not os.path.exists(os.path.join(mnt, zone.lstrip("/"))):
        raise SystemSetupError(f"unknown timezone {timezone!r}", target=timezone)
    chroot(mnt, "ln", "-sf", zone, "/etc/localtime", name="timezone")
    chroot(mnt, "hwclock", "--systohc", name="hwclock")


def configure(
    mnt: str,
    settings: SystemSettings,
    volume: EncryptedVolume,
    root_lv: LogicalVolume,
) -> dict:
    """Configure the bootstrapped system; returns the files written."""

    set_timezone(mnt, settings.timezone)
    written = boot_plumbing.write_locale(mnt, settings.locale, settings.keymap, settings.font)
    chroot(mnt, "locale-gen")
    written.append(boot_plumbing.write_hostname(mnt, settings.hostname))
    chroot(mnt, "systemctl", "enable", "NetworkManager", name="networkmanager")

    written.append(boot_plumbing.write_mkinitcpio_hooks(mnt, settings.hooks))
    chroot(mnt, "bootctl", "install", name="bootctl")
    chroot(mnt, "bootctl", "update", name="bootctl-update")
    entry = boot_plumbing.LoaderEntry(
        luks_uuid=volume.uuid,
        mapper_name=volume.name,
        root_device=root_lv.path,
    )
    written.append(boot_plumbing.write_loader_entry(mnt, entry))
    written.append(boot_plumbing.write_loader_conf(mnt))
    chroot(mnt, "mkinitcpio", "-P", timeout=1200.0)

    if settings.username:
        chroot(mnt, "useradd", "-m", "-G", "wheel", settings.username, name="useradd")
        written.append(boot_plumbing.enable_wheel_sudo(mnt))
    info("system.configured", mnt=mnt, hostname=settings.hostname, files=written)
    return {"files": written, "loader_entry": entry.render()}


def set_password(mnt: str, user: str, secret: str):
    if not secret:
        raise SystemSetupError(f"empty password for {user}", target=user)
    chroot(mnt, "chpasswd", name=f"chpasswd:{user}", input=f"{user}:{secret}\n")
