"""LUKS container and LVM layout on top of it."""

from __future__ import annotations

import math
from typing import Callable

from .devices import uuid_of
from .errors import EncryptionSetupError, InsufficientSpaceError, VolumeError, WrongPassphraseError
from .executil import TOOL_ERRORS, describe_failure, failure_state, info, run, trace, udev_settle, warn
from .model import EncryptedVolume, HomeMode, HomeSizing, InstallPlan, LogicalVolume, VolumeGroup

ROOT_LV = "root"
HOME_LV = "home"

# cryptsetup(8) exit status for "no permission (bad passphrase)"
CRYPTSETUP_EPERM = 2


def _require_passphrase(passphrase: str | None, target: str):
    if not passphrase:
        raise EncryptionSetupError("an encryption passphrase is required", target=target)


def format_luks(partition: str, passphrase: str, label: str = "archcrypt"):
    _require_passphrase(passphrase, partition)
    cmd = [
        "cryptsetup", "-q", "--batch-mode", "luksFormat",
        "--type", "luks2", "--label", label,
        "--key-file", "-", partition,
    ]
    try:
        run(cmd, check=True, input=passphrase, timeout=360.0, retry_on_timeout=False)
    except TOOL_ERRORS as exc:
        raise EncryptionSetupError(
            f"luksFormat on {partition} failed: {describe_failure(exc)}",
            target=partition,
            state=failure_state(exc),
        ) from exc
    udev_settle()
    info("luks.formatted", partition=partition, label=label)


def mapping_exists(name: str) -> bool:
    return run(["dmsetup", "info", name], check=False).rc == 0


def close_luks(name: str) -> bool:
    try:
        res = run(["cryptsetup", "close", name], check=False, timeout=60.0)
    except TOOL_ERRORS as exc:
        warn("luks.close_failed", name=name, error=describe_failure(exc))
        return False
    if res.rc != 0:
        warn("luks.close_failed", name=name, rc=res.rc)
    return res.rc == 0


def _close_leftover(name: str):
    try:
        leftover = mapping_exists(name)
    except TOOL_ERRORS:
        leftover = True
    if leftover:
        close_luks(name)


def _luks_uuid(partition: str) -> str:
    try:
        uuid = uuid_of(partition)
        if not uuid:
            uuid = (run(["cryptsetup", "luksUUID", partition], check=False).out or "").strip()
    except TOOL_ERRORS as exc:
        warn("luks.uuid_failed", partition=partition, error=describe_failure(exc))
        return ""
    return uuid


def open_luks(partition: str, name: str, passphrase: str) -> EncryptedVolume:
    _require_passphrase(passphrase, partition)
    try:
        busy = mapping_exists(name)
    except TOOL_ERRORS as exc:
        raise EncryptionSetupError(
            f"cannot query mapping {name}: {describe_failure(exc)}",
            target=name,
            state=failure_state(exc),
        ) from exc
    if busy:
        raise EncryptionSetupError(
            f"mapping {name} already exists; close it before provisioning",
            target=name,
        )
    cmd = ["cryptsetup", "open", "--type", "luks", "--key-file", "-", partition, name]
    try:
        res = run(cmd, check=False, input=passphrase, timeout=120.0, retry_on_timeout=False)
    except TOOL_ERRORS as exc:
        _close_leftover(name)
        raise EncryptionSetupError(
            f"opening {partition} as {name} failed: {describe_failure(exc)}",
            target=partition,
            state=failure_state(exc),
        ) from exc
    if res.rc != 0:
        _close_leftover(name)
        if res.rc == CRYPTSETUP_EPERM:
            raise WrongPassphraseError(f"wrong passphrase for {partition}", target=partition)
        raise EncryptionSetupError(
            f"opening {partition} as {name} failed: {(res.err or '').strip() or f'exit status {res.rc}'}",
            target=partition,
            state={"rc": res.rc},
        )
    udev_settle()
    uuid = _luks_uuid(partition)
    if not uuid:
        close_luks(name)
        raise EncryptionSetupError(
            f"could not read the LUKS UUID of {partition}",
            target=partition,
        )
    vol = EncryptedVolume(partition=partition, name=name, uuid=uuid)
    info("luks.opened", partition=partition, name=name, uuid=vol.uuid)
    return vol


def open_with_prompt(
    partition: str,
    name: str,
    ask: Callable[[int], str],
    attempts: int = 3,
) -> EncryptedVolume:
    """Open ``partition``, asking for a fresh passphrase on every attempt.

    ``ask`` receives the zero-based attempt number.  Only a rejected
    passphrase leads to another prompt; any other failure propagates.
    """

    last: WrongPassphraseError | None = None
    for attempt in range(max(1, attempts)):
        try:
            return open_luks(partition, name, ask(attempt))
        except WrongPassphraseError as exc:
            trace("luks.open_rejected", partition=partition, attempt=attempt + 1)
            last = exc
    raise last


def plan_extents(free_extents: int, extent_size: int, root_bytes: int, home: HomeSizing) -> tuple[int, int]:
    """Split ``free_extents`` into ``(root, home)`` extent counts.

    Root is rounded up to whole extents and always allocated first; home
    takes what is left, less the reserve when one is configured.
    """

    if extent_size <= 0:
        raise VolumeError(f"invalid extent size {extent_size}")
    root = math.ceil(root_bytes / extent_size)
    if root > free_extents:
        raise InsufficientSpaceError(
            f"root needs {root} extents but only {free_extents} are free",
            target=ROOT_LV,
            state={"requested": root, "free": free_extents, "extent_size": extent_size},
        )
    remaining = free_extents - root
    reserve = 0
    if home.mode is HomeMode.FULL_MINUS_RESERVE:
        reserve = math.ceil(home.reserve_bytes / extent_size)
    home_extents = remaining - reserve
    if home_extents <= 0:
        raise InsufficientSpaceError(
            f"no space left for home ({remaining} extents after root, reserve {reserve})",
            target=HOME_LV,
            state={"remaining": remaining, "reserve": reserve, "extent_size": extent_size},
        )
    return root, home_extents


def vg_extents(vg: str) -> tuple[int, int, int]:
    """Return ``(extent_size, total_extents, free_extents)`` for ``vg``."""

    res = run(
        ["vgs", "--noheadings", "--units", "b", "--nosuffix", "-o",
         "vg_extent_size,vg_extent_count,vg_free_count", vg],
        check=True,
    )
    fields = (res.out or "").split()
    if len(fields) != 3:
        raise VolumeError(f"unexpected vgs output for {vg}: {res.out!r}", target=vg)
    size, total, free = (int(float(f)) for f in fields)
    return size, total, free


def create_volumes(mapper_path: str, plan: InstallPlan) -> VolumeGroup:
    vg = plan.vg_name
    try:
        run(["pvcreate", "-y", mapper_path], check=True)
        run(["vgcreate", "-y", vg, mapper_path], check=True)
        extent_size, total, free = vg_extents(vg)
        root_ext, home_ext = plan_extents(free, extent_size, plan.root_bytes, plan.home)
        run(["lvcreate", "-y", "-W", "y", "-l", str(root_ext), "-n", ROOT_LV, vg], check=True)
        run(["lvcreate", "-y", "-W", "y", "-l", str(home_ext), "-n", HOME_LV, vg], check=True)
    except TOOL_ERRORS as exc:
        raise VolumeError(
            f"LVM setup on {mapper_path} failed: {describe_failure(exc)}",
            target=vg,
            state=failure_state(exc),
        ) from exc
    udev_settle()
    group = VolumeGroup(
        name=vg,
        pv=mapper_path,
        extent_size=extent_size,
        total_extents=total,
        free_extents=free - root_ext - home_ext,
        volumes=(
            LogicalVolume(vg, ROOT_LV, root_ext, extent_size),
            LogicalVolume(vg, HOME_LV, home_ext, extent_size),
        ),
    )
    info("lvm.created", vg=vg, extent_size=extent_size, root_extents=root_ext,
         home_extents=home_ext, home_policy=plan.home.describe())
    return group


def deactivate_vg(vg: str) -> bool:
    try:
        res = run(["vgchange", "-an", vg], check=False, timeout=60.0)
    except TOOL_ERRORS as exc:
        warn("lvm.deactivate_failed", vg=vg, error=describe_failure(exc))
        return False
    return res.rc == 0
