"""Filesystem creation and the mount hierarchy under the install root."""
from __future__ import annotations

from .devices import fs_type
from .errors import FormatError, MountError
from .executil import TOOL_ERRORS, describe_failure, failure_state, info, run, trace, udev_settle, warn
from .luks_lvm import HOME_LV, ROOT_LV
from .model import InstallPlan, MountEntry, MountPlan, PartitionTable, VolumeGroup

ESP_OPTIONS = ("umask=0077",)

FS_LABELS = {
    "esp": "EFI",
    ROOT_LV: "root",
    HOME_LV: "home",
}


class MountSet:
    """Mounts performed by this run, in the order they happened."""

    def __init__(self, mount_root: str):
        self.mount_root = mount_root
        self.mounted_paths: list[str] = []


def build_mount_plan(plan: InstallPlan, table: PartitionTable, vg: VolumeGroup) -> MountPlan:
    entries = [
        MountEntry(vg.lv(HOME_LV).path, "/home", plan.home_fstype),
        MountEntry(table.esp.path, "/boot", plan.esp_fstype, ESP_OPTIONS),
        MountEntry(vg.lv(ROOT_LV).path, "/", plan.root_fstype),
    ]
    return MountPlan(mount_root=plan.mount_root, entries=tuple(entries))


def mkfs_command(fstype: str, device: str, label: str | None = None) -> list[str]:
    if fstype in ("vfat", "fat32"):
        args = ["mkfs.fat", "-F", "32"]
        if label:
            args += ["-n", label]
    elif fstype.startswith("ext"):
        args = [f"mkfs.{fstype}", "-F"]
        if label:
            args += ["-L", label]
    else:
        args = [f"mkfs.{fstype}"]
        if label:
            args += ["-L", label]
    return args + [device]


def format_target(device: str, fstype: str, label: str | None = None):
    try:
        existing = fs_type(device)
    except TOOL_ERRORS as exc:
        raise FormatError(
            f"cannot probe {device}: {describe_failure(exc)}",
            target=device,
            state=failure_state(exc),
        ) from exc
    if existing:
        raise FormatError(
            f"{device} already carries a {existing} filesystem; refusing to format it again",
            target=device,
            state={"existing": existing},
        )
    try:
        run(mkfs_command(fstype, device, label), check=True, timeout=360.0, retry_on_timeout=False)
    except TOOL_ERRORS as exc:
        raise FormatError(
            f"mkfs.{fstype} on {device} failed: {describe_failure(exc)}",
            target=device,
            state={**failure_state(exc), "fstype": fstype},
        ) from exc
    trace("mounts.formatted", device=device, fstype=fstype, label=label)


def format_targets(plan: InstallPlan, table: PartitionTable, vg: VolumeGroup) -> list[str]:
    targets = [
        (table.esp.path, plan.esp_fstype, FS_LABELS["esp"]),
        (vg.lv(ROOT_LV).path, plan.root_fstype, FS_LABELS[ROOT_LV]),
        (vg.lv(HOME_LV).path, plan.home_fstype, FS_LABELS[HOME_LV]),
    ]
    for device, fstype, label in targets:
        format_target(device, fstype, label)
    udev_settle()
    return [t[0] for t in targets]


def _mount(entry: MountEntry, target: str):
    run(["mkdir", "-p", target], check=True)
    cmd = ["mount", "-t", entry.fstype]
    if entry.options:
        cmd += ["-o", ",".join(entry.options)]
    cmd += [entry.source, target]
    run(cmd, check=True)


def mount_plan(mplan: MountPlan) -> MountSet:
    """Mount every entry in order.

    A failure unmounts what this call already mounted, newest first, and
    then raises ``MountError`` naming the entry that failed.
    """

    ms = MountSet(mplan.mount_root)
    for entry in mplan.entries:
        target = entry.target(mplan.mount_root)
        try:
            _mount(entry, target)
        except TOOL_ERRORS as exc:
            unwound = list(ms.mounted_paths)
            unmount_tracked(ms)
            raise MountError(
                f"mounting {entry.source} on {target} failed: {describe_failure(exc)}",
                target=entry.source,
                state={"mountpoint": target, "unwound": unwound[::-1]},
            ) from exc
        ms.mounted_paths.append(target)
        info("mounts.mounted", source=entry.source, target=target)
    return ms


def _umount(*args: str) -> bool:
    try:
        return run(["umount", *args], check=False).rc == 0
    except TOOL_ERRORS as exc:
        warn("mounts.umount_error", args=list(args), error=describe_failure(exc))
        return False


def unmount_tracked(ms: MountSet) -> list[str]:
    """Unmount only what ``ms`` recorded, in reverse; returns paths that stuck."""

    stuck: list[str] = []
    while ms.mounted_paths:
        path = ms.mounted_paths.pop()
        if not _umount(path) and not _umount("-l", path):
            warn("mounts.umount_failed", path=path)
            stuck.append(path)
    return stuck
