"""Ordered provisioning stages and their unwind."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import luks_lvm, mounts, partitioning, safety, system
from .errors import WrongPassphraseError
from .executil import error, info, trace
from .model import EncryptedVolume, InstallPlan, MountPlan, PartitionTable, SystemSettings, VolumeGroup

Ask = Callable[[int], str]


@dataclass
class StageResult:
    stage: str
    ok: bool
    duration: float
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProvisionResult:
    plan: InstallPlan
    table: Optional[PartitionTable] = None
    volume: Optional[EncryptedVolume] = None
    vg: Optional[VolumeGroup] = None
    mount_plan: Optional[MountPlan] = None
    mounts: Optional[mounts.MountSet] = None
    stages: List[StageResult] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "device": self.plan.device,
            "stages": [{"stage": s.stage, "ok": s.ok, "ms": int(s.duration * 1000)} for s in self.stages],
        }
        if self.table:
            out["partitions"] = self.table.as_dict()["partitions"]
        if self.volume:
            out["luks"] = {"name": self.volume.name, "uuid": self.volume.uuid}
        if self.vg:
            out["volumes"] = {lv.name: lv.size_bytes for lv in self.vg.volumes}
        if self.mount_plan:
            out["mounts"] = [
                {"source": e.source, "target": e.target(self.mount_plan.mount_root)}
                for e in self.mount_plan.entries
            ]
        return out


def _stage(result: ProvisionResult, name: str, fn: Callable[[], Any]):
    started = time.monotonic()
    trace("pipeline.stage.start", stage=name)
    try:
        value = fn()
    except Exception as exc:
        target = getattr(exc, "target", None)
        result.stages.append(StageResult(name, False, time.monotonic() - started,
                                         {"error": str(exc), "target": target}))
        error("pipeline.stage.failed", stage=name, error=str(exc), target=target,
              kind=type(exc).__name__)
        raise
    result.stages.append(StageResult(name, True, time.monotonic() - started))
    info("pipeline.stage.done", stage=name)
    return value


def _open(partition: str, plan: InstallPlan, passphrase: str, ask: Optional[Ask]) -> EncryptedVolume:
    try:
        return luks_lvm.open_luks(partition, plan.mapper_name, passphrase)
    except WrongPassphraseError:
        if ask is None:
            raise
        return luks_lvm.open_with_prompt(partition, plan.mapper_name, ask)


def release(result: ProvisionResult) -> Dict[str, Any]:
    """Undo what this run holds open: its own mounts, the VG and the mapping."""

    released: Dict[str, Any] = {}
    if result.mounts is not None:
        released["stuck_mounts"] = mounts.unmount_tracked(result.mounts)
    if result.volume is not None:
        released["vg_deactivated"] = luks_lvm.deactivate_vg(result.plan.vg_name)
        released["luks_closed"] = luks_lvm.close_luks(result.volume.name)
    trace("pipeline.released", **released)
    return released


def provision(
    plan: InstallPlan,
    passphrase: str,
    confirmation: Optional[str],
    ask: Optional[Ask] = None,
    reenumerate_timeout: float = partitioning.REENUMERATE_TIMEOUT,
) -> ProvisionResult:
    """Validate, partition, encrypt, build LVM, format and mount.

    Any failure aborts the run.  Reversible state created so far (mounts,
    the active VG, the open mapping) is released before the error
    propagates; the partition table and LUKS header are left as they are.
    """

    result = ProvisionResult(plan=plan)
    _stage(result, "validate", lambda: safety.validate_target(plan.device, confirmation))
    result.table = _stage(result, "partition",
                          lambda: partitioning.apply_layout(plan, timeout=reenumerate_timeout))
    trace("pipeline.layout", table=partitioning.verify_layout(plan.device))

    lvm_part = result.table.lvm.path
    _stage(result, "luks_format", lambda: luks_lvm.format_luks(lvm_part, passphrase, plan.luks_label))
    result.volume = _stage(result, "luks_open", lambda: _open(lvm_part, plan, passphrase, ask))
    try:
        result.vg = _stage(result, "volumes",
                           lambda: luks_lvm.create_volumes(result.volume.mapper_path, plan))
        _stage(result, "format", lambda: mounts.format_targets(plan, result.table, result.vg))
        result.mount_plan = mounts.build_mount_plan(plan, result.table, result.vg)
        result.mounts = _stage(result, "mount", lambda: mounts.mount_plan(result.mount_plan))
    except BaseException:
        release(result)
        raise
    return result


def install(
    plan: InstallPlan,
    settings: SystemSettings,
    passphrase: str,
    confirmation: Optional[str],
    ask: Optional[Ask] = None,
    passwords: Optional[Dict[str, str]] = None,
) -> ProvisionResult:
    """Provision the disk, then bootstrap and configure Arch inside it."""

    result = provision(plan, passphrase, confirmation, ask=ask)
    mnt = plan.mount_root
    try:
        _stage(result, "pacstrap", lambda: system.pacstrap(mnt))
        _stage(result, "genfstab", lambda: system.genfstab(mnt))
        _stage(result, "configure",
               lambda: system.configure(mnt, settings, result.volume, result.vg.lv(luks_lvm.ROOT_LV)))
        for user, secret in (passwords or {}).items():
            _stage(result, f"password:{user}", lambda u=user, s=secret: system.set_password(mnt, u, s))
    finally:
        release(result)
    return result
