import json
import subprocess

import pytest

from archcrypt import partitioning, pipeline, safety, system
from archcrypt.errors import (
    EncryptionSetupError,
    InsufficientSpaceError,
    MountError,
    NotConfirmedError,
    SystemSetupError,
    VolumeError,
    WrongPassphraseError,
)
from archcrypt.model import GIB, MIB, HomeSizing, InstallPlan, SystemSettings

LSBLK_IDLE = json.dumps({"blockdevices": [
    {"name": "sda", "path": "/dev/sda", "type": "disk", "mountpoints": [None]},
]})
PASS = "correct horse"


@pytest.fixture
def disk(fake_run, monkeypatch):
    monkeypatch.setattr(safety, "is_block_device", lambda path: True)
    monkeypatch.setattr(partitioning, "is_block_device", lambda path: True)
    fake_run.on(["lsblk", "-J"], out=LSBLK_IDLE)
    fake_run.on(["dmsetup", "info"], rc=1)
    fake_run.on(["cryptsetup", "open"], handler=lambda cmd, secret: (0, "", "") if secret == PASS else (2, "", "No key"))
    fake_run.on(["blkid", "-s", "UUID"], out="luks-uuid\n")
    # 40 GiB disk after the ESP and LUKS/LVM headers
    fake_run.on(["vgs"], out="  4194304 9979 9979\n")
    return fake_run


def _plan(**kw):
    kw.setdefault("device", "/dev/sda")
    return InstallPlan(**kw)


def test_provision_happy_path(disk):
    result = pipeline.provision(_plan(root_bytes=20 * GIB, home=HomeSizing.minus_reserve(256 * MIB)), PASS, "yes")

    assert [s.stage for s in result.stages] == [
        "validate", "partition", "luks_format", "luks_open", "volumes", "format", "mount",
    ]
    assert all(s.ok for s in result.stages)
    assert len(result.table.partitions) == 2
    assert result.volume.uuid == "luks-uuid"
    assert result.vg.lv("root").size_bytes == 20 * GIB
    assert result.vg.lv("home").extents == 9979 - 5120 - 64
    assert result.mounts.mounted_paths == ["/mnt", "/mnt/boot", "/mnt/home"]

    summary = result.summary()
    assert [m["target"] for m in summary["mounts"]] == ["/mnt", "/mnt/boot", "/mnt/home"]
    assert PASS not in json.dumps(summary)

    # the open mapping stays up for the install step; nothing was closed
    assert not [c for c in disk.commands("cryptsetup") if c[1] == "close"]


def test_stage_order_is_strict(disk):
    pipeline.provision(_plan(), PASS, "yes")
    first = {}
    for i, cmd in enumerate(disk.calls):
        first.setdefault(cmd[0], i)
    assert first["parted"] < first["cryptsetup"] < first["pvcreate"] < first["lvcreate"] < first["mkfs.fat"] < first["mount"]


def test_unconfirmed_run_touches_nothing(disk):
    with pytest.raises(NotConfirmedError):
        pipeline.provision(_plan(), PASS, "no")
    destructive = {"wipefs", "parted", "cryptsetup", "pvcreate", "mkfs.fat", "mount"}
    assert not destructive & {c[0] for c in disk.calls}


def test_wrong_passphrase_without_prompt(disk):
    disk.on(["cryptsetup", "open"], rc=2, err="No key available with this passphrase.")

    with pytest.raises(WrongPassphraseError):
        pipeline.provision(_plan(), PASS, "yes", ask=None)
    assert not disk.commands("pvcreate")
    assert not disk.commands("vgchange")


def test_wrong_passphrase_is_reprompted(disk):
    seen = []

    def first_open_fails(cmd, secret):
        seen.append(secret)
        return (2, "", "No key") if len(seen) == 1 else (0, "", "")

    disk.on(["cryptsetup", "open"], handler=first_open_fails)
    prompts = []
    result = pipeline.provision(_plan(), PASS, "yes", ask=lambda n: prompts.append(n) or "retyped")

    assert prompts == [0]
    assert seen == [PASS, "retyped"]
    assert result.volume.name == "cryptlvm"
    assert [s.stage for s in result.stages][-1] == "mount"


def test_insufficient_space_releases_mapping(disk):
    with pytest.raises(InsufficientSpaceError):
        pipeline.provision(_plan(root_bytes=60 * GIB), PASS, "yes")
    assert not disk.commands("lvcreate")
    assert ["vgchange", "-an", "archvg"] in disk.calls
    assert ["cryptsetup", "close", "cryptlvm"] in disk.calls


def test_mount_failure_unwinds_and_closes(disk):
    disk.on(["mount", "-t", "ext4", "/dev/archvg/home"], rc=32, err="bad superblock")

    with pytest.raises(MountError):
        pipeline.provision(_plan(), PASS, "yes")

    tail = disk.calls[-4:]
    assert tail == [
        ["umount", "/mnt/boot"],
        ["umount", "/mnt"],
        ["vgchange", "-an", "archvg"],
        ["cryptsetup", "close", "cryptlvm"],
    ]


def test_install_runs_system_steps_then_releases(disk, monkeypatch):
    steps = []
    monkeypatch.setattr(system, "pacstrap", lambda mnt: steps.append(("pacstrap", mnt)))
    monkeypatch.setattr(system, "genfstab", lambda mnt: steps.append(("genfstab", mnt)))
    monkeypatch.setattr(system, "configure",
                        lambda mnt, settings, vol, root: steps.append(("configure", settings.hostname, root.name)))
    monkeypatch.setattr(system, "set_password", lambda mnt, user, secret: steps.append(("password", user)))

    result = pipeline.install(_plan(), SystemSettings(hostname="sarchura"), PASS, "yes",
                              passwords={"root": "r00t", "screamnox": "pw"})

    assert steps == [
        ("pacstrap", "/mnt"),
        ("genfstab", "/mnt"),
        ("configure", "sarchura", "root"),
        ("password", "root"),
        ("password", "screamnox"),
    ]
    assert result.stages[-1].stage == "password:screamnox"
    assert disk.calls[-1] == ["cryptsetup", "close", "cryptlvm"]
    assert ["umount", "/mnt"] in disk.calls


def test_install_failure_still_releases(disk, monkeypatch):
    def broken(mnt):
        raise SystemSetupError("pacstrap failed", target="pacstrap")

    monkeypatch.setattr(system, "pacstrap", broken)
    with pytest.raises(SystemSetupError):
        pipeline.install(_plan(), SystemSettings(), PASS, "yes")
    assert ["cryptsetup", "close", "cryptlvm"] in disk.calls


def test_hung_lvm_tool_still_releases_mapping(disk):
    disk.on(["pvcreate"], raises=lambda cmd: subprocess.TimeoutExpired(cmd, 60.0))

    with pytest.raises(VolumeError) as info:
        pipeline.provision(_plan(), PASS, "yes")

    assert info.value.state["error"] == "TimeoutExpired"
    assert disk.calls[-2:] == [["vgchange", "-an", "archvg"], ["cryptsetup", "close", "cryptlvm"]]


def test_unexpected_error_after_open_still_releases(disk, monkeypatch):
    def broken(*args):
        raise RuntimeError("bug")

    monkeypatch.setattr(pipeline.mounts, "format_targets", broken)
    with pytest.raises(RuntimeError):
        pipeline.provision(_plan(), PASS, "yes")
    assert disk.calls[-1] == ["cryptsetup", "close", "cryptlvm"]


def test_timed_out_boot_mount_unwinds_and_closes(disk):
    disk.on(["mount", "-t", "vfat"], raises=lambda cmd: subprocess.TimeoutExpired(cmd, 60.0))

    with pytest.raises(MountError):
        pipeline.provision(_plan(), PASS, "yes")

    assert disk.calls[-3:] == [
        ["umount", "/mnt"],
        ["vgchange", "-an", "archvg"],
        ["cryptsetup", "close", "cryptlvm"],
    ]


def test_missing_luks_uuid_fails_the_open_stage(disk):
    disk.on(["blkid", "-s", "UUID"], out="")

    with pytest.raises(EncryptionSetupError, match="UUID") as info:
        pipeline.provision(_plan(), PASS, "yes")

    assert info.value.stage == "encrypt"
    assert not disk.commands("pvcreate")
    assert ["cryptsetup", "close", "cryptlvm"] in disk.calls
