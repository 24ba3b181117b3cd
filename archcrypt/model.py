from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import ConfigError

MIB = 1024 * 1024
GIB = 1024 * MIB

# GPT alignment gap in front of partition 1
ALIGN_MIB = 1

_LVM_NAME_RE = re.compile(r"^[A-Za-z0-9+_.][A-Za-z0-9+_.-]*$")


class HomeMode(str, Enum):
    FULL = "full"
    FULL_MINUS_RESERVE = "full_minus_reserve"


@dataclass(frozen=True)
class HomeSizing:
    mode: HomeMode = HomeMode.FULL
    reserve_bytes: int = 0

    @classmethod
    def full(cls) -> "HomeSizing":
        return cls(HomeMode.FULL, 0)

    @classmethod
    def minus_reserve(cls, reserve_bytes: int) -> "HomeSizing":
        if reserve_bytes <= 0:
            return cls.full()
        return cls(HomeMode.FULL_MINUS_RESERVE, reserve_bytes)

    def describe(self) -> str:
        if self.mode is HomeMode.FULL:
            return "100%FREE"
        return f"100%FREE-{self.reserve_bytes // MIB}MiB"


@dataclass(frozen=True)
class InstallPlan:
    device: str
    root_bytes: int = 20 * GIB
    home: HomeSizing = field(default_factory=lambda: HomeSizing.minus_reserve(256 * MIB))
    esp_bytes: int = 1 * GIB
    vg_name: str = "archvg"
    mapper_name: str = "cryptlvm"
    luks_label: str = "archcrypt"
    mount_root: str = "/mnt"
    esp_fstype: str = "vfat"
    root_fstype: str = "ext4"
    home_fstype: str = "ext4"

    def __post_init__(self):
        if not self.device.startswith("/dev/"):
            raise ConfigError(f"device must be a /dev path, got {self.device!r}", target=self.device)
        if self.esp_bytes <= 0 or self.esp_bytes % MIB:
            raise ConfigError("ESP size must be a positive whole number of MiB", target=self.device)
        if self.root_bytes <= 0:
            raise ConfigError("root size must be positive", target=self.device)
        for label, name in (("volume group", self.vg_name), ("mapper", self.mapper_name)):
            if not _LVM_NAME_RE.match(name):
                raise ConfigError(f"invalid {label} name {name!r}", target=name)
        if not posixpath.isabs(self.mount_root):
            raise ConfigError(f"mount root must be absolute, got {self.mount_root!r}")

    @property
    def esp_mib(self) -> int:
        return self.esp_bytes // MIB

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.mapper_name}"


class PartitionRole(str, Enum):
    ESP = "esp"
    LVM = "lvm"


@dataclass(frozen=True)
class Partition:
    index: int
    role: PartitionRole
    path: str
    start_mib: int
    end_mib: Optional[int]
    flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class PartitionTable:
    device: str
    partitions: tuple[Partition, ...]

    @property
    def esp(self) -> Partition:
        return self.partitions[0]

    @property
    def lvm(self) -> Partition:
        return self.partitions[1]

    def as_dict(self) -> dict:
        return {
            "device": self.device,
            "partitions": [
                {
                    "index": p.index,
                    "role": p.role.value,
                    "path": p.path,
                    "start_mib": p.start_mib,
                    "end_mib": p.end_mib,
                    "flags": list(p.flags),
                }
                for p in self.partitions
            ],
        }


@dataclass(frozen=True)
class EncryptedVolume:
    partition: str
    name: str
    uuid: str = ""

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.name}"


@dataclass(frozen=True)
class LogicalVolume:
    vg: str
    name: str
    extents: int
    extent_size: int

    @property
    def path(self) -> str:
        return f"/dev/{self.vg}/{self.name}"

    @property
    def size_bytes(self) -> int:
        return self.extents * self.extent_size


@dataclass(frozen=True)
class VolumeGroup:
    name: str
    pv: str
    extent_size: int
    total_extents: int
    free_extents: int
    volumes: tuple[LogicalVolume, ...] = ()

    def lv(self, name: str) -> LogicalVolume:
        for vol in self.volumes:
            if vol.name == name:
                return vol
        raise KeyError(name)


@dataclass(frozen=True)
class MountEntry:
    source: str
    mountpoint: str
    fstype: str
    options: tuple[str, ...] = ()

    @property
    def depth(self) -> int:
        return len([p for p in self.mountpoint.split("/") if p])

    def target(self, mount_root: str) -> str:
        rel = self.mountpoint.lstrip("/")
        return posixpath.join(mount_root, rel) if rel else mount_root


@dataclass(frozen=True)
class MountPlan:
    mount_root: str
    entries: tuple[MountEntry, ...]

    def __post_init__(self):
        # parents before children, whatever order the entries came in
        ordered = tuple(sorted(self.entries, key=lambda e: (e.depth, e.mountpoint)))
        object.__setattr__(self, "entries", ordered)


@dataclass(frozen=True)
class SystemSettings:
    hostname: str = "archlinux"
    timezone: str = "UTC"
    locale: str = "en_US.UTF-8"
    keymap: str = "us"
    font: Optional[str] = None
    username: Optional[str] = None
    hooks: tuple[str, ...] = (
        "base", "systemd", "autodetect", "microcode", "modconf", "kms", "keyboard",
        "sd-vconsole", "block", "sd-encrypt", "lvm2", "filesystems", "fsck",
    )


@dataclass
class Flags:
    plan: bool = False
    assume_yes: bool = False
    provision_only: bool = False
    skip_preflight: bool = False
