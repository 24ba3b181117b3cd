"""Render and write configuration files under the target root."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import SystemSetupError


@dataclass(frozen=True)
class LoaderEntry:
    luks_uuid: str
    mapper_name: str
    root_device: str
    title: str = "Arch Linux"
    kernel: str = "linux"
    extra_options: tuple[str, ...] = ("rw",)

    def render(self) -> str:
        options = [f"rd.luks.name={self.luks_uuid}={self.mapper_name}", f"root={self.root_device}"]
        options += list(self.extra_options)
        lines = [
            f"title {self.title}",
            f"linux /vmlinuz-{self.kernel}",
            f"initrd /initramfs-{self.kernel}.img",
            "options " + " ".join(options),
        ]
        return "\n".join(lines) + "\n"


def _target(mnt: str, rel: str) -> str:
    return os.path.join(mnt, rel.lstrip("/"))


def _write(path: str, data: str, mode: Optional[int] = None):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    if mode is not None:
        os.chmod(path, mode)


def _read(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return ""


def write_loader_entry(mnt: str, entry: LoaderEntry, name: str = "arch.conf") -> str:
    path = _target(mnt, f"boot/loader/entries/{name}")
    if not entry.luks_uuid:
        raise SystemSetupError("loader entry needs the LUKS UUID", target=path)
    _write(path, entry.render())
    return path


def write_loader_conf(mnt: str, default: str = "arch.conf", timeout: int = 3) -> str:
    path = _target(mnt, "boot/loader/loader.conf")
    _write(path, f"default {default}\ntimeout {timeout}\neditor no\n")
    return path


def enable_locale(text: str, locale: str) -> str:
    """Uncomment ``locale`` in a locale.gen body, appending it when absent."""

    charset = locale.split(".", 1)[1] if "." in locale else "UTF-8"
    wanted = f"{locale} {charset}"
    pattern = re.compile(r"^#\s*" + re.escape(wanted) + r"\s*$", re.M)
    if re.search(r"^" + re.escape(wanted) + r"\s*$", text, re.M):
        return text
    if pattern.search(text):
        return pattern.sub(wanted, text, count=1)
    if text and not text.endswith("\n"):
        text += "\n"
    return text + wanted + "\n"


def write_locale(mnt: str, locale: str, keymap: str, font: Optional[str] = None) -> list[str]:
    gen = _target(mnt, "etc/locale.gen")
    _write(gen, enable_locale(_read(gen), locale))
    conf = _target(mnt, "etc/locale.conf")
    _write(conf, f"LANG={locale}\n")
    vconsole_lines = [f"KEYMAP={keymap}"]
    if font:
        vconsole_lines.append(f"FONT={font}")
    vconsole = _target(mnt, "etc/vconsole.conf")
    _write(vconsole, "\n".join(vconsole_lines) + "\n")
    return [gen, conf, vconsole]


def write_hostname(mnt: str, hostname: str) -> str:
    path = _target(mnt, "etc/hostname")
    _write(path, hostname.strip() + "\n")
    return path


def set_hooks(text: str, hooks: Iterable[str]) -> str:
    line = "HOOKS=(" + " ".join(hooks) + ")"
    pattern = re.compile(r"^HOOKS=.*$", re.M)
    if pattern.search(text):
        return pattern.sub(line, text, count=1)
    if text and not text.endswith("\n"):
        text += "\n"
    return text + line + "\n"


def write_mkinitcpio_hooks(mnt: str, hooks: Iterable[str]) -> str:
    path = _target(mnt, "etc/mkinitcpio.conf")
    _write(path, set_hooks(_read(path), hooks))
    return path


def enable_wheel_sudo(mnt: str) -> str:
    path = _target(mnt, "etc/sudoers.d/10-wheel")
    _write(path, "%wheel ALL=(ALL:ALL) ALL\n", mode=0o440)
    return path


def append_fstab(mnt: str, body: str) -> str:
    path = _target(mnt, "etc/fstab")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(body if body.endswith("\n") else body + "\n")
    return path
