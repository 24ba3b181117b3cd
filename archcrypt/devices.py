"""Block device probing helpers (read-only)."""
from __future__ import annotations

import json
import os
import re
import stat

from .executil import run, trace


def partition_path(device: str, index: int) -> str:
    # nvme0n1 -> nvme0n1p1, mmcblk0 -> mmcblk0p1, loop0 -> loop0p1, sda -> sda1
    base = device.rstrip("/") or device
    suffix = "p" if base[-1:].isdigit() else ""
    return f"{base}{suffix}{index}"


def is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        trace("devices.stat_error", path=path, error=str(exc))
        return False
    return stat.S_ISBLK(st.st_mode)


def _walk(node: dict):
    yield node
    for child in node.get("children") or []:
        yield from _walk(child)


def _node_mountpoints(node: dict) -> list[str]:
    points = node.get("mountpoints")
    if points is None:
        points = [node.get("mountpoint")]
    return [p for p in points if p]


def _mountinfo_sources() -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    try:
        with open("/proc/self/mountinfo", "r", encoding="utf-8") as fh:
            for line in fh:
                parts = line.split()
                if "-" not in parts:
                    continue
                dash = parts.index("-")
                if dash + 2 >= len(parts):
                    continue
                source = parts[dash + 2]
                entries.append((source, parts[4].replace("\\040", " ")))
    except FileNotFoundError:
        return []
    return entries


def mounted_descendants(device: str) -> list[tuple[str, str]]:
    """Return ``(node, mountpoint)`` pairs for the disk and everything stacked on it.

    Walks partitions, LUKS mappings and logical volumes through ``lsblk -J``;
    swap in use shows up as ``[SWAP]``.  When ``lsblk`` is unavailable the
    kernel mount table is scanned for nodes under ``device`` instead.
    """

    res = run(["lsblk", "-J", "-o", "NAME,PATH,TYPE,MOUNTPOINTS", device], check=False)
    if res.rc != 0:
        # util-linux older than 2.37 only knows MOUNTPOINT
        res = run(["lsblk", "-J", "-o", "NAME,PATH,TYPE,MOUNTPOINT", device], check=False)
    found: list[tuple[str, str]] = []
    if res.rc == 0 and res.out:
        try:
            payload = json.loads(res.out)
        except json.JSONDecodeError:
            payload = {}
        for top in payload.get("blockdevices") or []:
            for node in _walk(top):
                path = node.get("path") or f"/dev/{node.get('name', '')}"
                for point in _node_mountpoints(node):
                    found.append((path, point))
        return found
    real = os.path.realpath(device)
    for source, point in _mountinfo_sources():
        src_real = os.path.realpath(source) if source.startswith("/") else source
        if src_real == real or re.fullmatch(re.escape(real) + r"p?\d+", src_real):
            found.append((source, point))
    return found


def fs_type(path: str) -> str:
    r = run(["blkid", "-p", "-s", "TYPE", "-o", "value", path], check=False)
    return (r.out or "").strip()


def uuid_of(path: str) -> str:
    r = run(["blkid", "-s", "UUID", "-o", "value", path], check=False)
    return (r.out or "").strip()


def parent_disk(path: str) -> str:
    r = run(["lsblk", "-no", "PKNAME", path], check=False)
    lines = [ln.strip() for ln in (r.out or "").splitlines() if ln.strip()]
    return lines[0] if lines else ""
