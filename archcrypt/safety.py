"""Guards and destructive-op refusals."""

from __future__ import annotations

import os

from .devices import is_block_device, mounted_descendants, parent_disk
from .errors import AlreadyMountedError, DeviceNotFoundError, NotConfirmedError, ValidationError
from .executil import TOOL_ERRORS, describe_failure, failure_state, info, run

AFFIRMATIVE = frozenset({"yes", "y"})


def is_affirmative(token: str | None) -> bool:
    if token is None:
        return False
    return token.strip().lower() in AFFIRMATIVE


def _live_parent(mountpoint: str) -> str:
    src = run(["findmnt", "-no", "SOURCE", mountpoint], check=False).out.strip()
    if not src:
        return ""
    return parent_disk(src) or os.path.basename(src)


def guard_not_live_disk(device: str) -> None:
    """Refuse a target that backs the running system's ``/`` or ``/boot``."""

    name = os.path.basename(os.path.realpath(device))
    for mountpoint in ("/", "/boot"):
        live = _live_parent(mountpoint)
        if live and live == name:
            raise AlreadyMountedError(
                f"{device} backs the live {mountpoint}; refusing to touch it",
                target=device,
                state={"mountpoint": mountpoint, "parent": live},
            )


def validate_target(device: str, confirmation: str | None) -> None:
    """Check that ``device`` may be wiped.

    Pure check, no side effects.  Order matters: a missing device is reported
    before mounts, and mounts before the confirmation, so an operator who
    said "yes" to the wrong disk still gets the more useful error.
    """

    if not is_block_device(device):
        raise DeviceNotFoundError(f"{device} is not a block device", target=device)

    try:
        busy = mounted_descendants(device)
    except TOOL_ERRORS as exc:
        raise ValidationError(
            f"cannot inspect mounts on {device}: {describe_failure(exc)}",
            target=device,
            state=failure_state(exc),
        ) from exc
    if busy:
        listing = ", ".join(f"{node} on {point}" for node, point in busy)
        raise AlreadyMountedError(
            f"{device} is in use: {listing}",
            target=device,
            state={"mounts": [list(pair) for pair in busy]},
        )

    try:
        guard_not_live_disk(device)
    except TOOL_ERRORS as exc:
        raise ValidationError(
            f"cannot locate the live root disk: {describe_failure(exc)}",
            target=device,
            state=failure_state(exc),
        ) from exc

    if not is_affirmative(confirmation):
        raise NotConfirmedError(
            f"refusing to wipe {device} without an explicit 'yes'",
            target=device,
        )
    info("safety.validated", device=device)
