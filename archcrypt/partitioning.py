"""GPT layout: ESP plus a single LVM container partition."""
from __future__ import annotations

from .devices import is_block_device, partition_path
from .errors import PartitioningError
from .executil import TOOL_ERRORS, describe_failure, failure_state, info, poll_until, run, trace, udev_settle
from .model import ALIGN_MIB, InstallPlan, Partition, PartitionRole, PartitionTable

REENUMERATE_TIMEOUT = 30.0


def layout_for(plan: InstallPlan) -> PartitionTable:
    """Describe the table ``apply_layout`` will create, without touching the disk."""

    esp_end = ALIGN_MIB + plan.esp_mib
    return PartitionTable(
        device=plan.device,
        partitions=(
            Partition(1, PartitionRole.ESP, partition_path(plan.device, 1),
                      ALIGN_MIB, esp_end, ("boot", "esp")),
            Partition(2, PartitionRole.LVM, partition_path(plan.device, 2),
                      esp_end, None, ("lvm",)),
        ),
    )


def _parted_commands(table: PartitionTable) -> list[list[str]]:
    dev = table.device
    esp, lvm = table.esp, table.lvm
    return [
        ["parted", "-s", dev, "mklabel", "gpt"],
        ["parted", "-s", "-a", "optimal", dev, "mkpart", "ESP", "fat32", f"{esp.start_mib}MiB", f"{esp.end_mib}MiB"],
        ["parted", "-s", dev, "set", str(esp.index), "esp", "on"],
        ["parted", "-s", "-a", "optimal", dev, "mkpart", "lvm", f"{lvm.start_mib}MiB", "100%"],
        ["parted", "-s", dev, "set", str(lvm.index), "lvm", "on"],
    ]


def wipe_signatures(device: str):
    # stale LUKS/LVM headers on the old partitions confuse udev after re-create
    for idx in (1, 2):
        node = partition_path(device, idx)
        if is_block_device(node):
            run(["wipefs", "-a", node], check=False)
    run(["wipefs", "-a", device], check=True, timeout=120.0)


def reread(device: str):
    run(["partprobe", device], check=False)
    run(["partx", "-u", device], check=False)
    udev_settle()


def wait_for_partitions(
    device: str,
    paths: list[str],
    timeout: float = REENUMERATE_TIMEOUT,
    base: float = 0.1,
    max_delay: float = 2.0,
):
    """Block until every node in ``paths`` is a block device.

    Between probes the kernel is asked to re-read ``device``; the poll backs
    off exponentially up to ``max_delay`` and gives up after ``timeout``.
    """

    ready = poll_until(
        lambda: all(is_block_device(p) for p in paths),
        timeout=timeout,
        base=base,
        max_delay=max_delay,
        between=lambda: reread(device),
    )
    if not ready:
        missing = [p for p in paths if not is_block_device(p)]
        raise PartitioningError(
            f"partitions {', '.join(missing)} did not appear within {timeout:.0f}s",
            target=device,
            state={"missing": missing},
        )


def apply_layout(plan: InstallPlan, timeout: float = REENUMERATE_TIMEOUT) -> PartitionTable:
    table = layout_for(plan)
    info("partitioning.start", device=plan.device, esp_mib=plan.esp_mib)
    try:
        wipe_signatures(plan.device)
        for cmd in _parted_commands(table):
            run(cmd, check=True, timeout=60.0, retry_on_timeout=False)
        reread(plan.device)
        wait_for_partitions(plan.device, [p.path for p in table.partitions], timeout=timeout)
    except TOOL_ERRORS as exc:
        raise PartitioningError(
            f"partitioning {plan.device} failed: {describe_failure(exc)}",
            target=plan.device,
            state=failure_state(exc),
        ) from exc
    trace("partitioning.done", **table.as_dict())
    return table


def verify_layout(device: str) -> str:
    try:
        return run(["parted", "-s", device, "unit", "MiB", "print"], check=False).out
    except TOOL_ERRORS as exc:
        return describe_failure(exc)
