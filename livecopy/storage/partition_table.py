"""Partition table parsing from ``sfdisk --json`` dumps.

Every shape this module does not understand raises ``PartitionTableError``.
Callers treat that as "layout unknown" and fall back to the most
conservative classification.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Optional

from livecopy.domain import Partition
from livecopy.storage.exceptions import PartitionTableError


PARTITION_TYPE_DESCRIPTIONS = {
    "b": "W95 FAT32",
    "c": "W95 FAT32 (LBA)",
    "7": "HPFS/NTFS/exFAT",
    "83": "Linux",
    "ef": "EFI (FAT-12/16/32)",
    "c12a7328-f81f-11d2-ba4b-00a0c93ec93b": "EFI System",
    "0fc63daf-8483-4772-8e79-3d69d8477de4": "Linux filesystem",
    "ebd0a0a2-b9e5-4433-87c0-68b6b72699c7": "Microsoft basic data",
}


def get_partition_number(name: str) -> Optional[int]:
    """Extract partition number from device name."""
    if not name:
        return None
    match = re.search(r"(?:p)?(\d+)$", name)
    if not match:
        return None
    return int(match.group(1))


def describe_partition_type(type_id: str) -> str:
    return PARTITION_TYPE_DESCRIPTIONS.get(type_id.lower(), type_id)


def parse_sfdisk_json(
    output: str,
    device_name: str,
    details: Optional[dict[str, dict[str, Any]]] = None,
) -> list[Partition]:
    """Parse ``sfdisk --json`` output into partitions.

    Args:
        output: Raw JSON printed by sfdisk
        device_name: Device the dump belongs to (for error messages)
        details: Optional lsblk child entries keyed by partition node, used
            for label, filesystem type and mountpoint

    Raises:
        PartitionTableError: If the dump is malformed or inconsistent
    """
    try:
        data = json.loads(output)
    except json.JSONDecodeError as error:
        raise PartitionTableError(device_name, f"invalid JSON: {error}") from error

    table = data.get("partitiontable") if isinstance(data, dict) else None
    if not isinstance(table, dict):
        raise PartitionTableError(device_name, "missing partitiontable")

    unit = table.get("unit", "sectors")
    if unit != "sectors":
        raise PartitionTableError(device_name, f"unsupported unit {unit!r}")

    sector_size = table.get("sectorsize", 512)
    if not isinstance(sector_size, int) or sector_size <= 0:
        raise PartitionTableError(device_name, f"invalid sector size {sector_size!r}")

    entries = table.get("partitions", [])
    if not isinstance(entries, list):
        raise PartitionTableError(device_name, "partitions is not a list")

    details = details or {}
    partitions = [
        _parse_entry(entry, device_name, sector_size, details) for entry in entries
    ]
    _check_overlaps(partitions, device_name)
    return sorted(partitions, key=lambda partition: partition.number)


def _parse_entry(
    entry: Any,
    device_name: str,
    sector_size: int,
    details: dict[str, dict[str, Any]],
) -> Partition:
    if not isinstance(entry, dict):
        raise PartitionTableError(device_name, f"invalid partition entry {entry!r}")
    node = entry.get("node")
    start = entry.get("start")
    size = entry.get("size")
    if not node or not isinstance(start, int) or not isinstance(size, int):
        raise PartitionTableError(device_name, f"incomplete partition entry {entry!r}")
    if start < 0 or size <= 0:
        raise PartitionTableError(device_name, f"invalid extent for {node}")

    number = get_partition_number(node)
    if number is None:
        raise PartitionTableError(device_name, f"cannot number partition {node}")

    type_id = str(entry.get("type", ""))
    info = details.get(node, {})
    return Partition(
        device=node,
        number=number,
        start=start,
        end=start + size - 1,
        sector_size=sector_size,
        bootable=bool(entry.get("bootable", False)),
        type_id=type_id,
        description=describe_partition_type(type_id),
        label=(info.get("label") or entry.get("name") or "").strip(),
        fstype=(info.get("fstype") or "").strip(),
        mountpoint=info.get("mountpoint") or None,
    )


def _check_overlaps(partitions: Iterable[Partition], device_name: str) -> None:
    previous: Optional[Partition] = None
    for partition in sorted(partitions, key=lambda p: p.start):
        if previous is not None and partition.start <= previous.end:
            raise PartitionTableError(
                device_name,
                f"{partition.name} overlaps {previous.name}",
            )
        previous = partition
