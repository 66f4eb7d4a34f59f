"""Storage device detection and metadata queries using lsblk and sfdisk.

Device Detection:
    Uses lsblk with JSON output to enumerate block devices and their
    properties (name, size, physical sector size, vendor, model, serial,
    revision, transport, removable flag, mountpoints, filesystem labels).

    Device types are derived from lsblk fields:
    - ``tran == "usb"``                   -> USB flash drive
    - ``mmcblk*`` names                   -> SD memory card
    - ``type == "rom"``                   -> optical disc
    - ``type`` starting with ``raid``     -> RAID
    - everything else                     -> hard drive

Filtering Logic:
    Disks mounted at critical system paths (/, /boot, /boot/firmware) are
    never listed, so the host system can not be selected as a target.

Operations:
    - list_storage_devices(): enumerate candidate devices for a device list
    - resolve_device(): turn a hotplug path into a StorageDevice
    - read_partitions(): query the partition table of a device
    - query_used_space(): used bytes of a partition, optionally of a sub path

Every function here may block on an external process. The device registry
calls them from resolver threads, never from the hotplug reader.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import tempfile
import time
from typing import Any, Optional

import psutil

from livecopy.domain import DeviceType, Partition, StorageDevice
from livecopy.logging import LoggerFactory
from livecopy.storage.exceptions import (
    CommandError,
    DeviceNotFoundError,
    PartitionTableError,
)
from livecopy.storage.partition_table import parse_sfdisk_json


log = LoggerFactory.for_storage()

ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/firmware"}
LSBLK_CACHE_TTL_SECONDS = 1.0
LSBLK_COLUMNS = (
    "NAME,PATH,TYPE,SIZE,PHY-SEC,MODEL,VENDOR,SERIAL,REV,TRAN,RM,"
    "MOUNTPOINT,FSTYPE,LABEL"
)

_last_lsblk_names: Optional[tuple[str, ...]] = None
_lsblk_cache: Optional[list[dict]] = None
_lsblk_cache_time: Optional[float] = None


def run_command(command, check=True, log_output=True, log_command=True):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(command, input_text=None, env=None) -> str:
    """Run a command and raise CommandError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
        env=env,
    )
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        message = stderr.splitlines()[-1] if stderr else stdout or "Command failed"
        raise CommandError(list(command), result.returncode, message)
    return result.stdout


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1000.0:
            return f"{size:.1f}{unit}"
        size /= 1000.0
    return f"{size:.1f}PB"


def get_block_devices(force_refresh: bool = False):
    """Return block device data from lsblk with a short-lived cache.

    When lsblk fails or returns invalid JSON, the previous cache remains intact
    and is returned if available; otherwise an empty list is returned. When
    force_refresh=True, errors return an empty list so callers do not receive
    stale data.
    """
    global _last_lsblk_names, _lsblk_cache, _lsblk_cache_time
    now = time.monotonic()
    if (
        not force_refresh
        and _lsblk_cache is not None
        and _lsblk_cache_time is not None
        and now - _lsblk_cache_time <= LSBLK_CACHE_TTL_SECONDS
    ):
        return _lsblk_cache
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS],
            log_output=False,
            log_command=False,
        )
        data = json.loads(result.stdout)
        devices = data.get("blockdevices", [])
        device_names = tuple(device.get("name") for device in devices if device.get("name"))
        if device_names != _last_lsblk_names:
            if device_names:
                log.debug(f"lsblk found {len(device_names)} devices: {', '.join(device_names)}")
            else:
                log.debug("lsblk found no block devices")
            _last_lsblk_names = device_names
        _lsblk_cache = devices
        _lsblk_cache_time = now
        return devices
    except (subprocess.CalledProcessError, json.JSONDecodeError, FileNotFoundError) as error:
        log.warning(f"lsblk failed: {error}")
        if _lsblk_cache is not None and not force_refresh:
            return _lsblk_cache
        return []


def get_children(device):
    return device.get("children", []) or []


def get_device_by_name(name, force_refresh: bool = False):
    if not name:
        return None
    for device in get_block_devices(force_refresh=force_refresh):
        if device.get("name") == name:
            return device
    return None


def has_root_mountpoint(device):
    mountpoint = device.get("mountpoint")
    if mountpoint in ROOT_MOUNTPOINTS:
        return True
    for child in get_children(device):
        if has_root_mountpoint(child):
            return True
    return False


def is_root_device(device):
    return has_root_mountpoint(device)


def _flag(value) -> bool:
    # lsblk prints booleans as true/false or 1/0 depending on its version
    return value in (True, 1, "1", "true")


def device_type_from_lsblk(device: dict[str, Any]) -> DeviceType:
    block_type = (device.get("type") or "").lower()
    name = device.get("name") or ""
    if block_type == "rom":
        return DeviceType.OPTICAL_DISC
    if block_type.startswith("raid") or name.startswith("md"):
        return DeviceType.RAID
    if name.startswith("mmcblk"):
        return DeviceType.SD_MEMORY_CARD
    if device.get("tran") == "usb":
        return DeviceType.USB_FLASH_DRIVE
    return DeviceType.HARD_DRIVE


def device_from_lsblk(device: dict[str, Any]) -> StorageDevice:
    """Convert an lsblk entry to a StorageDevice.

    Raises:
        KeyError: If the name is missing
        ValueError: If size cannot be converted to int
    """
    name = device["name"]
    device_type = device_type_from_lsblk(device)
    block_type = (device.get("type") or "").lower()
    raid_level = block_type if device_type is DeviceType.RAID else None
    raid_device_count = None
    if raid_level is not None:
        raid_device_count = _raid_device_count(name)
    return StorageDevice(
        device=device.get("path") or f"/dev/{name}",
        size=int(device.get("size") or 0),
        block_size=int(device.get("phy-sec") or 512),
        vendor=(device.get("vendor") or "").strip(),
        model=(device.get("model") or "").strip(),
        serial=(device.get("serial") or "").strip(),
        revision=(device.get("rev") or "").strip(),
        device_type=device_type,
        raid_level=raid_level,
        raid_device_count=raid_device_count,
    )


def _raid_device_count(name: str) -> Optional[int]:
    slaves = f"/sys/block/{name}/slaves"
    try:
        return len(os.listdir(slaves))
    except OSError:
        return None


def _is_candidate(device: dict[str, Any], show_hard_disks: bool) -> bool:
    block_type = (device.get("type") or "").lower()
    if block_type != "disk" and not block_type.startswith("raid"):
        return False
    if is_root_device(device):
        return False
    if not show_hard_disks and device_type_from_lsblk(device) is DeviceType.HARD_DRIVE:
        return False
    return int(device.get("size") or 0) > 0


def list_storage_devices(show_hard_disks: bool = False) -> list[StorageDevice]:
    """Enumerate devices that may be offered in a device list."""
    devices = []
    for device in get_block_devices(force_refresh=True):
        if _is_candidate(device, show_hard_disks):
            devices.append(device_from_lsblk(device))
    return sorted(devices)


def device_name_from_path(raw_path: str) -> str:
    """Return the trailing segment of a udisks object path or device node."""
    return raw_path.strip().rstrip("/").rsplit("/", 1)[-1]


def resolve_device(raw_path: str, show_hard_disks: bool = False) -> Optional[StorageDevice]:
    """Resolve a hotplug path to a StorageDevice.

    Returns None for partitions, the host system disk and (unless
    show_hard_disks is set) hard drives. Raises DeviceNotFoundError when
    lsblk does not know the device at all.
    """
    name = device_name_from_path(raw_path)
    device = get_device_by_name(name, force_refresh=True)
    if device is None:
        raise DeviceNotFoundError(name)
    if not _is_candidate(device, show_hard_disks):
        log.debug(f"Ignoring {name}: not a candidate storage device")
        return None
    return device_from_lsblk(device)


def read_partitions(device: StorageDevice) -> list[Partition]:
    """Query the partition table of a device.

    Raises:
        PartitionTableError: If sfdisk fails or its dump cannot be parsed
    """
    sfdisk_path = shutil.which("sfdisk")
    if not sfdisk_path:
        raise PartitionTableError(device.name, "sfdisk not found")
    try:
        output = run_checked_command([sfdisk_path, "--json", device.device])
    except CommandError as error:
        raise PartitionTableError(device.name, error.message) from error

    details = {}
    entry = get_device_by_name(device.name)
    if entry is not None:
        for child in get_children(entry):
            node = child.get("path") or f"/dev/{child.get('name')}"
            details[node] = child
    return parse_sfdisk_json(output, device.name, details)


def _measure(path: str, sub_path: Optional[str]) -> int:
    if not sub_path:
        return psutil.disk_usage(path).used
    target = os.path.join(path, sub_path.lstrip("/"))
    if not os.path.exists(target):
        return 0
    output = run_checked_command(["du", "-sb", target])
    return int(output.split()[0])


def query_used_space(partition: Partition, sub_path: Optional[str] = None) -> Optional[int]:
    """Return the used bytes of a partition, or of a sub path inside it.

    Unmounted partitions are mounted read-only on a temporary directory for
    the measurement. Returns None when the partition can not be measured.
    """
    if partition.mountpoint:
        try:
            return _measure(partition.mountpoint, sub_path)
        except (OSError, CommandError, ValueError, IndexError) as error:
            log.warning(f"Cannot measure {partition.device}: {error}")
            return None

    mountpoint = tempfile.mkdtemp(prefix="livecopy-")
    try:
        run_checked_command(["mount", "-o", "ro", partition.device, mountpoint])
    except CommandError as error:
        log.warning(f"Cannot mount {partition.device}: {error.message}")
        os.rmdir(mountpoint)
        return None
    try:
        return _measure(mountpoint, sub_path)
    except (OSError, CommandError, ValueError, IndexError) as error:
        log.warning(f"Cannot measure {partition.device}: {error}")
        return None
    finally:
        try:
            run_checked_command(["umount", mountpoint])
            os.rmdir(mountpoint)
        except (CommandError, OSError) as error:
            log.warning(f"Cleanup of {mountpoint} failed: {error}")

