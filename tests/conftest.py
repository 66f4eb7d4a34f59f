"""
Pytest configuration and shared fixtures for livecopy tests.

This module provides common fixtures and utilities used across all test modules.
"""

import json
import threading
from typing import Any, Dict, List, Optional

import pytest

from livecopy.config import settings
from livecopy.domain import (
    MEGA,
    DeviceType,
    LayoutLabels,
    Partition,
    Phase,
    StorageDevice,
)
from livecopy.services.registry import DeviceRegistry, Resolvers
from livecopy.storage import devices
from livecopy.storage.exceptions import DeviceNotFoundError, PhaseError


SECTOR = 512


# ==============================================================================
# Global State
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    """Reset the lsblk cache and use default settings in a temp location."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    devices._lsblk_cache = None
    devices._lsblk_cache_time = None
    devices._last_lsblk_names = None
    yield


# ==============================================================================
# Builders
# ==============================================================================


def make_device(
    name: str = "sdb",
    size: int = 8000 * MEGA,
    device_type: DeviceType = DeviceType.USB_FLASH_DRIVE,
    **kwargs,
) -> StorageDevice:
    return StorageDevice(
        device=f"/dev/{name}", size=size, device_type=device_type, **kwargs
    )


def make_partition(
    device: str,
    number: int,
    start: int,
    size: int,
    label: str = "",
    fstype: str = "",
    type_id: str = "83",
    mountpoint: Optional[str] = None,
) -> Partition:
    """Partition starting at sector ``start`` holding ``size`` bytes."""
    sectors = size // SECTOR
    return Partition(
        device=f"{device}{number}",
        number=number,
        start=start,
        end=start + sectors - 1,
        sector_size=SECTOR,
        type_id=type_id,
        label=label,
        fstype=fstype,
        mountpoint=mountpoint,
    )


def live_layout(
    device: str = "/dev/sdb",
    boot_size: int = 256 * MEGA,
    exchange_size: Optional[int] = 1000 * MEGA,
    data_size: Optional[int] = 2000 * MEGA,
    system_size: int = 3000 * MEGA,
) -> List[Partition]:
    """Partitions of a live medium in [boot][exchange][data][system] order."""
    partitions = []
    start = 2048
    number = 1
    partitions.append(
        make_partition(device, number, start, boot_size, "boot", "vfat", "ef")
    )
    start += boot_size // SECTOR
    if exchange_size:
        number += 1
        partitions.append(
            make_partition(device, number, start, exchange_size, "Exchange", "exfat", "7")
        )
        start += exchange_size // SECTOR
    if data_size:
        number += 1
        partitions.append(
            make_partition(device, number, start, data_size, "persistence", "ext4")
        )
        start += data_size // SECTOR
    number += 1
    partitions.append(make_partition(device, number, start, system_size, "system", "ext4"))
    return partitions


# ==============================================================================
# lsblk / sfdisk Payloads
# ==============================================================================


@pytest.fixture
def usb_stick_entry() -> Dict[str, Any]:
    """lsblk entry of a USB stick carrying a live system."""
    return {
        "name": "sdb",
        "path": "/dev/sdb",
        "type": "disk",
        "size": 8000000000,
        "phy-sec": 512,
        "model": "Cruzer Blade",
        "vendor": "SanDisk ",
        "serial": "4C530001",
        "rev": "1.00",
        "tran": "usb",
        "rm": True,
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "children": [
            {
                "name": "sdb1",
                "path": "/dev/sdb1",
                "type": "part",
                "size": 256000000,
                "mountpoint": None,
                "fstype": "vfat",
                "label": "boot",
            },
            {
                "name": "sdb2",
                "path": "/dev/sdb2",
                "type": "part",
                "size": 1000000000,
                "mountpoint": "/media/user/Exchange",
                "fstype": "exfat",
                "label": "Exchange",
            },
            {
                "name": "sdb3",
                "path": "/dev/sdb3",
                "type": "part",
                "size": 2000000000,
                "mountpoint": None,
                "fstype": "ext4",
                "label": "persistence",
            },
            {
                "name": "sdb4",
                "path": "/dev/sdb4",
                "type": "part",
                "size": 3200000000,
                "mountpoint": None,
                "fstype": "ext4",
                "label": "system",
            },
        ],
    }


@pytest.fixture
def system_disk_entry() -> Dict[str, Any]:
    """lsblk entry of the disk the host runs from."""
    return {
        "name": "sda",
        "path": "/dev/sda",
        "type": "disk",
        "size": 256000000000,
        "phy-sec": 4096,
        "model": "Samsung SSD",
        "vendor": "ATA",
        "serial": "S3Z1",
        "rev": "EXM0",
        "tran": "sata",
        "rm": False,
        "mountpoint": None,
        "children": [
            {
                "name": "sda1",
                "path": "/dev/sda1",
                "type": "part",
                "size": 255000000000,
                "mountpoint": "/",
                "fstype": "ext4",
                "label": "root",
            }
        ],
    }


@pytest.fixture
def lsblk_output(usb_stick_entry, system_disk_entry) -> str:
    return json.dumps({"blockdevices": [system_disk_entry, usb_stick_entry]})


@pytest.fixture
def sfdisk_output() -> str:
    """sfdisk --json dump matching ``usb_stick_entry``."""
    return json.dumps(
        {
            "partitiontable": {
                "label": "dos",
                "id": "0x1234abcd",
                "device": "/dev/sdb",
                "unit": "sectors",
                "sectorsize": 512,
                "partitions": [
                    {"node": "/dev/sdb1", "start": 2048, "size": 500000, "type": "ef", "bootable": True},
                    {"node": "/dev/sdb2", "start": 502048, "size": 1953125, "type": "7"},
                    {"node": "/dev/sdb3", "start": 2455173, "size": 3906250, "type": "83"},
                    {"node": "/dev/sdb4", "start": 6361423, "size": 6250000, "type": "83"},
                ],
            }
        }
    )


# ==============================================================================
# Registry, Backend and Sink Doubles
# ==============================================================================


class FakeResolvers:
    """In-memory replacement for the lsblk/sfdisk/mount queries."""

    def __init__(self):
        self.devices: Dict[str, StorageDevice] = {}
        self.partitions: Dict[str, Any] = {}
        self.used: Dict[Any, Optional[int]] = {}
        self.partition_queries: List[str] = []
        self.used_queries: List[Any] = []

    def add(self, device: StorageDevice, partitions=None) -> StorageDevice:
        self.devices[device.name] = device
        if partitions is not None:
            self.partitions[device.device] = partitions
        return device

    def resolve_device(self, raw_path, show_hard_disks):
        name = devices.device_name_from_path(raw_path)
        device = self.devices.get(name)
        if device is None:
            raise DeviceNotFoundError(name)
        if device.device_type is DeviceType.HARD_DRIVE and not show_hard_disks:
            return None
        return device

    def list_devices(self, show_hard_disks):
        return [
            d
            for d in self.devices.values()
            if show_hard_disks or d.device_type is not DeviceType.HARD_DRIVE
        ]

    def read_partitions(self, device):
        self.partition_queries.append(device.device)
        value = self.partitions.get(device.device, [])
        if isinstance(value, Exception):
            raise value
        return value

    def query_used_space(self, partition, sub_path=None):
        self.used_queries.append((partition.device, sub_path))
        return self.used.get((partition.device, sub_path), self.used.get(partition.device))

    def as_resolvers(self) -> Resolvers:
        return Resolvers(
            resolve_device=self.resolve_device,
            list_devices=self.list_devices,
            read_partitions=self.read_partitions,
            query_used_space=self.query_used_space,
        )


@pytest.fixture
def fake_resolvers() -> FakeResolvers:
    return FakeResolvers()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def registry(fake_resolvers, sleeps) -> DeviceRegistry:
    return DeviceRegistry(
        resolvers=fake_resolvers.as_resolvers(),
        labels=LayoutLabels(),
        show_hard_disks=False,
        reset_must_init=True,
        settle_delay=7.0,
        sleep=sleeps.append,
    )


class FakeBackend:
    """Records phases and fails on request."""

    def __init__(self, failures: Optional[Dict[str, Phase]] = None):
        self.failures = failures or {}
        self.calls: List[tuple] = []
        self.tasks: List[Any] = []
        self.lock_holder: Optional[threading.RLock] = None
        self.lock_busy: List[bool] = []

    def _probe_lock(self) -> bool:
        """Whether another thread currently fails to take ``lock_holder``."""
        busy = []

        def probe():
            acquired = self.lock_holder.acquire(blocking=False)
            if acquired:
                self.lock_holder.release()
            busy.append(not acquired)

        thread = threading.Thread(target=probe)
        thread.start()
        thread.join()
        return busy[0]

    def run_phase(self, phase, task):
        self.calls.append((task.device.device, phase))
        self.tasks.append(task)
        if self.lock_holder is not None:
            self.lock_busy.append(self._probe_lock())
        if self.failures.get(task.device.device) is phase:
            raise PhaseError(f"{phase.value} failed", device=task.device.device, phase=phase.value)

    def phases_for(self, device_path: str) -> List[Phase]:
        return [phase for path, phase in self.calls if path == device_path]


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


class RecordingSink:
    def __init__(self):
        self.events: List[tuple] = []
        self.finished: Optional[tuple] = None

    def device_started(self, device, index, total):
        self.events.append(("started", device.device, index, total))

    def phase_changed(self, device, phase):
        self.events.append(("phase", device.device, phase))

    def device_finished(self, result):
        self.events.append(("finished", result.device.device, result.error_message))

    def batch_finished(self, success_count, total, source_device_type):
        self.finished = (success_count, total, source_device_type)


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()
