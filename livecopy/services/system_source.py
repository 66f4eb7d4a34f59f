"""Sources of the live system that is installed onto target devices."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

import psutil

from livecopy.domain import DeviceType, LayoutLabels, Partition, StorageDevice
from livecopy.logging import LoggerFactory
from livecopy.planning.upgrade import identify_roles
from livecopy.storage import devices as storage_devices
from livecopy.storage.exceptions import DeviceNotFoundError, PartitionTableError


log = LoggerFactory.for_system()

LIVE_MEDIUM_PATHS = ("/run/live/medium", "/lib/live/mount/medium")


class SystemSource(Protocol):
    def system_size(self) -> int: ...

    def has_exchange_partition(self) -> bool: ...

    def has_data_partition(self) -> bool: ...

    def device_type(self) -> DeviceType: ...

    def exchange_partition(self) -> Optional[Partition]: ...

    def data_partition(self) -> Optional[Partition]: ...

    def used_space(self, partition: Partition, sub_path: Optional[str] = None) -> Optional[int]: ...


@dataclass
class StaticSystemSource:
    """A system source described by explicit values."""

    size: int
    source_device_type: DeviceType = DeviceType.USB_FLASH_DRIVE
    exchange: Optional[Partition] = None
    data: Optional[Partition] = None
    exchange_used: Optional[int] = None
    data_used: Optional[int] = None

    def system_size(self) -> int:
        return self.size

    def has_exchange_partition(self) -> bool:
        return self.exchange is not None

    def has_data_partition(self) -> bool:
        return self.data is not None

    def device_type(self) -> DeviceType:
        return self.source_device_type

    def exchange_partition(self) -> Optional[Partition]:
        return self.exchange

    def data_partition(self) -> Optional[Partition]:
        return self.data

    def used_space(self, partition: Partition, sub_path: Optional[str] = None) -> Optional[int]:
        if partition is self.exchange:
            return self.exchange_used
        if partition is self.data:
            return self.data_used
        return None


class RunningSystemSource:
    """The live system this process was booted from.

    The medium is inspected lazily and only once; every query after the
    first is answered from the cached values.
    """

    def __init__(
        self,
        medium_path: Optional[str] = None,
        labels: LayoutLabels = LayoutLabels(),
    ):
        self.medium_path = medium_path or next(
            (path for path in LIVE_MEDIUM_PATHS if os.path.isdir(path)),
            LIVE_MEDIUM_PATHS[0],
        )
        self.labels = labels
        self._lock = threading.Lock()
        self._size: Optional[int] = None
        self._device: Optional[StorageDevice] = None
        self._partitions: Optional[list[Partition]] = None
        self._inspected = False

    def _mount_source(self) -> Optional[str]:
        for partition in psutil.disk_partitions(all=True):
            if partition.mountpoint == self.medium_path:
                return partition.device
        return None

    def _inspect(self) -> None:
        with self._lock:
            if self._inspected:
                return
            output = storage_devices.run_checked_command(["du", "-sb", self.medium_path])
            self._size = int(output.split()[0])
            self._inspected = True
            log.info(f"System size of {self.medium_path}: {self._size} bytes")

            source = self._mount_source()
            if source is None:
                log.warning(f"{self.medium_path} is not a mount point")
                return
            for entry in storage_devices.get_block_devices(force_refresh=True):
                children = storage_devices.get_children(entry)
                if any((child.get("path") or "") == source for child in children):
                    self._device = storage_devices.device_from_lsblk(entry)
                    break
            if self._device is None:
                log.warning(f"No disk found for boot partition {source}")
                return
            try:
                self._partitions = storage_devices.read_partitions(self._device)
            except (PartitionTableError, DeviceNotFoundError) as error:
                log.warning(f"Cannot read partitions of boot device: {error}")

    def _roles(self):
        self._inspect()
        if not self._partitions:
            return None
        try:
            return identify_roles(self._partitions, self.labels)
        except PartitionTableError as error:
            log.warning(f"Boot device layout is ambiguous: {error}")
            return None

    def system_size(self) -> int:
        self._inspect()
        return self._size or 0

    def exchange_partition(self) -> Optional[Partition]:
        roles = self._roles()
        return roles.exchange if roles else None

    def data_partition(self) -> Optional[Partition]:
        roles = self._roles()
        return roles.data if roles else None

    def has_exchange_partition(self) -> bool:
        return self.exchange_partition() is not None

    def has_data_partition(self) -> bool:
        return self.data_partition() is not None

    def device_type(self) -> DeviceType:
        self._inspect()
        if self._device is None:
            return DeviceType.OPTICAL_DISC
        return self._device.device_type

    def used_space(self, partition: Partition, sub_path: Optional[str] = None) -> Optional[int]:
        return storage_devices.query_used_space(partition, sub_path)
