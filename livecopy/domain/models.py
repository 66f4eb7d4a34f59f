"""Domain model for live medium installation, upgrade and reset.

Storage devices and partitions are plain data records. Lazily resolved
metadata (partition lists, live system flags, used space) is cached by the
device registry as ``Resolution`` values, never on the records themselves.
"""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Optional, TypeVar, Union


# The exchange size slider works in these units, so all MB values do too.
MEGA = 1000 * 1000

BOOT_PARTITION_LABELS = frozenset({"boot", "efi"})
BOOT_PARTITION_TYPE_IDS = frozenset(
    {"ef", "0xef", "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"}
)
EXCHANGE_FILE_SYSTEMS = frozenset({"vfat", "exfat", "ntfs"})


# ==============================================================================
# Devices and Partitions
# ==============================================================================


class DeviceType(Enum):
    HARD_DRIVE = "harddrive"
    USB_FLASH_DRIVE = "usbflashdrive"
    SD_MEMORY_CARD = "sdmemorycard"
    OPTICAL_DISC = "opticaldisc"
    RAID = "raid"

    @property
    def is_removable(self) -> bool:
        """Removable media wording applies to everything but disks and discs."""
        return self not in (DeviceType.HARD_DRIVE, DeviceType.OPTICAL_DISC)


@dataclass(frozen=True)
class LayoutLabels:
    """Volume labels identifying the partitions of a live medium."""

    system: str = "system"
    boot: str = "boot"
    data: str = "persistence"


@dataclass(frozen=True)
class Partition:
    """A partition of a storage device as reported by the partition table."""

    device: str  # e.g., "/dev/sdb1"
    number: int
    start: int  # first sector
    end: int  # last sector (inclusive)
    sector_size: int = 512
    bootable: bool = False
    type_id: str = ""
    description: str = ""
    label: str = ""
    fstype: str = ""
    mountpoint: str | None = None

    @property
    def name(self) -> str:
        return os.path.basename(self.device)

    @property
    def size(self) -> int:
        """Size in bytes."""
        if self.end < self.start:
            return 0
        return (self.end - self.start + 1) * self.sector_size

    def is_system_partition(self, expected_label: str) -> bool:
        return bool(self.label) and self.label == expected_label

    def is_boot_partition(self, labels: LayoutLabels = LayoutLabels()) -> bool:
        label = self.label.lower()
        if label and (label == labels.boot.lower() or label in BOOT_PARTITION_LABELS):
            return True
        return self.type_id.lower() in BOOT_PARTITION_TYPE_IDS

    def is_data_partition(self, labels: LayoutLabels = LayoutLabels()) -> bool:
        return bool(self.label) and self.label == labels.data

    def is_exchange_partition(self, labels: LayoutLabels = LayoutLabels()) -> bool:
        if self.fstype.lower() not in EXCHANGE_FILE_SYSTEMS:
            return False
        if self.is_boot_partition(labels) or self.is_system_partition(labels.system):
            return False
        return not self.is_data_partition(labels)


@dataclass(frozen=True, eq=False)
class StorageDevice:
    """A block device that can carry a live system.

    Identity is the (device path, size) pair so that two snapshots of the
    same physical device compare equal.
    """

    device: str  # e.g., "/dev/sdb"
    size: int  # bytes
    block_size: int = 512
    vendor: str = ""
    model: str = ""
    serial: str = ""
    revision: str = ""
    device_type: DeviceType = DeviceType.USB_FLASH_DRIVE
    raid_level: str | None = None
    raid_device_count: int | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StorageDevice):
            return NotImplemented
        return self.device == other.device and self.size == other.size

    def __hash__(self) -> int:
        return hash((self.device, self.size))

    def __lt__(self, other: StorageDevice) -> bool:
        return self.device < other.device

    @property
    def name(self) -> str:
        """Kernel device name (e.g., sdb)."""
        return os.path.basename(self.device)

    @property
    def is_removable(self) -> bool:
        return self.device_type.is_removable

    def matches_name(self, name: str) -> bool:
        """Check whether a hotplug path token names this device."""
        return self.name == name

    def owns_partition(self, partition: Partition) -> bool:
        """Check whether a partition node (sdb1, mmcblk0p2) belongs to this device."""
        return re.fullmatch(rf"{re.escape(self.name)}p?\d+", partition.name) is not None

    def format_label(self) -> str:
        """Human readable label, e.g. "SanDisk Cruzer, 8.0GB (/dev/sdb)"."""
        size_label = f"{self.size / MEGA / 1000:.1f}GB"
        if self.device_type is DeviceType.SD_MEMORY_CARD:
            description = f"{self.model} {size_label}".strip()
        else:
            vendor_model = " ".join(p for p in (self.vendor, self.model) if p)
            description = f"{vendor_model}, {size_label}" if vendor_model else size_label
        return f"{description} ({self.device})"


# ==============================================================================
# Lazy metadata
# ==============================================================================

T = TypeVar("T")


class Unresolved:
    """Metadata that has not been queried yet."""

    _instance: Optional["Unresolved"] = None

    def __new__(cls) -> "Unresolved":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNRESOLVED"

    @property
    def resolved(self) -> bool:
        return False


UNRESOLVED = Unresolved()


@dataclass(frozen=True)
class Resolved(Generic[T]):
    """Metadata that has been queried once and is cached."""

    value: T

    @property
    def resolved(self) -> bool:
        return True


Resolution = Union[Unresolved, Resolved]


# ==============================================================================
# Planning
# ==============================================================================


class PartitionState(Enum):
    TOO_SMALL = "too_small"
    ONLY_SYSTEM = "only_system"
    PERSISTENCE = "persistence"
    EXCHANGE = "exchange"


@dataclass(frozen=True)
class PartitionSizes:
    """Planned partition sizes for one device.

    ``persistent_bytes`` keeps the byte-exact figure; the MB fields are what
    the user sees and what the partitioning backend receives.
    """

    boot_mb: int
    system_mb: int
    exchange_mb: int
    persistent_mb: int
    persistent_bytes: int = 0

    @property
    def total_mb(self) -> int:
        return self.boot_mb + self.system_mb + self.exchange_mb + self.persistent_mb


class SystemUpgradeVariant(Enum):
    REGULAR = "regular"
    REPARTITION = "repartition"
    BACKUP = "backup"
    IMPOSSIBLE = "impossible"


class EfiUpgradeVariant(Enum):
    REGULAR = "regular"
    ENLARGE_REPARTITION = "enlarge_repartition"
    ENLARGE_BACKUP = "enlarge_backup"


@dataclass(frozen=True)
class UpgradeDecision:
    system_variant: SystemUpgradeVariant
    efi_variant: EfiUpgradeVariant
    backup_required: bool
    repartition_required: bool
    possible: bool
    reason: str = ""


# ==============================================================================
# Batches
# ==============================================================================


class BatchKind(Enum):
    INSTALL = "install"
    UPGRADE = "upgrade"
    RESET = "reset"


class DeviceListMode(Enum):
    INSTALL = "install"
    INSTALL_TRANSFER = "install_transfer"
    UPGRADE = "upgrade"
    RESET = "reset"


class WizardState(Enum):
    INSTALL_INFORMATION = "install_information"
    INSTALL_SELECTION = "install_selection"
    INSTALLATION = "installation"
    UPGRADE_INFORMATION = "upgrade_information"
    UPGRADE_SELECTION = "upgrade_selection"
    UPGRADE = "upgrade"
    RESET_INFORMATION = "reset_information"
    RESET_SELECTION = "reset_selection"
    RESET = "reset"

    def expected_modes(self) -> tuple[DeviceListMode, ...]:
        """Device lists that accept hotplug changes in this state."""
        return _EXPECTED_MODES.get(self, ())


_EXPECTED_MODES = {
    WizardState.INSTALL_SELECTION: (
        DeviceListMode.INSTALL,
        DeviceListMode.INSTALL_TRANSFER,
    ),
    WizardState.UPGRADE_SELECTION: (DeviceListMode.UPGRADE,),
    WizardState.RESET_SELECTION: (DeviceListMode.RESET,),
}


class Phase(Enum):
    """Partitioning backend phases reported to the result sink."""

    CREATING_FILE_SYSTEMS = "CreatingFileSystems"
    COPYING_FILES = "CopyingFiles"
    UNMOUNTING_FILE_SYSTEMS = "UnmountingFileSystems"
    WRITING_BOOT_SECTOR = "WritingBootSector"
    CHANGING_PARTITION_SIZES = "ChangingPartitionSizes"
    RESETTING_DATA_PARTITION = "ResettingDataPartition"
    RESETTING_SYSTEM_PARTITION = "ResettingSystemPartition"
    BACKING_UP_USER_DATA = "BackingUpUserData"
    RESTORING_USER_DATA = "RestoringUserData"
    FORMATTING_EXCHANGE_PARTITION = "FormattingExchangePartition"
    FORMATTING_DATA_PARTITION = "FormattingDataPartition"
    REMOVING_FILES = "RemovingFiles"


class RepartitionStrategy(Enum):
    KEEP = "keep"
    RESIZE = "resize"
    REMOVE = "remove"


class DataPartitionMode(Enum):
    READ_WRITE = "read_write"
    READ_ONLY = "read_only"
    NOT_USED = "not_used"


@dataclass(frozen=True)
class InstallConfig:
    exchange_mb: int = 0
    exchange_file_system: str = "exfat"
    data_file_system: str = "ext4"
    exchange_label: str = "Exchange"
    auto_number_pattern: str = ""
    auto_number_start: int = 1
    auto_number_increment: int = 1
    auto_number_min_digits: int = 1
    copy_exchange: bool = False
    copy_data: bool = False
    data_partition_mode: DataPartitionMode = DataPartitionMode.READ_WRITE
    transfer_source: StorageDevice | None = None
    transfer_exchange: bool = False
    transfer_home: bool = False
    transfer_network: bool = False
    transfer_printer: bool = False
    transfer_firewall: bool = False
    check_copies: bool = False


@dataclass(frozen=True)
class UpgradeConfig:
    enlarged_system_size: int
    repartition_strategy: RepartitionStrategy = RepartitionStrategy.KEEP
    exchange_mb: int = 0
    exchange_file_system: str = "exfat"
    data_file_system: str = "ext4"
    automatic_backup: bool = False
    backup_destination: str = ""
    remove_backup: bool = False
    upgrade_system_partition: bool = True
    reset_data_partition: bool = False
    keep_printer_settings: bool = True
    keep_network_settings: bool = True
    keep_firewall_settings: bool = True
    keep_user_settings: bool = True
    reactivate_welcome: bool = False
    remove_hidden_files: bool = False
    overwrite_list: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResetConfig:
    format_exchange_partition: bool = False
    clean_exchange_partition: bool = False
    exchange_file_system: str = "exfat"
    format_data_partition: bool = False
    clean_data_partition: bool = True
    backup: bool = False
    backup_destination: str = ""
    restore_entries: tuple[str, ...] = ()


BatchConfig = Union[InstallConfig, UpgradeConfig, ResetConfig]


@dataclass
class StorageDeviceResult:
    """Outcome of one device in one batch run."""

    device: StorageDevice
    start_time: float = field(default_factory=time.time)
    finish_time: float | None = None
    error_message: str | None = None

    @property
    def finished(self) -> bool:
        return self.finish_time is not None

    @property
    def succeeded(self) -> bool:
        return self.finished and self.error_message is None

    def finish(self, error_message: str | None = None) -> None:
        self.error_message = error_message
        self.finish_time = time.time()

    def duration(self, now: float | None = None) -> float:
        """Seconds spent so far, or in total once finished."""
        end = self.finish_time
        if end is None:
            end = time.time() if now is None else now
        return max(0.0, end - self.start_time)


@dataclass
class BatchJob:
    kind: BatchKind
    devices: tuple[StorageDevice, ...]
    config: BatchConfig
    devices_started: int = 0
    results: list[StorageDeviceResult] = field(default_factory=list)
