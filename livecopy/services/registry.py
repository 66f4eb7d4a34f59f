"""Registry of attached storage devices per operation mode.

The registry owns one ordered device list per ``DeviceListMode`` and a
re-entrant lock per list. Batch orchestrators take the same lock for their
whole run, so hotplug changes and a running batch never interleave.

Hotplug additions are resolved on their own short-lived threads because
resolution can block for seconds (lsblk, sfdisk, mounting partitions to
measure used space, and the settle delay of reset mode). The hotplug
reader only spawns them.

Usage:
    registry = DeviceRegistry()
    registry.set_state(WizardState.INSTALL_SELECTION)
    registry.scan(DeviceListMode.INSTALL)
    with registry.locked(DeviceListMode.INSTALL):
        devices = registry.devices(DeviceListMode.INSTALL)
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from livecopy.config import settings
from livecopy.domain import (
    UNRESOLVED,
    DeviceListMode,
    LayoutLabels,
    Partition,
    Resolution,
    Resolved,
    StorageDevice,
    WizardState,
)
from livecopy.logging import EventLogger, LoggerFactory
from livecopy.storage import devices as storage_devices
from livecopy.storage.exceptions import (
    CommandError,
    DeviceNotFoundError,
    PartitionTableError,
)


log = LoggerFactory.for_registry()

Listener = Callable[[DeviceListMode], None]


@dataclass
class Resolvers:
    """External queries used to build and describe devices."""

    resolve_device: Callable[[str, bool], Optional[StorageDevice]] = (
        storage_devices.resolve_device
    )
    list_devices: Callable[[bool], list[StorageDevice]] = (
        storage_devices.list_storage_devices
    )
    read_partitions: Callable[[StorageDevice], list[Partition]] = (
        storage_devices.read_partitions
    )
    query_used_space: Callable[[Partition, Optional[str]], Optional[int]] = (
        storage_devices.query_used_space
    )


@dataclass
class DeviceInfo:
    """Cached metadata of one device."""

    partitions: Resolution = UNRESOLVED
    is_live_system: Resolution = UNRESOLVED
    used_space: dict[tuple[str, Optional[str]], Optional[int]] = field(default_factory=dict)


class DeviceRegistry:
    def __init__(
        self,
        resolvers: Optional[Resolvers] = None,
        labels: Optional[LayoutLabels] = None,
        show_hard_disks: Optional[bool] = None,
        reset_must_init: Optional[bool] = None,
        settle_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.resolvers = resolvers or Resolvers()
        self.labels = labels or LayoutLabels(
            system=settings.get_setting("system_partition_label", "system"),
            boot=settings.get_setting("boot_partition_label", "boot"),
            data=settings.get_setting("data_partition_label", "persistence"),
        )
        if show_hard_disks is None:
            show_hard_disks = settings.get_bool("show_hard_disks")
        if reset_must_init is None:
            reset_must_init = settings.get_bool("reset_must_init", True)
        if settle_delay is None:
            settle_delay = settings.get_float(
                "settle_delay_seconds", settings.DEFAULT_SETTLE_DELAY_SECONDS
            )
        self.show_hard_disks = show_hard_disks
        self.reset_must_init = reset_must_init
        self.settle_delay = settle_delay
        self._sleep = sleep

        # the installer reads the target and the transfer source list
        install_lock = threading.RLock()
        self._locks = {
            DeviceListMode.INSTALL: install_lock,
            DeviceListMode.INSTALL_TRANSFER: install_lock,
            DeviceListMode.UPGRADE: threading.RLock(),
            DeviceListMode.RESET: threading.RLock(),
        }
        self._devices: dict[DeviceListMode, list[StorageDevice]] = {
            mode: [] for mode in DeviceListMode
        }
        self._state = WizardState.INSTALL_INFORMATION
        self._info: dict[StorageDevice, DeviceInfo] = {}
        self._info_lock = threading.Lock()
        self._listeners: list[Listener] = []
        self._resolver_threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()
        # bumped on every removal so in-flight additions of that name are dropped
        self._generations: dict[str, int] = {}
        self._generations_lock = threading.Lock()

    # ------------------------------------------------------------------
    # state and locking
    # ------------------------------------------------------------------

    @property
    def state(self) -> WizardState:
        return self._state

    def set_state(self, state: WizardState) -> None:
        if state is not self._state:
            log.debug(f"Wizard state {self._state.value} -> {state.value}")
        self._state = state

    def lock_for(self, mode: DeviceListMode) -> threading.RLock:
        return self._locks[mode]

    @contextmanager
    def locked(self, mode: DeviceListMode) -> Iterator[None]:
        with self._locks[mode]:
            yield

    def _generation(self, name: str) -> int:
        with self._generations_lock:
            return self._generations.get(name, 0)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, mode: DeviceListMode) -> None:
        for listener in list(self._listeners):
            try:
                listener(mode)
            except Exception:
                log.exception(f"Device list listener failed for {mode.value}")

    # ------------------------------------------------------------------
    # device lists
    # ------------------------------------------------------------------

    def devices(self, mode: DeviceListMode) -> list[StorageDevice]:
        with self._locks[mode]:
            return list(self._devices[mode])

    def find(self, mode: DeviceListMode, device_path: str) -> Optional[StorageDevice]:
        name = storage_devices.device_name_from_path(device_path)
        with self._locks[mode]:
            for device in self._devices[mode]:
                if device.matches_name(name):
                    return device
        return None

    def _upsert(self, mode: DeviceListMode, device: StorageDevice) -> bool:
        """Insert or replace a device, keeping the list sorted by path.

        Must be called with the mode lock held. Returns True when the device
        was not present before.
        """
        entries = self._devices[mode]
        for index, existing in enumerate(entries):
            if existing == device:
                entries[index] = device
                return False
        entries.append(device)
        entries.sort()
        return True

    def scan(self, mode: DeviceListMode) -> list[StorageDevice]:
        """Replace a device list with the devices currently attached."""
        found = self.resolvers.list_devices(self.show_hard_disks)
        for device in found:
            self._init_device(device, mode, settle=False)
        with self._locks[mode]:
            self._devices[mode] = sorted(found)
            result = list(self._devices[mode])
        log.info(f"Scanned {len(result)} devices for {mode.value}")
        self._notify(mode)
        return result

    def on_device_added(self, raw_path: str) -> list[threading.Thread]:
        """Handle a hotplug addition.

        Resolution runs on one new thread per device list that the current
        wizard state expects; the threads are returned for callers that want
        to wait for them.
        """
        modes = self._state.expected_modes()
        name = storage_devices.device_name_from_path(raw_path)
        EventLogger.log_device_hotplug(log, "added", name)
        if not modes:
            log.info(f"Device change not handled in state {self._state.value}")
            return []

        self._invalidate_by_name(name)
        generation = self._generation(name)
        threads = []
        for mode in modes:
            thread = threading.Thread(
                target=self._add_device,
                args=(raw_path, mode, generation),
                name=f"resolve-{mode.value}-{name}",
                daemon=True,
            )
            threads.append(thread)
        with self._threads_lock:
            self._resolver_threads = [t for t in self._resolver_threads if t.is_alive()]
            self._resolver_threads.extend(threads)
        for thread in threads:
            thread.start()
        return threads

    def _add_device(self, raw_path: str, mode: DeviceListMode, generation: int = 0) -> None:
        try:
            device = self.resolvers.resolve_device(raw_path, self.show_hard_disks)
        except DeviceNotFoundError as error:
            log.warning(f"Added device vanished before resolution: {error}")
            return
        except (CommandError, ValueError, KeyError) as error:
            log.error(f"Cannot resolve added device {raw_path}: {error}")
            return
        if device is None:
            return

        self._init_device(device, mode, settle=True)

        name = storage_devices.device_name_from_path(raw_path)
        with self._locks[mode]:
            if mode not in self._state.expected_modes():
                log.info(
                    f"Dropping {device.device} for {mode.value}: state is now "
                    f"{self._state.value}"
                )
                return
            if self._generation(name) != generation:
                log.info(f"Dropping {device.device} for {mode.value}: removed while resolving")
                return
            added = self._upsert(mode, device)
        if added:
            log.info(f"Added {device.format_label()} to {mode.value} list")
        else:
            log.debug(f"Refreshed {device.device} in {mode.value} list")
        self._notify(mode)

    def _init_device(self, device: StorageDevice, mode: DeviceListMode, settle: bool) -> None:
        """Resolve the metadata a device list needs before showing a device."""
        if mode is DeviceListMode.INSTALL:
            return
        if mode is DeviceListMode.RESET:
            if not self.reset_must_init:
                return
            if settle and self.settle_delay > 0:
                # partition tables of freshly attached devices are unreliable
                self._sleep(self.settle_delay)

        partitions = self.partitions(device)
        if not partitions:
            return
        if mode is DeviceListMode.UPGRADE:
            for partition in partitions:
                if partition.is_data_partition(self.labels):
                    self.used_space(partition)
            return
        for partition in partitions:
            self.used_space(partition)

    def on_device_removed(self, raw_path: str) -> list[DeviceListMode]:
        """Handle a hotplug removal; returns the lists the device left."""
        name = storage_devices.device_name_from_path(raw_path)
        EventLogger.log_device_hotplug(log, "removed", name)
        with self._generations_lock:
            self._generations[name] = self._generations.get(name, 0) + 1
        modes = self._state.expected_modes()
        if not modes:
            log.warning(f"Unsupported state for removal: {self._state.value}")
            return []

        removed_from = []
        for mode in modes:
            removed = None
            with self._locks[mode]:
                entries = self._devices[mode]
                for index, device in enumerate(entries):
                    if device.matches_name(name):
                        removed = entries.pop(index)
                        break
            if removed is not None:
                log.info(f"Removed {name} from {mode.value} list")
                removed_from.append(mode)
                self._forget(removed)
        for mode in removed_from:
            self._notify(mode)
        return removed_from

    def wait_for_resolvers(self, timeout: Optional[float] = None) -> None:
        with self._threads_lock:
            threads = list(self._resolver_threads)
        for thread in threads:
            thread.join(timeout)

    # ------------------------------------------------------------------
    # cached metadata
    # ------------------------------------------------------------------

    def info(self, device: StorageDevice) -> DeviceInfo:
        with self._info_lock:
            return self._info.setdefault(device, DeviceInfo())

    def _forget(self, device: StorageDevice) -> None:
        still_listed = any(
            device in entries for entries in self._devices.values()
        )
        if still_listed:
            return
        with self._info_lock:
            self._info.pop(device, None)

    def _invalidate_by_name(self, name: str) -> None:
        with self._info_lock:
            for device in [d for d in self._info if d.matches_name(name)]:
                del self._info[device]

    def partitions(self, device: StorageDevice) -> Optional[list[Partition]]:
        """Partitions of a device, or None if its table can not be read."""
        info = self.info(device)
        cached = info.partitions
        if isinstance(cached, Resolved):
            log.trace(f"Partition cache hit for {device.device}")
            return cached.value

        try:
            partitions: Optional[list[Partition]] = self.resolvers.read_partitions(device)
        except (PartitionTableError, DeviceNotFoundError) as error:
            log.warning(f"Cannot read partitions of {device.device}: {error}")
            partitions = None
        with self._info_lock:
            if not isinstance(info.partitions, Resolved):
                info.partitions = Resolved(partitions)
            return info.partitions.value

    def is_live_system(self, device: StorageDevice) -> bool:
        info = self.info(device)
        cached = info.is_live_system
        if isinstance(cached, Resolved):
            return cached.value
        partitions = self.partitions(device) or []
        value = any(p.is_system_partition(self.labels.system) for p in partitions)
        with self._info_lock:
            info.is_live_system = Resolved(value)
        return value

    def used_space(self, partition: Partition, sub_path: Optional[str] = None) -> Optional[int]:
        """Used bytes of a partition (or a sub path of it), cached per device."""
        owner = None
        with self._info_lock:
            for device, info in self._info.items():
                if device.owns_partition(partition):
                    owner = info
                    key = (partition.device, sub_path)
                    if key in info.used_space:
                        return info.used_space[key]
                    break

        value = self.resolvers.query_used_space(partition, sub_path)
        if owner is not None:
            with self._info_lock:
                owner.used_space[(partition.device, sub_path)] = value
        return value
