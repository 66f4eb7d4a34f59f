"""Partition layout planning for new live media.

A live medium is laid out as::

    [boot][exchange (optional)][persistence (optional)][system]

The boot and system partitions are fixed by the system to copy. Whatever
remains (the "overhead") is shared between the exchange partition, whose
size the user picks in MB, and the persistence partition, which gets the
rest.

All functions are pure; no device is touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from livecopy.config import settings
from livecopy.domain import MEGA, PartitionSizes, PartitionState, StorageDevice
from livecopy.logging import LoggerFactory
from livecopy.storage.exceptions import DeviceTooSmallError


log = LoggerFactory.for_planner()


def minimum_partition_size() -> int:
    return settings.get_int(
        "minimum_partition_size_mb", settings.DEFAULT_MINIMUM_PARTITION_SIZE_MB
    ) * MEGA


def enlarged_system_size(system_size: int, factor: float | None = None) -> int:
    """System size plus the headroom reserved for future upgrades."""
    if factor is None:
        factor = settings.get_float("system_size_factor", settings.DEFAULT_SYSTEM_SIZE_FACTOR)
    return int(system_size * factor)


def classify(
    device_size: int,
    required_size: int,
    allow_exchange: bool = True,
    minimum_size: int | None = None,
) -> PartitionState:
    """Classify a device into a capacity tier.

    Args:
        device_size: Raw capacity of the device in bytes
        required_size: Boot plus system partition size in bytes
        allow_exchange: Whether the caller offers an adjustable exchange
            partition (the install selection does, list rendering of an
            unselected device does not)
        minimum_size: Smallest overhead worth an extra partition, defaults to
            the configured minimum partition size
    """
    if minimum_size is None:
        minimum_size = minimum_partition_size()
    if device_size < required_size:
        return PartitionState.TOO_SMALL
    if device_size - required_size < minimum_size:
        return PartitionState.ONLY_SYSTEM
    if allow_exchange:
        return PartitionState.EXCHANGE
    return PartitionState.PERSISTENCE


def plan(
    device_size: int,
    system_size: int,
    requested_exchange_mb: int,
    boot_size: int,
    max_exchange_mb: int | None = None,
) -> PartitionSizes:
    """Compute concrete partition sizes for one device.

    Args:
        device_size: Raw capacity in bytes
        system_size: System partition size in bytes
        requested_exchange_mb: Exchange size picked by the user
        boot_size: Boot partition size in bytes
        max_exchange_mb: Slider maximum of the current selection, which is
            the smallest overhead of all selected devices. Defaults to the
            overhead of this device.

    Raises:
        DeviceTooSmallError: If boot and system do not fit on the device
    """
    overhead = device_size - boot_size - system_size
    if overhead < 0:
        raise DeviceTooSmallError(device_size, boot_size + system_size)

    overhead_mb = overhead // MEGA
    if max_exchange_mb is None or max_exchange_mb > overhead_mb:
        max_exchange_mb = overhead_mb
    exchange_mb = max(0, min(requested_exchange_mb, max_exchange_mb))
    exchange_size = exchange_mb * MEGA

    # Compare in MB like the exchange slider does. Byte-exact overhead is
    # almost never a multiple of MEGA, and the remainder must not turn into
    # a persistence sliver when the user asked for everything.
    if overhead_mb == max_exchange_mb and exchange_size == max_exchange_mb * MEGA:
        persistent_size = 0
    else:
        persistent_size = device_size - boot_size - exchange_size - system_size

    sizes = PartitionSizes(
        boot_mb=boot_size // MEGA,
        system_mb=system_size // MEGA,
        exchange_mb=exchange_mb,
        persistent_mb=persistent_size // MEGA,
        persistent_bytes=persistent_size,
    )
    log.trace(
        f"Planned {device_size} bytes: boot={sizes.boot_mb}MB "
        f"exchange={sizes.exchange_mb}MB persistence={sizes.persistent_mb}MB "
        f"system={sizes.system_mb}MB"
    )
    return sizes


def install_partition_sizes(
    system_size: int,
    device: StorageDevice,
    exchange_mb: int,
    boot_size: int | None = None,
) -> PartitionSizes:
    """Partition sizes for installing a system of ``system_size`` bytes."""
    if boot_size is None:
        boot_size = settings.boot_partition_size()
    return plan(device.size, enlarged_system_size(system_size), exchange_mb, boot_size)


@dataclass(frozen=True)
class ExchangeLimit:
    """Bounds of the exchange size slider for an install selection."""

    enabled: bool
    maximum_mb: int
    value_mb: int


def exchange_limit(
    devices: Iterable[StorageDevice],
    system_size: int,
    requested_mb: int,
    boot_size: int | None = None,
) -> ExchangeLimit:
    """Exchange slider bounds for the currently selected devices.

    The slider is only enabled when every selected device offers room for
    an exchange partition; its maximum is the smallest overhead in MB.
    """
    if boot_size is None:
        boot_size = settings.boot_partition_size()
    required = boot_size + enlarged_system_size(system_size)

    devices = list(devices)
    if not devices:
        return ExchangeLimit(enabled=False, maximum_mb=0, value_mb=0)

    min_overhead = None
    for device in devices:
        if classify(device.size, required) is not PartitionState.EXCHANGE:
            return ExchangeLimit(enabled=False, maximum_mb=0, value_mb=0)
        overhead = device.size - required
        if min_overhead is None or overhead < min_overhead:
            min_overhead = overhead

    maximum_mb = min_overhead // MEGA
    return ExchangeLimit(
        enabled=True,
        maximum_mb=maximum_mb,
        value_mb=max(0, min(requested_mb, maximum_mb)),
    )
