"""Checks run at batch start, before any device is touched.

The interactive selection already filters most problems, but devices can
change between selection and start. Every check here raises a
``PreflightError`` subclass describing the first problem found.
"""

from __future__ import annotations

import os
from typing import Iterable, Optional

from livecopy.domain import (
    MEGA,
    InstallConfig,
    PartitionSizes,
    RepartitionStrategy,
    StorageDevice,
    UpgradeConfig,
    UpgradeDecision,
)
from livecopy.logging import LoggerFactory
from livecopy.planning.layout import install_partition_sizes
from livecopy.planning.upgrade import analyze, identify_roles
from livecopy.services.registry import DeviceRegistry
from livecopy.services.system_source import SystemSource
from livecopy.storage.exceptions import (
    BackupDestinationError,
    DeviceValidationError,
    ExchangeCopyConflictError,
    ExchangeTooSmallError,
    PartitionTableError,
    PersistenceTooSmallError,
    PreflightError,
    TransferSourceIsTargetError,
    UpgradeNotPossibleError,
)


log = LoggerFactory.for_planner()

# sub paths of the data partition copied by the transfer options
TRANSFER_PATHS = {
    "home": "/rw/home/user/",
    "network": "/rw/etc/NetworkManager/",
    "printer": "/rw/etc/cups/",
    "firewall": "/rw/etc/lernstick-firewall/",
}


def _transfer_sub_paths(config: InstallConfig) -> list[str]:
    selected = {
        "home": config.transfer_home,
        "network": config.transfer_network,
        "printer": config.transfer_printer,
        "firewall": config.transfer_firewall,
    }
    return [TRANSFER_PATHS[key] for key, enabled in selected.items() if enabled]


def check_persistence(device: StorageDevice, data_size: int, sizes: PartitionSizes) -> None:
    if data_size > sizes.persistent_bytes:
        raise PersistenceTooSmallError(device.device, data_size, sizes.persistent_bytes)


def check_exchange(device: StorageDevice, data_size: int, sizes: PartitionSizes) -> None:
    target = sizes.exchange_mb * MEGA
    if target == 0 or data_size > target:
        raise ExchangeTooSmallError(device.device, data_size, target)


def check_install(
    devices: Iterable[StorageDevice],
    config: InstallConfig,
    system_source: SystemSource,
    registry: Optional[DeviceRegistry] = None,
    boot_size: Optional[int] = None,
) -> dict[StorageDevice, PartitionSizes]:
    """Validate an install selection and return the planned sizes per device.

    Raises:
        DeviceTooSmallError: If a device can not hold boot and system
        PreflightError: For every other problem, see the subclasses
    """
    transfer_source = config.transfer_source
    if config.copy_exchange and transfer_source is not None and config.transfer_exchange:
        raise ExchangeCopyConflictError()

    system_size = system_source.system_size()
    exchange_used = 0
    if config.copy_exchange:
        partition = system_source.exchange_partition()
        if partition is None:
            raise PreflightError("The running system has no exchange partition to copy")
        exchange_used = system_source.used_space(partition) or 0

    data_used = 0
    if config.copy_data:
        partition = system_source.data_partition()
        if partition is None:
            raise PreflightError("The running system has no data partition to copy")
        data_used = system_source.used_space(partition) or 0

    transfer_exchange_used = 0
    transfer_data_used = 0
    if transfer_source is not None:
        if registry is None:
            raise PreflightError("Transfer needs a device registry")
        transfer_exchange_used, transfer_data_used = _transfer_usage(
            transfer_source, config, registry
        )

    plans = {}
    for device in devices:
        if transfer_source is not None and device == transfer_source:
            raise TransferSourceIsTargetError(device.device)
        sizes = install_partition_sizes(system_size, device, config.exchange_mb, boot_size)
        if config.copy_exchange:
            check_exchange(device, exchange_used, sizes)
        if config.copy_data:
            check_persistence(device, data_used, sizes)
        if transfer_source is not None:
            if config.transfer_exchange:
                check_exchange(device, transfer_exchange_used, sizes)
            if transfer_data_used:
                check_persistence(device, transfer_data_used, sizes)
        plans[device] = sizes
    log.debug(f"Install preflight passed for {len(plans)} devices")
    return plans


def _transfer_usage(
    source: StorageDevice, config: InstallConfig, registry: DeviceRegistry
) -> tuple[int, int]:
    partitions = registry.partitions(source)
    if partitions is None:
        raise DeviceValidationError(source.name, "partition table is unreadable")
    try:
        roles = identify_roles(partitions, registry.labels)
    except PartitionTableError as error:
        raise DeviceValidationError(source.name, str(error)) from error

    exchange_used = 0
    if config.transfer_exchange:
        if roles.exchange is None:
            raise DeviceValidationError(source.name, "has no exchange partition")
        exchange_used = registry.used_space(roles.exchange) or 0

    data_used = 0
    sub_paths = _transfer_sub_paths(config)
    if sub_paths:
        if roles.data is None:
            raise DeviceValidationError(source.name, "has no data partition")
        for sub_path in sub_paths:
            data_used += registry.used_space(roles.data, sub_path) or 0
    return exchange_used, data_used


def check_backup_destination(path: str) -> None:
    if not path:
        raise BackupDestinationError(path, "is not set")
    if not os.path.exists(path):
        raise BackupDestinationError(path, "does not exist")
    if not os.path.isdir(path):
        raise BackupDestinationError(path, "is not a directory")
    if not os.access(path, os.R_OK):
        raise BackupDestinationError(path, "is not readable")


def check_upgrade(
    devices: Iterable[StorageDevice],
    config: UpgradeConfig,
    registry: DeviceRegistry,
    required_boot_size: int,
) -> dict[StorageDevice, UpgradeDecision]:
    """Validate an upgrade selection and return the decision per device."""
    if config.automatic_backup:
        check_backup_destination(config.backup_destination)
    if config.repartition_strategy is RepartitionStrategy.RESIZE and config.exchange_mb <= 0:
        raise PreflightError("Resizing the exchange partition needs a positive size")

    decisions = {}
    for device in devices:
        decision = decide_upgrade(device, config, registry, required_boot_size)
        if not decision.possible:
            raise UpgradeNotPossibleError(device.device, decision.reason)
        decisions[device] = decision
    return decisions


def decide_upgrade(
    device: StorageDevice,
    config: UpgradeConfig,
    registry: DeviceRegistry,
    required_boot_size: int,
) -> UpgradeDecision:
    """Run the upgrade analysis on the registry's view of a device."""
    partitions = registry.partitions(device)
    data_used = None
    for partition in partitions or []:
        if partition.is_data_partition(registry.labels):
            data_used = registry.used_space(partition)
            break
    return analyze(
        partitions,
        config.enlarged_system_size,
        required_boot_size,
        backup_selected=config.automatic_backup,
        labels=registry.labels,
        data_used_space=data_used,
    )
