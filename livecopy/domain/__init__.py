"""Domain models for live medium installation, upgrade and reset."""

from __future__ import annotations

from .models import (
    MEGA,
    UNRESOLVED,
    BatchConfig,
    BatchJob,
    BatchKind,
    DataPartitionMode,
    DeviceListMode,
    DeviceType,
    EfiUpgradeVariant,
    InstallConfig,
    LayoutLabels,
    Partition,
    PartitionSizes,
    PartitionState,
    Phase,
    RepartitionStrategy,
    ResetConfig,
    Resolution,
    Resolved,
    StorageDevice,
    StorageDeviceResult,
    SystemUpgradeVariant,
    Unresolved,
    UpgradeConfig,
    UpgradeDecision,
    WizardState,
)


__all__ = [
    "MEGA",
    "UNRESOLVED",
    "BatchConfig",
    "BatchJob",
    "BatchKind",
    "DataPartitionMode",
    "DeviceListMode",
    "DeviceType",
    "EfiUpgradeVariant",
    "InstallConfig",
    "LayoutLabels",
    "Partition",
    "PartitionSizes",
    "PartitionState",
    "Phase",
    "RepartitionStrategy",
    "ResetConfig",
    "Resolution",
    "Resolved",
    "StorageDevice",
    "StorageDeviceResult",
    "SystemUpgradeVariant",
    "Unresolved",
    "UpgradeConfig",
    "UpgradeDecision",
    "WizardState",
]
