"""Selection state derived from the device registry.

The figures shown next to each device list (how many devices are selected,
whether the exchange slider is usable and how far it goes, whether an
upgrade can proceed) are recomputed from scratch whenever the registry
reports a change or the user changes the selection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from livecopy.domain import (
    DeviceListMode,
    PartitionState,
    StorageDevice,
    UpgradeConfig,
    UpgradeDecision,
)
from livecopy.planning.layout import (
    ExchangeLimit,
    classify,
    enlarged_system_size,
    exchange_limit,
)
from livecopy.planning.preflight import decide_upgrade
from livecopy.services.registry import DeviceRegistry


@dataclass(frozen=True)
class InstallSelection:
    selected: tuple[StorageDevice, ...]
    total: int
    exchange: ExchangeLimit
    states: dict[StorageDevice, PartitionState] = field(default_factory=dict)

    @property
    def can_proceed(self) -> bool:
        return bool(self.selected) and all(
            state is not PartitionState.TOO_SMALL for state in self.states.values()
        )


@dataclass(frozen=True)
class UpgradeSelection:
    selected: tuple[StorageDevice, ...]
    total: int
    decisions: dict[StorageDevice, UpgradeDecision] = field(default_factory=dict)

    @property
    def can_proceed(self) -> bool:
        return bool(self.selected) and all(d.possible for d in self.decisions.values())


@dataclass(frozen=True)
class ResetSelection:
    selected: tuple[StorageDevice, ...]
    total: int

    @property
    def can_proceed(self) -> bool:
        return bool(self.selected)


def _present(
    registry: DeviceRegistry, mode: DeviceListMode, selected: Iterable[StorageDevice]
) -> tuple[tuple[StorageDevice, ...], int]:
    # selections of devices that were unplugged meanwhile are dropped
    available = registry.devices(mode)
    return tuple(device for device in selected if device in available), len(available)


def install_selection(
    registry: DeviceRegistry,
    selected: Iterable[StorageDevice],
    system_size: int,
    requested_exchange_mb: int,
    boot_size: int,
) -> InstallSelection:
    devices, total = _present(registry, DeviceListMode.INSTALL, selected)
    required = boot_size + enlarged_system_size(system_size)
    states = {device: classify(device.size, required) for device in devices}
    return InstallSelection(
        selected=devices,
        total=total,
        exchange=exchange_limit(devices, system_size, requested_exchange_mb, boot_size),
        states=states,
    )


def upgrade_selection(
    registry: DeviceRegistry,
    selected: Iterable[StorageDevice],
    config: UpgradeConfig,
    required_boot_size: int,
) -> UpgradeSelection:
    devices, total = _present(registry, DeviceListMode.UPGRADE, selected)
    decisions = {
        device: decide_upgrade(device, config, registry, required_boot_size)
        for device in devices
    }
    return UpgradeSelection(selected=devices, total=total, decisions=decisions)


def reset_selection(
    registry: DeviceRegistry, selected: Iterable[StorageDevice]
) -> ResetSelection:
    devices, total = _present(registry, DeviceListMode.RESET, selected)
    return ResetSelection(selected=devices, total=total)


class SelectionModel:
    """Keeps a selection summary current for one device list.

    Usage:
        model = SelectionModel(registry, DeviceListMode.RESET,
                               lambda selected: reset_selection(registry, selected))
        model.select(device)
        model.summary.can_proceed
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        mode: DeviceListMode,
        compute: Callable[[list[StorageDevice]], object],
        on_change: Optional[Callable[[object], None]] = None,
    ):
        self.registry = registry
        self.mode = mode
        self.compute = compute
        self.on_change = on_change
        self.selected: list[StorageDevice] = []
        self.summary = compute([])
        registry.add_listener(self._registry_changed)

    def _registry_changed(self, mode: DeviceListMode) -> None:
        if mode is self.mode:
            self.refresh()

    def select(self, device: StorageDevice) -> None:
        if device not in self.selected:
            self.selected.append(device)
        self.refresh()

    def deselect(self, device: StorageDevice) -> None:
        if device in self.selected:
            self.selected.remove(device)
        self.refresh()

    def refresh(self) -> None:
        self.summary = self.compute(list(self.selected))
        self.selected = list(self.summary.selected)
        if self.on_change is not None:
            self.on_change(self.summary)
