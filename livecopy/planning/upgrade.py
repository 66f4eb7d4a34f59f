"""Upgrade feasibility of existing live media.

Two independent classifications are made for every device and then
combined by ``upgrade_decision``:

- ``system_upgrade_variant``: can the system partition hold the new,
  enlarged system, and if not, where does the space come from?
- ``efi_upgrade_variant``: is the boot partition big enough for the new
  boot payload, and if not, what has to move to enlarge it?

Both fail closed. Whenever the partition layout can not be identified with
certainty the result is IMPOSSIBLE or ENLARGE_BACKUP, never a variant that
could touch user data without a backup.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from livecopy.domain import (
    EfiUpgradeVariant,
    LayoutLabels,
    Partition,
    SystemUpgradeVariant,
    UpgradeDecision,
)
from livecopy.logging import LoggerFactory
from livecopy.storage.exceptions import PartitionTableError


log = LoggerFactory.for_planner()


@dataclass(frozen=True)
class LayoutRoles:
    boot: Optional[Partition] = None
    exchange: Optional[Partition] = None
    data: Optional[Partition] = None
    system: Optional[Partition] = None


def _single(candidates: list[Partition], role: str) -> Optional[Partition]:
    if len(candidates) > 1:
        names = ", ".join(partition.name for partition in candidates)
        raise PartitionTableError(candidates[0].name, f"several {role} partitions: {names}")
    return candidates[0] if candidates else None


def identify_roles(
    partitions: Sequence[Partition], labels: LayoutLabels = LayoutLabels()
) -> LayoutRoles:
    """Find the boot, exchange, data and system partitions of a live medium.

    Raises:
        PartitionTableError: If a role is claimed by more than one partition
    """
    system = _single(
        [p for p in partitions if p.is_system_partition(labels.system)], "system"
    )
    remaining = [p for p in partitions if p is not system]
    boot = _single([p for p in remaining if p.is_boot_partition(labels)], "boot")
    data = _single([p for p in remaining if p.is_data_partition(labels)], "data")
    exchange = _single(
        [p for p in remaining if p is not boot and p.is_exchange_partition(labels)],
        "exchange",
    )
    return LayoutRoles(boot=boot, exchange=exchange, data=data, system=system)


def system_upgrade_variant(
    partitions: Optional[Sequence[Partition]],
    enlarged_system_size: int,
    labels: LayoutLabels = LayoutLabels(),
    data_used_space: Optional[int] = None,
) -> SystemUpgradeVariant:
    """Classify how the system partition can take the enlarged system.

    Args:
        partitions: Existing partitions, or None if they could not be read
        enlarged_system_size: Size of the new system including headroom
        labels: Labels identifying the partition roles
        data_used_space: Used bytes on the data partition, None if unknown
    """
    if partitions is None:
        log.warning("Partition table unknown, upgrade impossible")
        return SystemUpgradeVariant.IMPOSSIBLE
    try:
        roles = identify_roles(partitions, labels)
    except PartitionTableError as error:
        log.warning(f"Ambiguous layout, upgrade impossible: {error}")
        return SystemUpgradeVariant.IMPOSSIBLE

    system = roles.system
    if system is None:
        log.debug("No system partition found")
        return SystemUpgradeVariant.IMPOSSIBLE
    if system.size >= enlarged_system_size:
        return SystemUpgradeVariant.REGULAR

    missing = enlarged_system_size - system.size
    data = roles.data
    if data is None or data.start > system.start:
        # the system partition can only grow into a data partition before it
        return SystemUpgradeVariant.IMPOSSIBLE
    if data.size < missing:
        return SystemUpgradeVariant.IMPOSSIBLE
    if data_used_space is None:
        return SystemUpgradeVariant.BACKUP
    if data.size - data_used_space >= missing:
        return SystemUpgradeVariant.REPARTITION
    return SystemUpgradeVariant.BACKUP


def efi_upgrade_variant(
    partitions: Optional[Sequence[Partition]],
    required_boot_size: int,
    labels: LayoutLabels = LayoutLabels(),
) -> EfiUpgradeVariant:
    """Classify whether the boot partition must grow.

    An exchange partition right behind the boot partition only holds
    plain files, so it can be copied aside and recreated smaller. A data
    partition anywhere on the device or any other successor of the boot
    partition needs a full backup cycle.
    """
    if partitions is None:
        return EfiUpgradeVariant.ENLARGE_BACKUP
    try:
        roles = identify_roles(partitions, labels)
    except PartitionTableError as error:
        log.warning(f"Ambiguous layout, boot partition needs backup: {error}")
        return EfiUpgradeVariant.ENLARGE_BACKUP

    boot = roles.boot
    if boot is None:
        return EfiUpgradeVariant.ENLARGE_BACKUP
    if boot.size >= required_boot_size:
        return EfiUpgradeVariant.REGULAR

    following = [p for p in partitions if p.start > boot.start]
    if not following:
        return EfiUpgradeVariant.ENLARGE_BACKUP
    successor = min(following, key=lambda p: p.start)
    if roles.data is not None:
        return EfiUpgradeVariant.ENLARGE_BACKUP
    if roles.exchange is not None and successor is roles.exchange:
        return EfiUpgradeVariant.ENLARGE_REPARTITION
    return EfiUpgradeVariant.ENLARGE_BACKUP


_SYSTEM_DECISIONS = {
    # variant: (possible, backup_required, repartition_required)
    SystemUpgradeVariant.REGULAR: (True, False, False),
    SystemUpgradeVariant.REPARTITION: (True, False, True),
    SystemUpgradeVariant.BACKUP: (True, True, True),
    SystemUpgradeVariant.IMPOSSIBLE: (False, False, False),
}

_EFI_DECISIONS = {
    # variant: (backup_required, repartition_required)
    EfiUpgradeVariant.REGULAR: (False, False),
    EfiUpgradeVariant.ENLARGE_REPARTITION: (False, True),
    EfiUpgradeVariant.ENLARGE_BACKUP: (True, True),
}


def upgrade_decision(
    system_variant: SystemUpgradeVariant,
    efi_variant: EfiUpgradeVariant,
    backup_selected: bool,
) -> UpgradeDecision:
    """Combine both classifications into what an upgrade has to do.

    A backup is required if either classification demands one; the upgrade
    is only possible when a required backup was selected by the user.
    """
    possible, system_backup, system_repartition = _SYSTEM_DECISIONS[system_variant]
    efi_backup, efi_repartition = _EFI_DECISIONS[efi_variant]
    backup_required = system_backup or efi_backup
    repartition_required = system_repartition or efi_repartition

    reason = ""
    if not possible:
        reason = "system partition can not be enlarged"
    elif backup_required and not backup_selected:
        possible = False
        reason = "a backup of the data partition is required"

    return UpgradeDecision(
        system_variant=system_variant,
        efi_variant=efi_variant,
        backup_required=backup_required,
        repartition_required=repartition_required,
        possible=possible,
        reason=reason,
    )


def analyze(
    partitions: Optional[Sequence[Partition]],
    enlarged_system_size: int,
    required_boot_size: int,
    backup_selected: bool,
    labels: LayoutLabels = LayoutLabels(),
    data_used_space: Optional[int] = None,
) -> UpgradeDecision:
    system_variant = system_upgrade_variant(
        partitions, enlarged_system_size, labels, data_used_space
    )
    efi_variant = efi_upgrade_variant(partitions, required_boot_size, labels)
    decision = upgrade_decision(system_variant, efi_variant, backup_selected)
    log.debug(
        f"Upgrade analysis: system={system_variant.value} efi={efi_variant.value} "
        f"possible={decision.possible}"
    )
    return decision
