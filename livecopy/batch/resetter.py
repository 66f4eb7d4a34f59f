"""Reset of existing live media to a clean state."""

from __future__ import annotations

from livecopy.batch.backend import DeviceTask
from livecopy.batch.orchestrator import BatchOrchestrator
from livecopy.domain import BatchKind, DeviceListMode, Phase, ResetConfig
from livecopy.planning.upgrade import LayoutRoles, identify_roles
from livecopy.storage.exceptions import DeviceValidationError


def reset_phases(config: ResetConfig, roles: LayoutRoles) -> list[Phase]:
    phases = []
    if config.backup:
        phases.append(Phase.BACKING_UP_USER_DATA)
    if roles.exchange is not None:
        if config.format_exchange_partition:
            phases.append(Phase.FORMATTING_EXCHANGE_PARTITION)
        elif config.clean_exchange_partition:
            phases.append(Phase.REMOVING_FILES)
    if roles.data is not None:
        if config.format_data_partition:
            phases.append(Phase.FORMATTING_DATA_PARTITION)
        elif config.clean_data_partition:
            phases.append(Phase.RESETTING_DATA_PARTITION)
    if config.restore_entries:
        phases.append(Phase.RESTORING_USER_DATA)
    return phases


class Resetter(BatchOrchestrator):
    kind = BatchKind.RESET
    mode = DeviceListMode.RESET

    def process_device(self, task: DeviceTask) -> None:
        config: ResetConfig = task.job.config
        partitions = self.registry.partitions(task.device)
        if partitions is None:
            raise DeviceValidationError(task.device.name, "partition table is unreadable")
        # raises PartitionTableError for ambiguous layouts
        roles = identify_roles(partitions, self.registry.labels)
        phases = reset_phases(config, roles)
        if not phases:
            self.log.info(f"Nothing to reset on {task.device.device}")
        for phase in phases:
            self.run_phase(phase, task)
