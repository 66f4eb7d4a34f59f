"""Upgrade of existing live media in place."""

from __future__ import annotations

from typing import Optional

from livecopy.batch.backend import DeviceTask, PartitioningBackend
from livecopy.batch.orchestrator import BatchOrchestrator
from livecopy.batch.results import ResultSink
from livecopy.config import settings
from livecopy.domain import (
    BatchKind,
    DeviceListMode,
    DeviceType,
    Phase,
    RepartitionStrategy,
    UpgradeConfig,
    UpgradeDecision,
)
from livecopy.planning.preflight import decide_upgrade
from livecopy.services.registry import DeviceRegistry
from livecopy.storage.exceptions import UpgradeNotPossibleError


SYSTEM_PHASES = (
    Phase.RESETTING_SYSTEM_PARTITION,
    Phase.COPYING_FILES,
    Phase.UNMOUNTING_FILE_SYSTEMS,
    Phase.WRITING_BOOT_SECTOR,
)


def upgrade_phases(config: UpgradeConfig, decision: UpgradeDecision) -> list[Phase]:
    phases = []
    if decision.backup_required or config.automatic_backup:
        phases.append(Phase.BACKING_UP_USER_DATA)
    if (
        decision.repartition_required
        or config.repartition_strategy is not RepartitionStrategy.KEEP
    ):
        phases.append(Phase.CHANGING_PARTITION_SIZES)
    if config.reset_data_partition:
        phases.append(Phase.RESETTING_DATA_PARTITION)
    if config.overwrite_list or config.remove_hidden_files:
        phases.append(Phase.REMOVING_FILES)
    if config.upgrade_system_partition:
        phases.extend(SYSTEM_PHASES)
    if decision.backup_required:
        phases.append(Phase.RESTORING_USER_DATA)
    return phases


class Upgrader(BatchOrchestrator):
    kind = BatchKind.UPGRADE
    mode = DeviceListMode.UPGRADE

    def __init__(
        self,
        registry: DeviceRegistry,
        backend: PartitioningBackend,
        sink: Optional[ResultSink] = None,
        source_device_type: DeviceType = DeviceType.USB_FLASH_DRIVE,
        required_boot_size: Optional[int] = None,
        job_id: Optional[str] = None,
    ):
        super().__init__(
            registry,
            backend,
            sink=sink,
            source_device_type=source_device_type,
            job_id=job_id,
        )
        if required_boot_size is None:
            required_boot_size = settings.boot_partition_size()
        self.required_boot_size = required_boot_size

    def process_device(self, task: DeviceTask) -> None:
        config: UpgradeConfig = task.job.config
        task.decision = decide_upgrade(
            task.device, config, self.registry, self.required_boot_size
        )
        if not task.decision.possible:
            raise UpgradeNotPossibleError(task.device.device, task.decision.reason)
        self.log.info(
            f"Upgrading {task.device.device}: system={task.decision.system_variant.value} "
            f"efi={task.decision.efi_variant.value}"
        )
        for phase in upgrade_phases(config, task.decision):
            self.run_phase(phase, task)
