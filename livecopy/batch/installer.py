"""Installation of the live system onto new media."""

from __future__ import annotations

from typing import Optional

from livecopy.batch.backend import DeviceTask, PartitioningBackend
from livecopy.batch.orchestrator import BatchOrchestrator
from livecopy.batch.results import ResultSink
from livecopy.domain import BatchKind, DeviceListMode, InstallConfig, Phase
from livecopy.planning.layout import install_partition_sizes
from livecopy.services.registry import DeviceRegistry
from livecopy.services.system_source import SystemSource


INSTALL_PHASES = (
    Phase.CREATING_FILE_SYSTEMS,
    Phase.COPYING_FILES,
    Phase.UNMOUNTING_FILE_SYSTEMS,
    Phase.WRITING_BOOT_SECTOR,
)


def numbered_label(label: str, pattern: str, number: int, min_digits: int) -> str:
    """Replace every occurrence of ``pattern`` in ``label`` with ``number``.

    >>> numbered_label("Stick ##", "##", 7, 3)
    'Stick 007'
    """
    if not pattern or pattern not in label:
        return label
    return label.replace(pattern, str(number).zfill(max(1, min_digits)))


class Installer(BatchOrchestrator):
    kind = BatchKind.INSTALL
    mode = DeviceListMode.INSTALL

    def __init__(
        self,
        registry: DeviceRegistry,
        backend: PartitioningBackend,
        system_source: SystemSource,
        sink: Optional[ResultSink] = None,
        boot_size: Optional[int] = None,
        job_id: Optional[str] = None,
    ):
        super().__init__(
            registry,
            backend,
            sink=sink,
            source_device_type=system_source.device_type(),
            job_id=job_id,
        )
        self.system_source = system_source
        self.boot_size = boot_size
        self._system_size = 0
        self._auto_number = 0

    def prepare(self, config: InstallConfig) -> None:
        self._system_size = self.system_source.system_size()
        self._auto_number = config.auto_number_start

    def exchange_label(self, config: InstallConfig) -> str:
        label = numbered_label(
            config.exchange_label,
            config.auto_number_pattern,
            self._auto_number,
            config.auto_number_min_digits,
        )
        self._auto_number += config.auto_number_increment
        return label

    def process_device(self, task: DeviceTask) -> None:
        config: InstallConfig = task.job.config
        task.sizes = install_partition_sizes(
            self._system_size, task.device, config.exchange_mb, self.boot_size
        )
        if task.sizes.exchange_mb > 0:
            task.exchange_label = self.exchange_label(config)
        self.log.info(
            f"Installing to {task.device.device}: exchange={task.sizes.exchange_mb}MB "
            f"persistence={task.sizes.persistent_mb}MB"
        )
        for phase in INSTALL_PHASES:
            self.run_phase(phase, task)
