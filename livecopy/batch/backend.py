"""Partitioning backends executing the phases of a batch."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional, Protocol

from livecopy.config import settings
from livecopy.domain import (
    BatchJob,
    Phase,
    PartitionSizes,
    StorageDevice,
    UpgradeDecision,
)
from livecopy.logging import LoggerFactory
from livecopy.storage import devices as storage_devices
from livecopy.storage.exceptions import CommandError, PhaseError


log = LoggerFactory.for_batch("backend")


@dataclass
class DeviceTask:
    """Everything a backend needs to process one device of a job."""

    device: StorageDevice
    job: BatchJob
    index: int
    sizes: Optional[PartitionSizes] = None
    exchange_label: Optional[str] = None
    decision: Optional[UpgradeDecision] = None


class PartitioningBackend(Protocol):
    def run_phase(self, phase: Phase, task: DeviceTask) -> None:
        """Run one phase; raise PhaseError with a readable message on failure."""


def _json_default(value):
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def task_environment(task: DeviceTask) -> dict[str, str]:
    env = {
        "LIVECOPY_KIND": task.job.kind.value,
        "LIVECOPY_DEVICE": task.device.device,
        "LIVECOPY_DEVICE_INDEX": str(task.index),
        "LIVECOPY_CONFIG": json.dumps(asdict(task.job.config), default=_json_default),
    }
    if task.sizes is not None:
        env.update(
            {
                "LIVECOPY_BOOT_MB": str(task.sizes.boot_mb),
                "LIVECOPY_EXCHANGE_MB": str(task.sizes.exchange_mb),
                "LIVECOPY_PERSISTENT_MB": str(task.sizes.persistent_mb),
                "LIVECOPY_SYSTEM_MB": str(task.sizes.system_mb),
            }
        )
    if task.exchange_label is not None:
        env["LIVECOPY_EXCHANGE_LABEL"] = task.exchange_label
    if task.decision is not None:
        env["LIVECOPY_SYSTEM_VARIANT"] = task.decision.system_variant.value
        env["LIVECOPY_EFI_VARIANT"] = task.decision.efi_variant.value
        env["LIVECOPY_BACKUP_REQUIRED"] = "1" if task.decision.backup_required else "0"
    return env


class ScriptBackend:
    """Runs ``<script> <phase-id> <device>`` for every phase."""

    def __init__(self, script: Optional[str] = None):
        self.script = script or settings.get_setting(
            "backend_script", settings.DEFAULT_SETTINGS["backend_script"]
        )

    def run_phase(self, phase: Phase, task: DeviceTask) -> None:
        env = dict(os.environ)
        env.update(task_environment(task))
        command = [self.script, phase.value, task.device.device]
        try:
            storage_devices.run_checked_command(command, env=env)
        except CommandError as error:
            log.error(f"{phase.value} failed on {task.device.device}: {error.message}")
            raise PhaseError(
                error.message or f"{phase.value} failed",
                device=task.device.device,
                phase=phase.value,
            ) from error
        except OSError as error:
            raise PhaseError(
                f"Cannot run backend {self.script}: {error}",
                device=task.device.device,
                phase=phase.value,
            ) from error
