"""Sequential batch execution over a fixed list of devices.

A batch processes its devices one after the other on a single worker
thread. It holds the registry lock of its device list for the whole run,
so hotplug changes to that list wait until the batch is done. A failing
device is recorded and the batch moves on to the next one.

Subclasses provide the per-device work in ``process_device`` by running
backend phases through ``run_phase``.
"""

from __future__ import annotations

import threading
import uuid
from enum import Enum
from typing import Iterable, Optional

from livecopy.batch.backend import DeviceTask, PartitioningBackend
from livecopy.batch.results import NullResultSink, ResultSink
from livecopy.domain import (
    BatchConfig,
    BatchJob,
    BatchKind,
    DeviceListMode,
    DeviceType,
    Phase,
    StorageDevice,
    StorageDeviceResult,
)
from livecopy.logging import LoggerFactory, operation_context
from livecopy.services.registry import DeviceRegistry
from livecopy.storage.exceptions import BatchStateError, StorageError


class BatchState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"


class BatchOrchestrator:
    kind: BatchKind = BatchKind.INSTALL
    mode: DeviceListMode = DeviceListMode.INSTALL

    def __init__(
        self,
        registry: DeviceRegistry,
        backend: PartitioningBackend,
        sink: Optional[ResultSink] = None,
        source_device_type: DeviceType = DeviceType.USB_FLASH_DRIVE,
        job_id: Optional[str] = None,
    ):
        self.registry = registry
        self.backend = backend
        self.sink = sink or NullResultSink()
        self.source_device_type = source_device_type
        self.job_id = job_id or f"{self.kind.value}-{uuid.uuid4().hex[:8]}"
        self.log = LoggerFactory.for_batch(self.job_id)
        self._state = BatchState.IDLE
        self._state_lock = threading.Lock()
        self._results_lock = threading.Lock()
        self._job: Optional[BatchJob] = None
        self._thread: Optional[threading.Thread] = None
        self._done = threading.Event()

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def job(self) -> Optional[BatchJob]:
        return self._job

    @property
    def devices_started(self) -> int:
        return self._job.devices_started if self._job else 0

    @property
    def results(self) -> list[StorageDeviceResult]:
        """Snapshot of the results recorded so far."""
        if self._job is None:
            return []
        with self._results_lock:
            return list(self._job.results)

    def _begin(self) -> None:
        with self._state_lock:
            if self._state is not BatchState.IDLE:
                raise BatchStateError(self._state.value, "start")
            self._state = BatchState.RUNNING

    def start(self, devices: Iterable[StorageDevice], config: BatchConfig) -> threading.Thread:
        """Run the batch on a worker thread."""
        devices = tuple(devices)
        self._begin()
        self._thread = threading.Thread(
            target=self._execute,
            args=(devices, config),
            name=f"batch-{self.job_id}",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def run(self, devices: Iterable[StorageDevice], config: BatchConfig) -> list[StorageDeviceResult]:
        """Run the batch on the calling thread and return its results."""
        devices = tuple(devices)
        self._begin()
        self._execute(devices, config)
        return self.results

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def _execute(self, devices: tuple[StorageDevice, ...], config: BatchConfig) -> None:
        self._job = BatchJob(kind=self.kind, devices=devices, config=config)
        total = len(devices)
        try:
            with self.registry.locked(self.mode):
                with operation_context(self.kind.value, devices=total, job=self.job_id):
                    self.prepare(config)
                    for index, device in enumerate(devices, start=1):
                        self._process(device, index, total)
        finally:
            success_count = sum(1 for result in self.results if result.succeeded)
            self._state = BatchState.FINISHED
            self._emit("batch_finished", success_count, total, self.source_device_type)
            self._done.set()

    def _process(self, device: StorageDevice, index: int, total: int) -> None:
        result = StorageDeviceResult(device=device)
        with self._results_lock:
            self._job.devices_started += 1
            self._job.results.append(result)
        self._emit("device_started", device, index, total)

        task = DeviceTask(device=device, job=self._job, index=index)
        error_message = None
        try:
            self.process_device(task)
        except StorageError as error:
            error_message = str(error)
        except Exception as error:
            self.log.exception(f"Unexpected failure on {device.device}")
            error_message = str(error) or type(error).__name__

        with self._results_lock:
            result.finish(error_message)
        if error_message is None:
            self.log.debug(f"{device.device} done in {result.duration():.1f}s")
        self._emit("device_finished", result)

    def _emit(self, event: str, *args) -> None:
        try:
            getattr(self.sink, event)(*args)
        except Exception:
            self.log.exception(f"Result sink failed on {event}")

    def run_phase(self, phase: Phase, task: DeviceTask) -> None:
        self._emit("phase_changed", task.device, phase)
        self.log.debug(f"{task.device.device}: {phase.value}")
        self.backend.run_phase(phase, task)

    def prepare(self, config: BatchConfig) -> None:
        """Hook run once with the registry lock held, before the first device."""

    def process_device(self, task: DeviceTask) -> None:
        raise NotImplementedError

