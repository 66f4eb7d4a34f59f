"""Receivers of batch progress."""

from __future__ import annotations

from typing import Optional, Protocol

from livecopy.domain import BatchKind, DeviceType, Phase, StorageDevice, StorageDeviceResult
from livecopy.logging import EventLogger, LoggerFactory


class ResultSink(Protocol):
    def device_started(self, device: StorageDevice, index: int, total: int) -> None: ...

    def phase_changed(self, device: StorageDevice, phase: Phase) -> None: ...

    def device_finished(self, result: StorageDeviceResult) -> None: ...

    def batch_finished(
        self, success_count: int, total: int, source_device_type: DeviceType
    ) -> None: ...


class NullResultSink:
    def device_started(self, device, index, total) -> None:
        pass

    def phase_changed(self, device, phase) -> None:
        pass

    def device_finished(self, result) -> None:
        pass

    def batch_finished(self, success_count, total, source_device_type) -> None:
        pass


def finished_message(
    kind: BatchKind, success_count: int, total: int, source_device_type: DeviceType
) -> str:
    """Summary shown when a batch is done.

    The reminder to unplug only makes sense when the system was started
    from removable media.
    """
    summary = f"{kind.value.capitalize()} finished: {success_count} of {total} devices succeeded."
    if source_device_type.is_removable:
        return f"{summary} Remove the source medium before rebooting."
    return summary


class LoggingResultSink:
    """Result sink writing every event to the batch log."""

    def __init__(self, kind: BatchKind, job_id: Optional[str] = None):
        self.kind = kind
        self.log = LoggerFactory.for_batch(job_id)
        self.last_message: Optional[str] = None

    def device_started(self, device: StorageDevice, index: int, total: int) -> None:
        EventLogger.log_device_started(self.log, self.kind.value, device.device, index, total)

    def phase_changed(self, device: StorageDevice, phase: Phase) -> None:
        self.log.info(f"{device.device}: {phase.value}", phase=phase.value)

    def device_finished(self, result: StorageDeviceResult) -> None:
        EventLogger.log_device_finished(
            self.log,
            self.kind.value,
            result.device.device,
            result.error_message,
            duration_seconds=round(result.duration(), 2),
        )

    def batch_finished(
        self, success_count: int, total: int, source_device_type: DeviceType
    ) -> None:
        self.last_message = finished_message(
            self.kind, success_count, total, source_device_type
        )
        if success_count == total:
            self.log.success(self.last_message)
        else:
            self.log.warning(self.last_message)
