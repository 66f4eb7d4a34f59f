"""Custom exceptions for storage planning and batch operations.

Exception Hierarchy:
    StorageError (base)
        ├── CommandError
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   └── DeviceValidationError
        ├── PartitionTableError
        ├── PlanningError
        │   └── DeviceTooSmallError
        ├── PreflightError
        │   ├── PersistenceTooSmallError
        │   ├── ExchangeTooSmallError
        │   ├── TransferSourceIsTargetError
        │   ├── ExchangeCopyConflictError
        │   ├── UpgradeNotPossibleError
        │   └── BackupDestinationError
        └── BatchError
            ├── PhaseError
            └── BatchStateError

Usage:
    from livecopy.storage.exceptions import DeviceTooSmallError

    if overhead < 0:
        raise DeviceTooSmallError(device_size, required_size)
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all storage operations."""


class CommandError(StorageError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, message: str = ""):
        self.command = command
        self.returncode = returncode
        self.message = message
        detail = message or "Command failed"
        super().__init__(f"Command failed ({' '.join(command)}): {detail}")


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceValidationError(DeviceError):
    """Device failed validation checks."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Device validation failed for {device_name}: {reason}")


class PartitionTableError(StorageError):
    """Partition table could not be read or parsed."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Unable to read partition table of {device_name}: {reason}")


class PlanningError(StorageError):
    """Base exception for partition layout planning."""


class DeviceTooSmallError(PlanningError):
    """Device cannot hold the boot and system partitions."""

    def __init__(self, device_size: int, required_size: int):
        self.device_size = device_size
        self.required_size = required_size
        super().__init__(
            f"Device ({device_size} bytes) is too small for boot and system "
            f"partitions ({required_size} bytes)"
        )


class PreflightError(StorageError):
    """Base exception for checks run before a batch starts."""


class PersistenceTooSmallError(PreflightError):
    """Target data partition is missing or too small for the copied data."""

    def __init__(self, device_name: str, data_size: int, target_size: int):
        self.device_name = device_name
        self.data_size = data_size
        self.target_size = target_size
        if target_size == 0:
            message = f"{device_name} has no data partition to copy into"
        else:
            message = (
                f"Data partition of {device_name} ({target_size} bytes) is too "
                f"small for {data_size} bytes"
            )
        super().__init__(message)


class ExchangeTooSmallError(PreflightError):
    """Target exchange partition is missing or too small for the copied data."""

    def __init__(self, device_name: str, data_size: int, target_size: int):
        self.device_name = device_name
        self.data_size = data_size
        self.target_size = target_size
        if target_size == 0:
            message = f"{device_name} has no exchange partition to copy into"
        else:
            message = (
                f"Exchange partition of {device_name} ({target_size} bytes) is "
                f"too small for {data_size} bytes"
            )
        super().__init__(message)


class TransferSourceIsTargetError(PreflightError):
    """The transfer source device was also selected as a target."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(
            f"{device_name} is the transfer source and cannot be a target"
        )


class ExchangeCopyConflictError(PreflightError):
    """Exchange copy and exchange transfer were both requested."""

    def __init__(self):
        super().__init__("Exchange copy and exchange transfer are mutually exclusive")


class UpgradeNotPossibleError(PreflightError):
    """The existing layout of a device cannot be upgraded."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Cannot upgrade {device_name}: {reason}")


class BackupDestinationError(PreflightError):
    """The automatic backup destination is unusable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Backup destination {path!r} {reason}")


class BatchError(StorageError):
    """Base exception for batch operations."""


class PhaseError(BatchError):
    """A partitioning backend phase failed on one device."""

    def __init__(self, message: str, device: str | None = None, phase: str | None = None):
        self.device = device
        self.phase = phase
        super().__init__(message)


class BatchStateError(BatchError):
    """Batch orchestrator used outside its Idle -> Running -> Finished cycle."""

    def __init__(self, state: str, action: str):
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} a batch in state {state}")
