"""Batch execution of install, upgrade and reset jobs.

Main Classes:
    - Installer: partitions new media and copies the live system
    - Upgrader: upgrades existing media according to the upgrade analysis
    - Resetter: formats or cleans exchange and data partitions

Backends:
    - ScriptBackend: runs an external executable per phase
"""

from .backend import DeviceTask, PartitioningBackend, ScriptBackend
from .installer import Installer
from .orchestrator import BatchOrchestrator, BatchState
from .resetter import Resetter
from .results import LoggingResultSink, NullResultSink, ResultSink
from .upgrader import Upgrader

__all__ = [
    "BatchOrchestrator",
    "BatchState",
    "DeviceTask",
    "Installer",
    "LoggingResultSink",
    "NullResultSink",
    "PartitioningBackend",
    "ResultSink",
    "Resetter",
    "ScriptBackend",
    "Upgrader",
]
