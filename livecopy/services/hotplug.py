"""Hotplug monitoring through the udisks command line monitor.

``udisksctl monitor`` prints one line per object change. Only additions and
removals of block devices matter here:

    /org/freedesktop/UDisks2/block_devices/sdb: Added /org/freedesktop/UDisks2/block_devices/sdb
    added:     /org/freedesktop/UDisks/devices/sdb    (legacy udisks)

Every other line is ignored. The monitor thread never resolves devices
itself; it hands the raw path to the registry, which resolves on its own
threads.
"""

from __future__ import annotations

import re
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from livecopy.config import settings
from livecopy.logging import LoggerFactory, ThrottledLogger


log = LoggerFactory.for_hotplug()

ADDED_PATTERN = re.compile(r".*: Added (/org/freedesktop/UDisks2/block_devices/\S*)")
REMOVED_PATTERN = re.compile(r".*: Removed (/org/freedesktop/UDisks2/block_devices/\S*)")
LEGACY_ADDED_PREFIX = "added:"
LEGACY_REMOVED_PREFIX = "removed:"


class HotplugEventKind(Enum):
    ADDED = "added"
    REMOVED = "removed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class HotplugEvent:
    kind: HotplugEventKind
    path: Optional[str] = None


def classify_line(line: str) -> HotplugEvent:
    """Classify one line of monitor output."""
    stripped = line.strip()
    match = ADDED_PATTERN.match(stripped)
    if match:
        return HotplugEvent(HotplugEventKind.ADDED, match.group(1))
    match = REMOVED_PATTERN.match(stripped)
    if match:
        return HotplugEvent(HotplugEventKind.REMOVED, match.group(1))
    if stripped.startswith(LEGACY_ADDED_PREFIX):
        path = stripped[len(LEGACY_ADDED_PREFIX):].strip()
        if path:
            return HotplugEvent(HotplugEventKind.ADDED, path)
    if stripped.startswith(LEGACY_REMOVED_PREFIX):
        path = stripped[len(LEGACY_REMOVED_PREFIX):].strip()
        if path:
            return HotplugEvent(HotplugEventKind.REMOVED, path)
    return HotplugEvent(HotplugEventKind.IGNORED)


class HotplugMonitor:
    """Reads monitor output on a background thread and dispatches events.

    Usage:
        monitor = HotplugMonitor(registry.on_device_added, registry.on_device_removed)
        monitor.start()
        ...
        monitor.stop()
    """

    def __init__(
        self,
        on_added: Callable[[str], object],
        on_removed: Callable[[str], object],
        command: Optional[list[str]] = None,
    ):
        self.on_added = on_added
        self.on_removed = on_removed
        self.command = command or list(
            settings.get_setting("monitor_command", ["udisksctl", "monitor"])
        )
        self._process: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._throttled = ThrottledLogger(log, interval_seconds=10.0)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def handle_line(self, line: str) -> HotplugEvent:
        event = classify_line(line)
        if event.kind is HotplugEventKind.ADDED:
            self.on_added(event.path)
        elif event.kind is HotplugEventKind.REMOVED:
            self.on_removed(event.path)
        else:
            log.bind(ignored_line=True).trace(f"Ignoring monitor line: {line.rstrip()}")
        return event

    def process(self, lines: Iterable[str]) -> None:
        for line in lines:
            if self._stop.is_set():
                break
            self.handle_line(line)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        try:
            self._process = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
            )
        except OSError as error:
            log.error(f"Cannot start hotplug monitor {' '.join(self.command)}: {error}")
            raise
        self._thread = threading.Thread(
            target=self._monitor_loop,
            args=(self._process,),
            name="hotplug-monitor",
            daemon=True,
        )
        self._thread.start()
        log.info(f"Hotplug monitor started: {' '.join(self.command)}")

    def _monitor_loop(self, process: subprocess.Popen) -> None:
        if process.stdout is None:
            log.error("Hotplug monitor has no output stream")
            return
        self.process(process.stdout)
        return_code = process.wait()
        if not self._stop.is_set():
            self._throttled.info(
                "exited", f"Hotplug monitor exited with code {return_code}"
            )

    def stop(self, timeout: float = 3.0) -> None:
        self._stop.set()
        if self._process is not None and self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._process.kill()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        self._process = None
        log.info("Hotplug monitor stopped")
