"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from livecopy.domain.models import MEGA


SETTINGS_PATH = Path(
    os.environ.get(
        "LIVECOPY_SETTINGS_PATH",
        Path.home() / ".config" / "livecopy" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BOOT_PARTITION_SIZE_MB = 256
DEFAULT_MINIMUM_PARTITION_SIZE_MB = 200
DEFAULT_SYSTEM_SIZE_FACTOR = 1.1
DEFAULT_SETTLE_DELAY_SECONDS = 7.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "boot_partition_size_mb": DEFAULT_BOOT_PARTITION_SIZE_MB,
    "minimum_partition_size_mb": DEFAULT_MINIMUM_PARTITION_SIZE_MB,
    "system_size_factor": DEFAULT_SYSTEM_SIZE_FACTOR,
    "settle_delay_seconds": DEFAULT_SETTLE_DELAY_SECONDS,
    "system_partition_label": "system",
    "boot_partition_label": "boot",
    "data_partition_label": "persistence",
    "exchange_partition_label": "Exchange",
    "show_hard_disks": False,
    "reset_must_init": True,
    "exchange_file_system": "exfat",
    "data_file_system": "ext4",
    "explicit_exchange_size_mb": 0,
    "monitor_command": ["udisksctl", "monitor"],
    "backend_script": "/usr/lib/livecopy/backend",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def boot_partition_size() -> int:
    """Boot partition size in bytes."""
    return get_int("boot_partition_size_mb", DEFAULT_BOOT_PARTITION_SIZE_MB) * MEGA


load_settings()
