from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger
    from livecopy.app.context import AppContext

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "LIVECOPY_LOG_DIR",
        Path.home() / ".local" / "state" / "livecopy" / "logs",
    )
)


def _should_log_hotplug(record) -> bool:
    """Filter ignored udisks monitor lines - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "hotplug" in tags and record["extra"].get("ignored_line"):
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_cache(record) -> bool:
    """Filter cache hit logs - these are noisy and not useful."""
    message = record["message"].lower()

    if "cache hit" in message or "cached" in message:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_hotplug(record) and _should_log_cache(record)


def setup_logging(
    app_context: AppContext | None,
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        app_context: Application context receiving a copy of each log line
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/livecopy/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <16}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <16} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <16} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <16} | "
                "{message}"
            ),
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    if app_context is not None:
        min_level = "TRACE" if trace else "DEBUG" if debug else "INFO"

        def _app_context_sink(message) -> None:
            record = message.record
            if record["level"].no >= logger.level(min_level).no:
                app_context.add_log(record["message"])

        logger.add(_app_context_sink, enqueue=True, filter=_combined_filter)

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["batch", "install"])
        source: Source component (e.g., "registry", "hotplug")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion and failure with duration tracking.

    Example:
        with operation_context("install", devices=3) as log:
            log.debug("Starting first device")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_batch(job_id: str | None = None, **details) -> Logger:
        """Logger for install/upgrade/reset batches."""
        if job_id is None:
            job_id = f"batch-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="batch", tags=["batch", "storage"], **details
        )

    @staticmethod
    def for_planner() -> Logger:
        """Logger for partition layout and upgrade planning."""
        return logger.bind(source="planner", tags=["planner"])

    @staticmethod
    def for_registry() -> Logger:
        """Logger for the storage device registry."""
        return logger.bind(source="registry", tags=["registry", "usb"])

    @staticmethod
    def for_hotplug() -> Logger:
        """Logger for the udisks hotplug monitor."""
        return logger.bind(source="hotplug", tags=["hotplug", "usb"])

    @staticmethod
    def for_storage() -> Logger:
        """Logger for lsblk/sfdisk device queries."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for hotplug bursts and progress polling that should only be
    emitted at intervals.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.
    """

    @staticmethod
    def log_device_hotplug(log: Logger, action: str, device: str, **extra) -> None:
        """Log storage device hotplug event."""
        log.info(
            f"Storage device {action}",
            event_type="device_hotplug",
            action=action,  # "added" or "removed"
            device_name=device,
            **extra,
        )

    @staticmethod
    def log_device_started(
        log: Logger, kind: str, device: str, index: int, total: int, **extra
    ) -> None:
        log.info(
            f"{kind.capitalize()} of {device} started ({index}/{total})",
            event_type="device_started",
            batch_kind=kind,
            device_path=device,
            **extra,
        )

    @staticmethod
    def log_device_finished(
        log: Logger, kind: str, device: str, error: str | None, **extra
    ) -> None:
        if error is None:
            log.success(
                f"{kind.capitalize()} of {device} succeeded",
                event_type="device_finished",
                batch_kind=kind,
                device_path=device,
                **extra,
            )
        else:
            log.error(
                f"{kind.capitalize()} of {device} failed: {error}",
                event_type="device_finished",
                batch_kind=kind,
                device_path=device,
                error=error,
                **extra,
            )
