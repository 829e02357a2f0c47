from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Sequence

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "ZFS_BMR_LOG_DIR",
        Path.home() / ".local" / "state" / "zfs-bmr" / "logs",
    )
)

REDACTED = "********"


def _should_log_progress(record) -> bool:
    """Progress ticks are only interesting on the console when debugging."""
    tags = record["extra"].get("tags", [])
    if "progress" in tags:
        return record["level"].no >= logger.level("DEBUG").no
    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: failed stages, cleanup problems
    - SUCCESS/INFO: state transitions, artifacts written, verdicts
    - DEBUG: command lines (secrets redacted), stderr tails
    - TRACE: progress polling ticks

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/zfs-bmr/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_should_log_progress,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"Log directory {log_dir} unavailable, file logging disabled: {error}")
        return logger

    # SINK 2: Operations Log - Important events only (INFO+)
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
            "{extra[source]: <12} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log (INFO+)
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
        tags: Tags for filtering (e.g., ["backup", "pipeline"])
        source: Source component (e.g., "backup", "mount")
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def redact_command(command: Sequence[str], secrets: Iterable[str] = ()) -> str:
    """Render a command line for logs with any secret values masked."""
    hidden = [secret for secret in secrets if secret]
    rendered = []
    for arg in command:
        text = str(arg)
        for secret in hidden:
            if secret in text:
                text = text.replace(secret, REDACTED)
        rendered.append(text)
    return " ".join(rendered)


@contextmanager
def operation_context(operation: str, factory: Callable[[str], Logger] | None = None, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.
    ``factory`` builds the yielded logger from the job id, e.g.
    ``LoggerFactory.for_backup``.

    Example:
        with operation_context("backup", LoggerFactory.for_backup, pool="rpool") as log:
            log.info("Snapshot created")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        if factory is None:
            log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        else:
            log = factory(job_id)

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except BaseException as e:
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
    def for_backup(job_id: str | None = None) -> Logger:
        """Logger for backup runs."""
        if job_id is None:
            job_id = f"backup-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="backup", tags=["backup"])

    @staticmethod
    def for_restore(job_id: str | None = None) -> Logger:
        """Logger for restore runs."""
        if job_id is None:
            job_id = f"restore-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="restore", tags=["restore"])

    @staticmethod
    def for_verify() -> Logger:
        return logger.bind(source="verify", tags=["verify", "integrity"])

    @staticmethod
    def for_mount() -> Logger:
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_snapshot() -> Logger:
        return logger.bind(source="snapshot", tags=["snapshot", "zfs"])

    @staticmethod
    def for_pipeline() -> Logger:
        return logger.bind(source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_provision() -> Logger:
        return logger.bind(source="provision", tags=["provision", "restore"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for pipeline progress updates, which should only be emitted
    at intervals.
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
