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

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "FEDORA_BOOT_BACKUP_LOG_DIR",
        Path.home() / ".local" / "state" / "fedora-boot-backup" / "logs",
    )
)


_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <16} | {message}"
)
_DEBUG_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <16} | {extra[tags]} | {message}"
)


def _should_log_command_output(record) -> bool:
    """Keep raw command stdout/stderr off the console unless tracing."""
    if record["level"].no >= logger.level("WARNING").no:
        return True
    if "command-output" not in record["extra"].get("tags", []):
        return True
    return record["level"].no <= logger.level("TRACE").no


def _console_format(record) -> str:
    if record["extra"].get("dry_run"):
        return "<yellow>[DRY-RUN]</yellow> {message}\n"
    return "<level>[{level: <7}]</level> {message}\n"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    quiet: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console and file logging for a backup or restore run.

    Logging Tiers:
    - CRITICAL/ERROR: Aborted workflows, failed external commands
    - SUCCESS/INFO: Workflow steps, UUID mappings, summaries
    - DEBUG: Every external command with its output
    - TRACE: Raw command output on the console as well

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        quiet: Only show warnings and errors on the console
        log_dir: Custom log directory (defaults to ~/.local/state/fedora-boot-backup/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    elif quiet:
        console_level = "WARNING"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        colorize=True,
        format=_console_format,
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"Log directory {log_dir} unavailable, file logging disabled: {error}")
        return logger

    # SINK 2: Operations Log - what happened to which device (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=_FILE_FORMAT,
    )

    # SINK 3: Debug Log - every command line and its output
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=_DEBUG_FILE_FORMAT,
        )

    # SINK 4: Structured JSON Log - one record per line (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def _new_job_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex[:8]}"


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Bind only the context fields that were given."""
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
    Wrap a whole backup or restore run.

    Every record emitted inside the block, including those from loggers
    created elsewhere, carries the run's job_id and the given details.
    Start and finish go to DEBUG; a failure is logged at ERROR with its
    type and elapsed time, then re-raised.

    Example:
        with operation_context("restore", mode="live", preview=False) as log:
            log.info("Detecting target USB layout")
    """
    job_id = _new_job_id(operation)
    title = operation.capitalize()

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        started = time.monotonic()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        log.debug(f"{title} started", **details)

        try:
            yield log
        except Exception as error:
            log.error(
                f"{title} failed",
                error=str(error),
                error_type=type(error).__name__,
                duration_seconds=round(time.monotonic() - started, 2),
            )
            raise
        log.debug(f"{title} finished", duration_seconds=round(time.monotonic() - started, 2))


class LoggerFactory:
    """Pre-bound loggers, one per component.

    backup and restore loggers get a fresh job_id unless one is passed in,
    so a restore run's records can be grepped out of operations.log.
    """

    @staticmethod
    def for_backup(job_id: str | None = None) -> Logger:
        return logger.bind(job_id=job_id or _new_job_id("backup"), source="backup", tags=["backup"])

    @staticmethod
    def for_restore(job_id: str | None = None) -> Logger:
        return logger.bind(
            job_id=job_id or _new_job_id("restore"), source="restore", tags=["restore"]
        )

    @staticmethod
    def for_storage() -> Logger:
        """Block devices, partitioning, formatting, mounts."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_system() -> Logger:
        """CLI startup, settings and tool checks."""
        return logger.bind(source="system", tags=["system"])
