"""Logging setup shared by the CLI and the Golden Loop.

Every record is rendered as ``[<iso timestamp>] [<SEVERITY>] <message>`` both on
the console and in the append-only execution log, which is what the
post-mortem analyzer reads back.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

import click

ROOT_LOGGER = "oroboreo"
SUCCESS = 25

logging.addLevelName(SUCCESS, "SUCCESS")

_SEVERITY_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    SUCCESS: "SUCCESS",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


def severity_name(levelno: int) -> str:
    return _SEVERITY_NAMES.get(levelno, logging.getLevelName(levelno))


def utc_timestamp(moment: datetime | None = None) -> str:
    value = moment or datetime.now(UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SeverityFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        moment = datetime.fromtimestamp(record.created, tz=UTC)
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return f"[{utc_timestamp(moment)}] [{severity_name(record.levelno)}] {message}"


class ExecutionLogHandler(logging.FileHandler):
    """Append-only handler bound to the session execution log."""

    def __init__(self, log_path: Path) -> None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(log_path, mode="a", encoding="utf-8", delay=True)
        self.log_path = log_path
        self.setFormatter(SeverityFormatter())


class ConsoleHandler(logging.Handler):
    """Writes through ``click.echo`` so output follows click's current stdout."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(SeverityFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record))
        except Exception:
            self.handleError(record)


def log_success(logger: logging.Logger, message: str, *args: object) -> None:
    logger.log(SUCCESS, message, *args)


def configure_logging(
    log_path: Path | None = None,
    *,
    console: bool = True,
    level: int = logging.INFO,
) -> logging.Logger:
    """Attach console and execution-log handlers to the package logger.

    Calling it again replaces the handlers installed by a previous call, so a
    CLI command can re-point the execution log after the working directory is
    known.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_oroboreo_managed", False):
            logger.removeHandler(handler)
            handler.close()

    logger.setLevel(level)
    if console:
        console_handler = ConsoleHandler()
        console_handler._oroboreo_managed = True  # type: ignore[attr-defined]
        logger.addHandler(console_handler)
    if log_path is not None:
        file_handler = ExecutionLogHandler(log_path)
        file_handler._oroboreo_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)
    return logger
