from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .exceptions import ByokConfigurationError

LOGGER_NAME = "hsm_byok"

DEFAULT_LOG_FILE = "logs/hsm-byok.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5

FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"


def _non_negative(value: str | int, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ByokConfigurationError(f"{name} must be an integer, got: {value}") from exc
    if parsed < 0:
        raise ByokConfigurationError(f"{name} must be >= 0, got: {value}")
    return parsed


def _level_number(level: str | int, name: str) -> int:
    if isinstance(level, int):
        return level
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric_level = logging.getLevelName(normalized)
    if not isinstance(numeric_level, int):
        raise ByokConfigurationError(f"{name} is not a log level, got: {level}")
    return numeric_level


@dataclass(frozen=True)
class LogSettings:
    """Where and how much the export run logs."""

    log_file: Path
    level: int
    max_bytes: int
    backup_count: int

    @classmethod
    def resolve(
        cls,
        *,
        log_file: str | Path | None = None,
        level: str | int | None = None,
        max_bytes: int | None = None,
        backup_count: int | None = None,
    ) -> "LogSettings":
        """Explicit arguments win over HSM_BYOK_LOG_* variables, then defaults."""
        env = os.environ
        return cls(
            log_file=Path(log_file or env.get("HSM_BYOK_LOG_FILE", DEFAULT_LOG_FILE)),
            level=_level_number(
                level
                if level is not None
                else env.get("HSM_BYOK_LOG_LEVEL", DEFAULT_LOG_LEVEL),
                "HSM_BYOK_LOG_LEVEL",
            ),
            max_bytes=_non_negative(
                max_bytes
                if max_bytes is not None
                else env.get("HSM_BYOK_LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES),
                "HSM_BYOK_LOG_MAX_BYTES",
            ),
            backup_count=_non_negative(
                backup_count
                if backup_count is not None
                else env.get("HSM_BYOK_LOG_BACKUP_COUNT", DEFAULT_LOG_BACKUP_COUNT),
                "HSM_BYOK_LOG_BACKUP_COUNT",
            ),
        )


def _existing_file_handler(logger: logging.Logger, path: Path) -> RotatingFileHandler | None:
    target = path.resolve()
    for handler in logger.handlers:
        if (
            isinstance(handler, RotatingFileHandler)
            and Path(handler.baseFilename).resolve() == target
        ):
            return handler
    return None


def _ensure_console(logger: logging.Logger) -> None:
    # Operators see fallback warnings and failures without opening the log.
    if any(type(handler) is logging.StreamHandler for handler in logger.handlers):
        return
    console = logging.StreamHandler()
    console.setLevel(logging.WARNING)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console)


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    console: bool = False,
) -> logging.Logger:
    """
    Send the hsm_byok logger namespace to a rotating log file.

    Settings come from the keyword arguments, else HSM_BYOK_LOG_FILE,
    HSM_BYOK_LOG_LEVEL, HSM_BYOK_LOG_MAX_BYTES and HSM_BYOK_LOG_BACKUP_COUNT.
    Invalid values raise ByokConfigurationError. Calling it again for the
    same file only updates the level. With console=True, WARNING and above
    are also written to stderr.
    """
    settings = LogSettings.resolve(
        log_file=log_file,
        level=level,
        max_bytes=max_bytes,
        backup_count=backup_count,
    )

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(settings.level)
    logger.propagate = False
    if console:
        _ensure_console(logger)

    existing = _existing_file_handler(logger, settings.log_file)
    if existing is not None:
        existing.setLevel(settings.level)
        return logger

    try:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        raise ByokConfigurationError(
            f"Cannot open log file {settings.log_file}: {exc}"
        ) from exc
    handler.setLevel(settings.level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    logger.addHandler(handler)

    logger.info(
        "Logging to %s level=%s max_bytes=%d backup_count=%d",
        settings.log_file,
        logging.getLevelName(settings.level),
        settings.max_bytes,
        settings.backup_count,
    )
    return logger
