"""
Structured Logging Setup

Consistent logging configuration across all services.
Uses JSON format for structured logs in production.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

LOGGER_PREFIX = "modbus_influx"

# Level names accepted on the command line and in the environment
LOG_LEVELS: dict[str, int] = {
    "off": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    _RESERVED = frozenset((
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "service",
        "message", "taskName",
    ))

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def parse_log_level(log_level: str) -> int:
    """Translate a level name (off/error/warn/info/debug/trace) to a logging level."""
    level = LOG_LEVELS.get(log_level.lower())
    if level is None:
        level = getattr(logging, log_level.upper(), logging.INFO)
    return level


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    log_file: str | None = None,
) -> logging.Logger:
    """
    Set up structured logging for every service.

    One handler is installed on the package logger; service loggers
    (modbus_influx.<service>) carry none and propagate to it.

    Args:
        log_level: Level name (off, error, warn, info, debug, trace)
        json_format: Use JSON format (True for production, False for dev)
        log_file: Write to this file instead of stdout

    Returns:
        The package logger
    """
    numeric_level = parse_log_level(log_level)

    logger = logging.getLogger(LOGGER_PREFIX)
    logger.setLevel(numeric_level)

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False
    return logger


def _env_settings() -> tuple[str, bool, str | None]:
    log_level = os.environ.get("MODBUS_INFLUX_LOG_LEVEL", "warn")
    json_format = os.environ.get("MODBUS_INFLUX_LOG_FORMAT", "json").lower() == "json"
    log_file = os.environ.get("MODBUS_INFLUX_LOG_FILE") or None
    return log_level, json_format, log_file


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Until configure_logging() is called, level, format and destination come
    from MODBUS_INFLUX_LOG_LEVEL, MODBUS_INFLUX_LOG_FORMAT and
    MODBUS_INFLUX_LOG_FILE.
    """
    if not logging.getLogger(LOGGER_PREFIX).handlers:
        setup_logging(*_env_settings())
    logger = logging.getLogger(f"{LOGGER_PREFIX}.{service_name}")
    return ServiceLoggerAdapter(logger, {"service": service_name})


def configure_logging(
    log_level: str,
    json_format: bool = True,
    log_file: str | None = None,
) -> None:
    """Replace the shared handler (called once from the CLI)."""
    setup_logging(log_level, json_format, log_file)


def log_device_read(
    logger: logging.Logger | logging.LoggerAdapter,
    target_name: str,
    sample_count: int,
    duration_ms: float,
    success: bool = True,
    error: str | None = None,
) -> None:
    """Log the outcome of one poll attempt against a target"""
    if success:
        logger.debug(
            f"Read {target_name}: {sample_count} samples in {duration_ms:.0f}ms",
            extra={"target": target_name, "samples": sample_count, "duration_ms": duration_ms},
        )
    else:
        logger.warning(
            f"Failed to read {target_name}: {error}",
            extra={"target": target_name, "error": error},
        )


def log_flush(
    logger: logging.Logger | logging.LoggerAdapter,
    sample_count: int,
    attempts: int,
    success: bool,
    error: str | None = None,
) -> None:
    """Log the outcome of one sink flush"""
    extra: dict[str, Any] = {"samples": sample_count, "attempts": attempts}
    if success:
        logger.debug(f"Flushed {sample_count} samples (attempts={attempts})", extra=extra)
    else:
        extra["error"] = error
        logger.error(
            f"Dropped {sample_count} samples after {attempts} attempt(s): {error}",
            extra=extra,
        )
