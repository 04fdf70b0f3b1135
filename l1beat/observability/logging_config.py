"""Logging configuration with Loki integration and structured logging.

Console output is JSON (python-json-logger) or plain text. A context filter
stamps every record with service/environment/host and, when a job is running,
the correlation id and job name from ``l1beat.utils.correlation``. Loki
shipping is enabled when ``LOKI_URL`` is set and python-logging-loki is
installed.
"""

import logging
import os
import socket
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

from l1beat.utils.correlation import get_correlation_id, get_job_name

# Libraries whose INFO output drowns the ingestion logs
_NOISY_LOGGERS = ("httpx", "httpcore", "pymongo", "urllib3", "requests", "logging_loki")


class _ExcludeLoggerFilter(logging.Filter):
    """Drop records from the given logger name prefixes.

    Keeps the Loki handler from shipping its own transport logs.
    """

    def __init__(self, *prefixes: str) -> None:
        super().__init__()
        self._prefixes = tuple(prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(self._prefixes)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with stable top-level keys."""

    def add_fields(
        self, log_record: dict, record: logging.LogRecord, message_dict: dict
    ) -> None:
        """Add custom fields to log record.

        Args:
            log_record: Dictionary to be logged
            record: Original LogRecord
            message_dict: Message dictionary from format string
        """
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        for key in (
            "correlation_id",
            "job",
            "service",
            "environment",
            "host",
            "version",
        ):
            if hasattr(record, key):
                log_record[key] = getattr(record, key)


class _ContextFilter(logging.Filter):
    """Inject service and job context into every log record if missing."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service = service_name
        self._environment = os.getenv("ENVIRONMENT", "development")
        self._host = os.getenv("HOSTNAME", socket.gethostname())
        self._version = os.getenv("APP_VERSION", None)

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self._service
        if not hasattr(record, "environment"):
            record.environment = self._environment
        if not hasattr(record, "host"):
            record.host = self._host
        if self._version and not hasattr(record, "version"):
            record.version = self._version
        if not hasattr(record, "correlation_id"):
            cid = get_correlation_id()
            if cid is not None:
                record.correlation_id = cid
        if not hasattr(record, "job"):
            job = get_job_name()
            if job is not None:
                record.job = job
        return True


def _build_loki_handler(loki_url: str, service_name: str, level: int) -> logging.Handler:
    import logging_loki

    handler = logging_loki.LokiHandler(
        url=f"{loki_url.rstrip('/')}/loki/api/v1/push",
        tags={"service": service_name},
        version="1",
    )
    handler.setLevel(level)
    handler.addFilter(_ExcludeLoggerFilter(*_NOISY_LOGGERS))
    return handler


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    service_name: str = "l1beat-ingest",
    loki_url: Optional[str] = None,
) -> None:
    """Setup logging with console and optional Loki handlers.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format - 'json' or 'text'
        service_name: Service name for log labels
        loki_url: Optional Loki URL for remote logging (e.g., http://loki:3100)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.filters.clear()

    context_filter = _ContextFilter(service_name)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    # Handler-level filter so records from child loggers are stamped too
    console_handler.addFilter(context_filter)
    if log_format == "json":
        console_handler.setFormatter(
            CustomJsonFormatter(
                "%(timestamp)s %(level)s %(logger)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root_logger.addHandler(console_handler)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(logging.WARNING, numeric_level))

    if loki_url:
        try:
            loki_handler = _build_loki_handler(loki_url, service_name, numeric_level)
            loki_handler.addFilter(context_filter)
            root_logger.addHandler(loki_handler)
            root_logger.info(
                "Loki handler configured",
                extra={"loki_url": loki_url, "service": service_name},
            )
        except ImportError:
            root_logger.warning(
                "python-logging-loki not installed, skipping Loki handler. "
                "Install with: pip install l1beat-ingest[loki]"
            )
        except Exception as e:
            root_logger.error(
                f"Failed to setup Loki handler: {e}", extra={"loki_url": loki_url}
            )

    root_logger.info(
        "Logging configured",
        extra={
            "level": level,
            "format": log_format,
            "service": service_name,
            "loki_enabled": loki_url is not None,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """Get logger instance for a module.

    Args:
        name: Logger name (usually __name__ from calling module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
