"""
TrustLayer Logging Configuration
Rich console output plus optional structured JSON log files.
"""

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from trustlayer.core.config import settings


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_entry["extra"] = record.extra_data

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class TrustLayerLogger:
    """
    Logging setup shared by the library and the admin CLI
    """

    def __init__(self, log_dir: Optional[Path] = None):
        self.console = Console(stderr=True)
        self.log_dir = log_dir

    def setup_logging(self, level: Optional[str] = None) -> None:
        level_value = getattr(logging, (level or settings.LOG_LEVEL).upper())

        app_logger = logging.getLogger("trustlayer")
        app_logger.setLevel(level_value)

        for handler in app_logger.handlers[:]:
            app_logger.removeHandler(handler)

        console_handler = RichHandler(
            console=self.console,
            rich_tracebacks=True,
            show_path=False,
            show_time=True,
        )
        console_handler.setLevel(level_value)
        app_logger.addHandler(console_handler)

        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / "trustlayer.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(JSONFormatter())
            app_logger.addHandler(file_handler)

            # Pinning failures, lockouts and failed rotations land here
            security_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / "security.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=10,
            )
            security_handler.setLevel(logging.WARNING)
            security_handler.setFormatter(JSONFormatter())
            app_logger.addHandler(security_handler)

        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


# Global logger instance
_logger_instance: Optional[TrustLayerLogger] = None


def configure_logging(level: Optional[str] = None, log_dir: Optional[Path] = None) -> None:
    """
    (Re)configure logging, e.g. from the CLI --verbose flag
    """
    global _logger_instance

    _logger_instance = TrustLayerLogger(log_dir if log_dir is not None else settings.LOG_DIR)
    _logger_instance.setup_logging(level)


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance with proper configuration
    """
    if _logger_instance is None:
        configure_logging()

    return logging.getLogger(name)


class LoggerMixin:
    """
    Mixin to add logging capabilities to classes
    """

    @property
    def logger(self) -> logging.Logger:
        return get_logger(self.__class__.__module__ + "." + self.__class__.__name__)

    def log_with_context(
        self,
        level: int,
        message: str,
        extra_data: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log with additional context data, rendered by JSONFormatter
        """
        if not self.logger.isEnabledFor(level):
            return

        record = self.logger.makeRecord(
            name=self.logger.name,
            level=level,
            fn="",
            lno=0,
            msg=message,
            args=(),
            exc_info=None,
        )

        if extra_data:
            record.extra_data = extra_data

        self.logger.handle(record)
