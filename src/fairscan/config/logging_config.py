import sys
import logging
from pathlib import Path
from typing import Any, Dict, Optional
import json

from loguru import logger
from pydantic import BaseModel
import traceback

from .settings import settings


class LogConfig(BaseModel):
    """Logging configuration model"""

    LOGGER_NAME: str = "fairscan"
    LOG_FORMAT: str = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"
    LOG_LEVEL: str = settings.log_level.value

    # File configuration
    LOG_TO_FILE: bool = settings.log_to_file
    LOG_DIR: Path = settings.log_dir
    MAX_FILE_SIZE: str = "50 MB"
    RETENTION: str = "30 days"
    COMPRESSION: str = "zip"

    # Structured logging
    SERIALIZE: bool = settings.is_production

    AUDIT_LOG_ENABLED: bool = settings.audit_log_enabled


class StructuredLogger:
    """
    Structured logger with audit trail for consent and model lifecycle events
    """

    def __init__(self, config: Optional[LogConfig] = None):
        self.config = config or LogConfig()
        self._configured = False

    def configure(self) -> None:
        """Install loguru sinks. Safe to call more than once."""
        if self._configured:
            return
        self._setup_logger()
        if self.config.LOG_TO_FILE:
            self._setup_handlers()
        self._configured = True

    def _setup_logger(self):
        """Configure loguru logger"""
        # Remove default handler
        logger.remove()

        logger.add(
            sys.stderr,
            format=self.config.LOG_FORMAT,
            level=self.config.LOG_LEVEL,
            colorize=not settings.is_production,
            serialize=self.config.SERIALIZE,
            backtrace=True,
            diagnose=not settings.is_production,
            enqueue=True,
        )

    def _setup_handlers(self):
        """Setup file handlers"""
        self.config.LOG_DIR.mkdir(parents=True, exist_ok=True)

        # Application logs
        logger.add(
            self.config.LOG_DIR / "fairscan_{time:YYYY-MM-DD}.log",
            format=self.config.LOG_FORMAT,
            level=self.config.LOG_LEVEL,
            rotation=self.config.MAX_FILE_SIZE,
            retention=self.config.RETENTION,
            compression=self.config.COMPRESSION,
            serialize=self.config.SERIALIZE,
            enqueue=True,
        )

        # Error logs
        logger.add(
            self.config.LOG_DIR / "error_{time:YYYY-MM-DD}.log",
            format=self.config.LOG_FORMAT,
            level="ERROR",
            rotation=self.config.MAX_FILE_SIZE,
            retention=self.config.RETENTION,
            compression=self.config.COMPRESSION,
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

        if self.config.AUDIT_LOG_ENABLED:
            logger.add(
                self.config.LOG_DIR / "audit_{time:YYYY-MM-DD}.log",
                format=self._audit_format,
                level="INFO",
                filter=lambda record: record["extra"].get("audit", False),
                rotation="1 day",
                retention=f"{settings.data_retention_days} days",
                compression=self.config.COMPRESSION,
                enqueue=True,
            )

    @staticmethod
    def _audit_format(record):
        """Format audit records as one JSON document per line"""
        audit_data = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name,
            "action": record["extra"].get("action", "unknown"),
            "resource": record["extra"].get("resource", "unknown"),
            "result": record["extra"].get("result", "unknown"),
            "message": record["message"],
            "metadata": record["extra"].get("metadata", {}),
        }
        # loguru treats the returned string as a template
        return json.dumps(audit_data).replace("{", "{{").replace("}", "}}") + "\n"

    def audit_log(
        self,
        action: str,
        resource: Optional[str] = None,
        result: str = "success",
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """
        Create audit log entry

        Args:
            action: Action performed
            resource: Resource touched (settings record, model id)
            result: Result of action
            metadata: Additional metadata, never raw content
        """
        if not self.config.AUDIT_LOG_ENABLED:
            return
        logger.bind(
            audit=True,
            action=action,
            resource=resource,
            result=result,
            metadata=metadata or {},
            **kwargs
        ).info(f"Audit: {action} on {resource}")

    def log_bias_metrics(
        self,
        categories_detected: int,
        bias_instances: int,
        confidence: float
    ):
        """Log a finished content analysis"""
        logger.bind(
            categories_detected=categories_detected,
            bias_instances=bias_instances,
            confidence=confidence,
            bias_detection=True
        ).info("Bias metrics evaluated")

    def log_exception(self, exc: Exception, context: Optional[Dict[str, Any]] = None):
        """Log exception with full traceback"""
        logger.bind(
            exception_type=type(exc).__name__,
            exception_message=str(exc),
            traceback=traceback.format_exc(),
            context=context or {}
        ).error(f"Exception occurred: {exc}")


# Create global logger instance
structured_logger = StructuredLogger()

# Export logger functions
audit_log = structured_logger.audit_log
log_bias_metrics = structured_logger.log_bias_metrics
log_exception = structured_logger.log_exception


# Intercept standard logging
class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        # Get corresponding Loguru level
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def configure_logging() -> None:
    """Configure loguru sinks and route standard logging through them."""
    structured_logger.configure()
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
