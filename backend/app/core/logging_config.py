"""
FleetVerify - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging
"""

import logging
import sys
import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional
from contextvars import ContextVar

from app.core.config import settings


# Context variables for request tracing
request_id_var: ContextVar[str] = ContextVar('request_id', default='')
user_id_var: ContextVar[str] = ContextVar('user_id', default='')
vehicle_number_var: ContextVar[str] = ContextVar('vehicle_number', default='')

_CONTEXT_VARS = (
    ("request_id", request_id_var),
    ("user_id", user_id_var),
    ("vehicle_number", vehicle_number_var),
)


def get_request_id() -> str:
    """Get current request ID from context"""
    return request_id_var.get() or ''


def set_request_id(request_id: str) -> None:
    """Set request ID in context"""
    request_id_var.set(request_id)


def set_user_id(user_id: str) -> None:
    """Set user ID in context"""
    user_id_var.set(user_id)


def set_vehicle_number(vehicle_number: str) -> None:
    vehicle_number_var.set(vehicle_number)


def generate_request_id() -> str:
    """Generate a unique request ID"""
    return str(uuid.uuid4())[:8]


# LogRecord attributes that are never copied into the JSON payload
_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName', 'request_id', 'user_id', 'vehicle_number',
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production
    Outputs logs in a format easily parsed by log aggregation tools (ELK, CloudWatch, etc.)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in _CONTEXT_VARS:
            value = var.get()
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None
            }

        # Add extra fields from record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """
    Formatter that includes context variables (request_id, user_id, vehicle)
    Used for development with readable output
    """

    def format(self, record: logging.LogRecord) -> str:
        for key, var in _CONTEXT_VARS:
            setattr(record, key, var.get() or '-')

        return super().format(record)


class FleetVerifyLogger(logging.Logger):
    """
    Custom logger with convenience methods for structured logging
    """

    def log_upstream_call(self, service: str, attempt: int, max_attempts: int,
                          status_code: Optional[int] = None, duration_ms: float = 0.0,
                          error: Optional[str] = None, **kwargs) -> None:
        """Log one attempt against the vehicle data gateway"""
        level = logging.WARNING if error else logging.INFO
        outcome = f"error: {error}" if error else f"HTTP {status_code}"
        self.log(
            level,
            f"Gateway {service} attempt {attempt}/{max_attempts} - {outcome} ({duration_ms:.2f}ms)",
            extra={
                "event_type": "upstream_call",
                "upstream_service": service,
                "attempt": attempt,
                "max_attempts": max_attempts,
                "upstream_status": status_code,
                "upstream_error": error,
                "duration_ms": duration_ms,
                **kwargs
            }
        )

    def log_verification_event(self, service: str, vehicle_number: str, event: str,
                               cached: bool = False, success: bool = True, **kwargs) -> None:
        """Log a verification outcome (fresh, cached, stale fallback, failure)"""
        level = logging.INFO if success else logging.WARNING
        self.log(
            level,
            f"Verification {service} {vehicle_number}: {event}" +
            (" (cached)" if cached else ""),
            extra={
                "event_type": "verification",
                "verification_service": service,
                "verification_event": event,
                "verification_cached": cached,
                "verification_success": success,
                **kwargs
            }
        )

    def log_auth_event(self, event: str, success: bool, reason: str = None, **kwargs) -> None:
        """Log authentication events"""
        level = logging.INFO if success else logging.WARNING
        self.log(
            level,
            f"Auth {event}: {'success' if success else 'failed'}" +
            (f" - {reason}" if reason else ""),
            extra={
                "event_type": "auth",
                "auth_event": event,
                "auth_success": success,
                "failure_reason": reason,
                **kwargs
            }
        )

    def log_error_with_context(self, error: Exception, context: str = None,
                               **kwargs) -> None:
        """Log error with full context"""
        self.error(
            f"Error in {context}: {type(error).__name__}: {str(error)}",
            exc_info=True,
            extra={
                "event_type": "error",
                "error_type": type(error).__name__,
                "error_message": str(error),
                "error_context": context,
                **kwargs
            }
        )


DEV_CONSOLE_FORMAT = "%(levelname)-8s | [%(request_id)s] %(message)s"
DEV_FILE_FORMAT = (
    "%(asctime)s | %(levelname)-8s | "
    "[%(request_id)s] [%(user_id)s] [%(vehicle_number)s] | "
    "%(funcName)s:%(lineno)d | %(message)s"
)


def setup_logging() -> FleetVerifyLogger:
    """Setup logging configuration based on environment"""

    logging.setLoggerClass(FleetVerifyLogger)

    logger = logging.getLogger("fleetverify")
    logger.__class__ = FleetVerifyLogger  # Ensure it's our custom class
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    logger.propagate = False

    logger.handlers.clear()

    # Production: JSON for log aggregation; development: readable lines with context
    is_production = settings.ENVIRONMENT == "production"
    if is_production:
        console_formatter = file_formatter = JSONFormatter()
    else:
        console_formatter = ContextualFormatter(DEV_CONSOLE_FORMAT)
        file_formatter = ContextualFormatter(DEV_FILE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if settings.LOG_FILE:
        file_handler = RotatingFileHandler(
            Path(settings.LOG_FILE),
            maxBytes=10485760,  # 10MB
            backupCount=10 if is_production else 5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    # Suppress noisy loggers
    for name in ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(
        "Logging initialized",
        extra={
            "environment": settings.ENVIRONMENT,
            "log_level": settings.LOG_LEVEL,
            "json_logging": is_production
        }
    )

    return logger


# Create logger instance
logger: FleetVerifyLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'get_request_id',
    'set_request_id',
    'set_user_id',
    'set_vehicle_number',
    'generate_request_id',
    'FleetVerifyLogger',
]
