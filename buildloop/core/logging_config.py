"""
BuildLoop - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging
"""

import logging
import sys
import json
import traceback
import uuid
from datetime import datetime
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict
from contextvars import ContextVar

from buildloop.core.config import settings


# Context variables for run tracing (copied into every asyncio task)
project_id_var: ContextVar[str] = ContextVar('project_id', default='')
run_id_var: ContextVar[str] = ContextVar('run_id', default='')


def get_project_id() -> str:
    """Get current project ID from context"""
    return project_id_var.get() or ''


def set_project_id(project_id: str) -> None:
    """Set project ID in context"""
    project_id_var.set(project_id)


def get_run_id() -> str:
    """Get current run ID from context"""
    return run_id_var.get() or ''


def set_run_id(run_id: str) -> None:
    """Set run ID in context"""
    run_id_var.set(run_id)


def generate_run_id() -> str:
    """Generate a short unique run ID"""
    return str(uuid.uuid4())[:8]


_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName', 'project_id', 'run_id',
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production
    Outputs one JSON object per line for log aggregation tools
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        project_id = get_project_id()
        if project_id:
            log_data["project_id"] = project_id

        run_id = get_run_id()
        if run_id:
            log_data["run_id"] = run_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None
            }

        # Extra fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """
    Formatter that includes the project/run context variables.
    Used for development with readable output
    """

    def format(self, record: logging.LogRecord) -> str:
        record.project_id = get_project_id() or '-'
        record.run_id = get_run_id() or '-'
        return super().format(record)


class BuildLoopLogger(logging.Logger):
    """
    Custom logger with convenience methods for structured logging
    """

    def log_transition(self, machine: str, from_state: str, to_state: str,
                       reason: str = None, **kwargs) -> None:
        """Log a run state machine transition"""
        self.info(
            f"[{machine}] State transition: {from_state} → {to_state}"
            + (f" ({reason})" if reason else ""),
            extra={
                "event_type": "transition",
                "from_state": from_state,
                "to_state": to_state,
                "reason": reason,
                **kwargs
            }
        )

    def log_oracle_event(self, event: str, attempt: int = 0,
                         tokens_used: int = 0, **kwargs) -> None:
        """Log oracle call events"""
        self.info(
            f"Oracle: {event}" +
            (f" (attempt {attempt})" if attempt else "") +
            (f" (tokens: {tokens_used})" if tokens_used else ""),
            extra={
                "event_type": "oracle",
                "oracle_event": event,
                "attempt": attempt,
                "tokens_used": tokens_used,
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

    def log_performance(self, operation: str, duration_ms: float,
                        threshold_ms: float = 1000, **kwargs) -> None:
        """Log performance metrics, warn if over threshold"""
        level = logging.WARNING if duration_ms > threshold_ms else logging.DEBUG
        self.log(
            level,
            f"Performance: {operation} took {duration_ms:.2f}ms" +
            (f" (threshold: {threshold_ms}ms)" if duration_ms > threshold_ms else ""),
            extra={
                "event_type": "performance",
                "operation": operation,
                "duration_ms": duration_ms,
                "threshold_ms": threshold_ms,
                "exceeded_threshold": duration_ms > threshold_ms,
                **kwargs
            }
        )


def setup_logging() -> BuildLoopLogger:
    """Setup logging configuration based on environment"""

    logging.setLoggerClass(BuildLoopLogger)

    logger = logging.getLogger("buildloop")
    logger.__class__ = BuildLoopLogger  # Ensure it's our custom class
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logger.handlers.clear()

    is_production = settings.ENVIRONMENT == "production"

    if is_production:
        json_formatter = JSONFormatter()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(json_formatter)
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            log_file = Path(settings.LOG_FILE)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(json_formatter)
            logger.addHandler(file_handler)

    else:
        detailed_format = (
            "%(asctime)s | %(levelname)-8s | "
            "[%(project_id)s] [%(run_id)s] | "
            "%(funcName)s:%(lineno)d | %(message)s"
        )
        simple_format = "%(levelname)-8s | %(message)s"

        # Development console stays quiet so it does not interleave with the terminal driver
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(ContextualFormatter(simple_format))
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            log_file = Path(settings.LOG_FILE)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(ContextualFormatter(detailed_format))
            logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)

    logger.debug(
        "Logging initialized",
        extra={
            "environment": settings.ENVIRONMENT,
            "log_level": settings.LOG_LEVEL,
            "json_logging": is_production
        }
    )

    return logger


# Create logger instance
logger: BuildLoopLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'get_project_id',
    'set_project_id',
    'get_run_id',
    'set_run_id',
    'generate_run_id',
    'BuildLoopLogger',
]
