"""
Logging configuration for the DocFiscal client credentials.

This module provides structured logging with an audit trail for credential
events and configurable output formats. Token material never reaches the logs;
use mask_token() when a token has to be referenced.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from shared.exceptions import CredentialError


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Types of credential events that should be audited."""
    TOKENS_STORED = "tokens_stored"
    TOKEN_REFRESH = "token_refresh"
    TOKENS_CLEARED = "tokens_cleared"
    ERROR_EVENT = "error_event"


_RESERVED_RECORD_FIELDS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'error_info', 'audit_info',
}


def mask_token(token: Optional[str], visible: int = 6) -> str:
    """
    Mask a token for diagnostics.

    Args:
        token: Token to mask
        visible: Number of leading characters kept

    Returns:
        Masked representation, e.g. 'eyJhbG…(212 chars)'
    """
    if not token:
        return "<none>"
    if len(token) <= visible:
        return "*" * len(token)
    return f"{token[:visible]}…({len(token)} chars)"


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter that outputs structured JSON logs with consistent fields.
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': os.getpid(),
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, CredentialError):
            log_entry['error'] = {
                'code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions],
                'user_message': error.user_message
            }

        if hasattr(record, 'audit_info'):
            log_entry['audit'] = record.audit_info

        if self.include_extra_fields:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_FIELDS
            }
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Detailed human-readable formatter with structured error information.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)-18s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, CredentialError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"
            if error.recovery_actions:
                actions = [action.value for action in error.recovery_actions]
                formatted += f"\n  Recovery Actions: {', '.join(actions)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        return formatted


class AuditLogger:
    """
    Specialized logger for credential audit events.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event with structured information.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            result: Result of the operation (success, failure, etc.)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_tokens_stored(self, expires_at: datetime, source: str = "issuance"):
        """Log that a token pair was persisted."""
        self.log_event(
            event_type=AuditEventType.TOKENS_STORED,
            message=f"Token pair stored ({source})",
            result="success",
            additional_context={'source': source, 'expires_at': expires_at.isoformat()}
        )

    def log_token_refresh(self, success: bool, reason: Optional[str] = None,
                          expires_at: Optional[datetime] = None):
        """Log the outcome of a refresh exchange."""
        context = {
            'failure_reason': reason,
            'expires_at': expires_at.isoformat() if expires_at else None
        }
        context = {k: v for k, v in context.items() if v is not None}

        self.log_event(
            event_type=AuditEventType.TOKEN_REFRESH,
            message=f"Token refresh {'succeeded' if success else 'failed'}",
            result="success" if success else "failure",
            additional_context=context
        )

    def log_tokens_cleared(self, reason: str):
        """Log that credentials were purged."""
        self.log_event(
            event_type=AuditEventType.TOKENS_CLEARED,
            message=f"Stored credentials cleared ({reason})",
            result="success",
            additional_context={'reason': reason}
        )

    def log_error(self, error: CredentialError):
        """Log error events."""
        self.log_event(
            event_type=AuditEventType.ERROR_EVENT,
            message=f"Error occurred: {error.message}",
            result="error",
            additional_context={
                'error_code': error.error_code.value,
                'severity': error.severity.value,
                'recovery_actions': [action.value for action in error.recovery_actions]
            }
        )


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Set up logging configuration.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to main log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to enable console logging
        enable_audit: Whether to enable audit logging
        audit_file: Path to audit log file (optional)

    Returns:
        Dictionary of configured loggers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.value))

    if log_format == LogFormat.JSON:
        formatter = StructuredFormatter()
    elif log_format == LogFormat.DETAILED:
        formatter = DetailedFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    loggers = {
        'root': root_logger,
        'auth': logging.getLogger('docfiscal_client.auth'),
        'api': logging.getLogger('docfiscal_client.api_client'),
    }

    if enable_audit:
        audit_logger = logging.getLogger('audit')
        audit_logger.setLevel(logging.INFO)
        audit_logger.propagate = False
        for handler in audit_logger.handlers[:]:
            audit_logger.removeHandler(handler)

        if audit_file:
            audit_path = Path(audit_file)
            audit_path.parent.mkdir(parents=True, exist_ok=True)

            audit_handler = logging.handlers.RotatingFileHandler(
                audit_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
        else:
            audit_handler = logging.StreamHandler(sys.stderr)

        # Audit records are always JSON
        audit_handler.setFormatter(StructuredFormatter(include_extra_fields=False))
        audit_logger.addHandler(audit_handler)

        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(
    logger: logging.Logger,
    error: CredentialError,
    level: int = logging.ERROR
):
    """
    Log a structured error with full context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        level: Log level (refresh failures are expected and logged as warnings)
    """
    logger.log(level, error.message, extra={'error_info': error})
