"""
Logging configuration for the IDaaS session client.

This module provides structured logging with an audit trail for session
events (login, refresh, deauthorization, logout) and configurable output
formats. Token values never reach a log record in full; use redact_token().
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

from idaas_shared.exceptions import IDaaSError


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
    """Types of session events that should be audited."""
    AUTHENTICATION = "authentication"
    TOKEN_REFRESH = "token_refresh"
    DEAUTHORIZATION = "deauthorization"
    LOGOUT = "logout"
    SSO_CHALLENGE = "sso_challenge"
    ERROR_EVENT = "error_event"


_RESERVED_RECORD_FIELDS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'error_info', 'audit_info', 'taskName', 'message',
    'asctime'
}


def redact_token(token: Optional[str], visible: int = 6) -> str:
    """Return a log-safe representation of a token."""
    if not token:
        return "<none>"
    if len(token) <= visible:
        return "***"
    return f"{token[:visible]}..."


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured JSON logs with consistent fields.
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
            'process': os.getpid()
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, IDaaSError):
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
    Detailed human-readable formatter.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, IDaaSError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        return formatted


class AuditLogger:
    """
    Logger for session audit events with structured information.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        domain: Optional[str] = None,
        user_id: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event with structured information.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            domain: Identity service domain the event concerns
            user_id: Identifier of the user, when known
            result: Result of the operation (success, failure, etc.)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'domain': domain,
            'user_id': user_id,
            'result': result,
            'context': additional_context or {}
        }

        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        domain: Optional[str],
        success: bool = True,
        user_id: Optional[str] = None,
        failure_reason: Optional[str] = None
    ):
        """Log login attempts."""
        self.log_event(
            event_type=AuditEventType.AUTHENTICATION,
            message=f"Authentication {'successful' if success else 'failed'} against {domain}",
            domain=domain,
            user_id=user_id,
            result="success" if success else "failure",
            additional_context={'failure_reason': failure_reason} if failure_reason else None
        )

    def log_token_refresh(
        self,
        domain: Optional[str],
        success: bool = True,
        expires_at: Optional[int] = None,
        failure_reason: Optional[str] = None
    ):
        """Log access token renewals."""
        context = {'expires_at': expires_at, 'failure_reason': failure_reason}
        context = {k: v for k, v in context.items() if v is not None}

        self.log_event(
            event_type=AuditEventType.TOKEN_REFRESH,
            message=f"Access token refresh {'succeeded' if success else 'failed'}",
            domain=domain,
            result="success" if success else "failure",
            additional_context=context
        )

    def log_deauthorization(self, domain: Optional[str], reason: str, status_code: Optional[int] = None):
        """Log a session becoming unrecoverable."""
        context = {'reason': reason}
        if status_code is not None:
            context['status_code'] = status_code

        self.log_event(
            event_type=AuditEventType.DEAUTHORIZATION,
            message=f"Session deauthorized: {reason}",
            domain=domain,
            result="deauthorized",
            additional_context=context
        )

    def log_logout(self, domain: Optional[str], revoked: bool):
        """Log a local logout and whether the remote revocation succeeded."""
        self.log_event(
            event_type=AuditEventType.LOGOUT,
            message="Session logged out",
            domain=domain,
            result="success",
            additional_context={'remote_revoked': revoked}
        )

    def log_error(self, error: IDaaSError, domain: Optional[str] = None):
        """Log error events."""
        self.log_event(
            event_type=AuditEventType.ERROR_EVENT,
            message=f"Error occurred: {error.message}",
            domain=domain,
            result="error",
            additional_context={
                'error_code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context
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
        console_handler = logging.StreamHandler(sys.stdout)
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
        'session': logging.getLogger('idaas_client.auth'),
        'network': logging.getLogger('idaas_client.api_client')
    }

    if enable_audit:
        audit_logger = logging.getLogger('audit')
        audit_logger.setLevel(logging.INFO)
        for handler in audit_logger.handlers[:]:
            audit_logger.removeHandler(handler)

        audit_formatter = StructuredFormatter()

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
            audit_handler = logging.StreamHandler(sys.stdout)

        audit_handler.setFormatter(audit_formatter)
        audit_logger.addHandler(audit_handler)
        audit_logger.propagate = False

        loggers['audit'] = audit_logger

    return loggers


def setup_logging_from_config(config) -> Dict[str, logging.Logger]:
    """Configure logging from a ClientConfiguration."""
    try:
        level = LogLevel(str(config.get_log_level()).upper())
    except ValueError:
        level = LogLevel.INFO

    try:
        log_format = LogFormat(str(config.get_log_format()).lower())
    except ValueError:
        log_format = LogFormat.STANDARD

    return setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=config.get_log_file(),
        audit_file=config.get_audit_file()
    )


def log_structured_error(logger: logging.Logger, error: IDaaSError, **context):
    """
    Log a structured error with full context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        **context: Extra fields attached to the record
    """
    extra = {'error_info': error}
    extra.update(context)
    logger.error(error.message, extra=extra)
