"""
Exception hierarchy for the IDaaS session client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so that transport, storage and session failures are
reported consistently across the client.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the IDaaS session client."""

    # Authentication Errors (1000-1099)
    AUTH_REJECTED = "AUTH_1001"
    AUTH_MALFORMED_RESPONSE = "AUTH_1002"
    AUTH_REFRESH_REJECTED = "AUTH_1003"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_SSL_ERROR = "NETWORK_2003"
    NETWORK_INVALID_RESPONSE = "NETWORK_2004"

    # Storage Errors (3000-3099)
    STORAGE_READ_FAILED = "STORAGE_3001"
    STORAGE_WRITE_FAILED = "STORAGE_3002"
    STORAGE_CLEAR_FAILED = "STORAGE_3003"
    STORAGE_DECRYPTION_FAILED = "STORAGE_3004"

    # Validation Errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    VALIDATION_MISSING_REQUIRED_FIELD = "VALIDATION_4002"

    # Configuration Errors (8000-8099)
    CONFIG_INVALID_FORMAT = "CONFIG_8001"
    CONFIG_MISSING_REQUIRED_SETTING = "CONFIG_8002"
    CONFIG_INVALID_VALUE = "CONFIG_8003"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RECONNECT = "reconnect"
    REFRESH_TOKEN = "refresh_token"
    REAUTHENTICATE = "reauthenticate"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class IDaaSError(Exception):
    """
    Base exception class for all IDaaS session client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class AuthenticationError(IDaaSError):
    """The identity service rejected a request or answered with a malformed body."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.AUTH_REJECTED,
        status_code: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if status_code is not None:
            context['status_code'] = status_code

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.REAUTHENTICATE],
            context=context,
            **kwargs
        )
        self.status_code = status_code


class NetworkError(IDaaSError):
    """Network and communication related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.RECONNECT],
            **kwargs
        )


class StorageError(IDaaSError):
    """Secure storage read/write related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ValidationError(IDaaSError):
    """Input validation related errors."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )


class ConfigurationError(IDaaSError):
    """Configuration related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
        config_key: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> IDaaSError:
    """
    Convert a generic exception to a structured IDaaSError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured IDaaSError
    """
    if isinstance(exception, IDaaSError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_CONNECTION_FAILED, NetworkError),
        TimeoutError: (ErrorCode.NETWORK_TIMEOUT, NetworkError),
        PermissionError: (ErrorCode.STORAGE_WRITE_FAILED, StorageError),
        ValueError: (ErrorCode.VALIDATION_INVALID_INPUT, ValidationError),
    }

    for exception_type, (error_code, error_class) in exception_mapping.items():
        if isinstance(exception, exception_type):
            break
    else:
        error_code, error_class = default_error_code, IDaaSError

    return error_class(
        message=str(exception),
        error_code=error_code,
        context=context,
        cause=exception
    )
