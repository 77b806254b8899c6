"""
Exception hierarchy for the DocFiscal client credentials.

This module defines structured exceptions with error codes, context information,
and recovery suggestions for consistent error handling across the credential
store, the refresh exchange and the configuration layer.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the credential lifecycle."""

    # Storage Errors (1000-1099)
    STORAGE_READ_FAILED = "STORAGE_1001"
    STORAGE_WRITE_FAILED = "STORAGE_1002"
    STORAGE_CORRUPTED = "STORAGE_1003"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"

    # Refresh Exchange Errors (3000-3099)
    REFRESH_REJECTED = "REFRESH_3001"
    REFRESH_MALFORMED_RESPONSE = "REFRESH_3002"
    REFRESH_NO_CREDENTIALS = "REFRESH_3003"

    # Configuration Errors (8000-8099)
    CONFIG_INVALID_VALUE = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"

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
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    REAUTHENTICATE = "reauthenticate"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class CredentialError(Exception):
    """
    Base exception class for all credential lifecycle errors.

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


class StorageUnavailableError(CredentialError):
    """Credential storage could not be read or written."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.IGNORE, RecoveryAction.REAUTHENTICATE],
            **kwargs
        )


class NetworkFailureError(CredentialError):
    """The refresh endpoint could not be reached."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.REAUTHENTICATE],
            **kwargs
        )


class RefreshRejectedError(CredentialError):
    """The server refused the refresh token (non-2xx or success=false)."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
        if status_code is not None:
            context['status_code'] = status_code

        super().__init__(
            message=message,
            error_code=ErrorCode.REFRESH_REJECTED,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.REAUTHENTICATE],
            context=context,
            **kwargs
        )
        self.status_code = status_code


class MalformedResponseError(CredentialError):
    """The refresh response was not JSON or did not match the expected shape."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.REFRESH_MALFORMED_RESPONSE,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.REAUTHENTICATE],
            **kwargs
        )


class ConfigurationError(CredentialError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
                 config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', None) or {}
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


def create_error_response(error: CredentialError) -> Dict[str, Any]:
    """
    Create a standardized error response dictionary from an exception.

    Args:
        error: The CredentialError exception

    Returns:
        Standardized error response dictionary
    """
    return error.to_dict()


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> CredentialError:
    """
    Convert a generic exception to a structured CredentialError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured CredentialError
    """
    if isinstance(exception, CredentialError):
        return exception

    if isinstance(exception, (asyncio.TimeoutError, TimeoutError)):
        return NetworkFailureError(
            message=str(exception) or "Request timed out",
            error_code=ErrorCode.NETWORK_TIMEOUT,
            context=context,
            cause=exception
        )

    if isinstance(exception, (ConnectionError, OSError)):
        return NetworkFailureError(
            message=str(exception),
            error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
            context=context,
            cause=exception
        )

    if isinstance(exception, (json.JSONDecodeError, ValueError)):
        return MalformedResponseError(
            message=str(exception),
            context=context,
            cause=exception
        )

    return CredentialError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
