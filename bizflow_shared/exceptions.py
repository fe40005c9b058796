"""
Exception hierarchy for the BizFlow API client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions. Every failure the HTTP client surfaces to application
code is one of the ApiError variants defined here.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the BizFlow API client."""

    # Authentication and Authorization Errors (1000-1099)
    AUTH_UNAUTHORIZED = "AUTH_1001"
    AUTH_TOKEN_EXPIRED = "AUTH_1002"
    AUTH_FORBIDDEN = "AUTH_1003"
    AUTH_REFRESH_FAILED = "AUTH_1004"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"

    # Request Errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    RESOURCE_NOT_FOUND = "RESOURCE_4004"
    RESOURCE_CONFLICT = "RESOURCE_4009"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_4029"

    # Server Errors (5000-5099)
    SERVER_ERROR = "SERVER_5000"

    # Client-side Errors (8000-8099)
    CONFIG_INVALID_VALUE = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    STORAGE_WRITE_FAILED = "STORAGE_8101"
    STORAGE_READ_FAILED = "STORAGE_8102"

    # Anything else the server reports
    UNKNOWN_ERROR = "UNKNOWN_9001"


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
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


class BizflowError(Exception):
    """
    Base exception class for all BizFlow client errors.

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
                'type': type(self).__name__,
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


class ApiError(BizflowError):
    """
    Base class of the closed API error taxonomy.

    Carries the HTTP status (when there was a response) and, for validation
    failures, a mapping of field name to messages.
    """

    default_message = "Unknown error"
    default_code = ErrorCode.UNKNOWN_ERROR
    default_severity = ErrorSeverity.MEDIUM
    default_recovery: List[RecoveryAction] = []

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        field_errors: Optional[Dict[str, List[str]]] = None,
        **kwargs
    ):
        kwargs.setdefault('error_code', self.default_code)
        kwargs.setdefault('severity', self.default_severity)
        kwargs.setdefault('recovery_actions', list(self.default_recovery))
        super().__init__(message=message or self.default_message, **kwargs)

        self.status_code = status_code
        self.field_errors = field_errors or {}

        if status_code is not None:
            self.context['status_code'] = status_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['error']['status_code'] = self.status_code
        if self.field_errors:
            data['error']['field_errors'] = self.field_errors
        return data


class NetworkError(ApiError):
    """Timeouts and connection failures; no response was received."""
    default_message = "Network request failed"
    default_code = ErrorCode.NETWORK_CONNECTION_FAILED
    default_recovery = [RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.RECONNECT]


class UnauthorizedError(ApiError):
    """HTTP 401 that could not be recovered by a token refresh."""
    default_message = "Unauthorized"
    default_code = ErrorCode.AUTH_UNAUTHORIZED
    default_severity = ErrorSeverity.HIGH
    default_recovery = [RecoveryAction.REFRESH_TOKEN]


class ForbiddenError(ApiError):
    """HTTP 403."""
    default_message = "Access denied"
    default_code = ErrorCode.AUTH_FORBIDDEN
    default_recovery = [RecoveryAction.CONTACT_ADMIN]


class NotFoundError(ApiError):
    """HTTP 404."""
    default_message = "Resource not found"
    default_code = ErrorCode.RESOURCE_NOT_FOUND
    default_severity = ErrorSeverity.LOW


class ConflictError(ApiError):
    """HTTP 409."""
    default_message = "Resource conflict"
    default_code = ErrorCode.RESOURCE_CONFLICT
    default_severity = ErrorSeverity.LOW
    default_recovery = [RecoveryAction.USER_INTERVENTION]


class ValidationError(ApiError):
    """HTTP 400 / 422 with optional per-field messages."""
    default_message = "Validation failed"
    default_code = ErrorCode.VALIDATION_INVALID_INPUT
    default_severity = ErrorSeverity.LOW
    default_recovery = [RecoveryAction.USER_INTERVENTION]

    def first_error(self, field_name: str) -> Optional[str]:
        """Return the first message reported for a field, if any."""
        messages = self.field_errors.get(field_name)
        return messages[0] if messages else None


class RateLimitError(ApiError):
    """HTTP 429. ``retry_after`` is in seconds when the server reports it."""
    default_message = "Too many requests"
    default_code = ErrorCode.RATE_LIMIT_EXCEEDED
    default_recovery = [RecoveryAction.RETRY_WITH_BACKOFF]

    def __init__(self, message: Optional[str] = None, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.context['retry_after'] = retry_after


class ServerError(ApiError):
    """HTTP 500 / 502 / 503."""
    default_message = "Internal server error"
    default_code = ErrorCode.SERVER_ERROR
    default_severity = ErrorSeverity.HIGH
    default_recovery = [RecoveryAction.RETRY_WITH_BACKOFF]


class TokenExpiredError(ApiError):
    """
    The session could not be renewed.

    This is the single signal the application should treat as
    "clear the local session and send the user to login".
    """
    default_message = "Session expired, please log in again"
    default_code = ErrorCode.AUTH_TOKEN_EXPIRED
    default_severity = ErrorSeverity.HIGH
    default_recovery = [RecoveryAction.REAUTHENTICATE]


class GenericError(ApiError):
    """Any other failure, including unexpected status codes and malformed bodies."""
    default_message = "Unknown error"
    default_code = ErrorCode.UNKNOWN_ERROR


class ConfigurationError(BizflowError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
                 config_key: Optional[str] = None, **kwargs):
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


class TokenStorageError(BizflowError):
    """Credential storage failures."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


def create_error_response(error: BizflowError) -> Dict[str, Any]:
    """
    Create a standardized error response dictionary from an exception.

    Args:
        error: The BizflowError exception

    Returns:
        Standardized error response dictionary
    """
    return error.to_dict()
