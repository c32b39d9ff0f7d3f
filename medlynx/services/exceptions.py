"""
Custom Exception Classes for the MedLynx Reminder Engine
=========================================================

This module provides a hierarchy of custom exceptions that preserve context
through the error chain. All exceptions support:

1. Error chaining with `raise ... from e`
2. Error classification for diagnostics
3. Original context preservation

The key-value store and notification ports raise these exceptions. The
public engine operations (sync, cancel_all, on_fired, handle) catch them and
return an OperationResult so that no failure in the engine takes down the
host process.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories for error classification."""
    VALIDATION = "validation"
    STORAGE = "storage"
    NOTIFICATION = "notification"
    PERMISSION = "permission"
    QUOTA = "quota"
    UNKNOWN_ALARM = "unknown_alarm"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


# =============================================================================
# Base Exception
# =============================================================================

class ReminderEngineError(Exception):
    """
    Base exception class for all reminder engine errors.

    Provides:
    - Error category for diagnostics
    - Context dictionary for debugging
    - Proper error chaining support

    Usage:
        try:
            payload = await kv.get(key)
        except ConnectionError as e:
            raise StorageUnavailableError(
                message="Key-value store unreachable",
                key=key,
            ) from e
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.category = category
        self.context = context or {}
        self.original_error = original_error

        # Build full message with context
        full_message = message
        if context:
            context_str = ", ".join(f"{k}={v}" for k, v in context.items())
            full_message = f"{message} [{context_str}]"

        super().__init__(full_message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a plain dictionary for callers and logs."""
        result = {
            "error": self.message,
            "category": self.category.value,
        }
        if self.context:
            result["context"] = self.context
        if self.original_error:
            result["original_error"] = str(self.original_error)
        return result


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(ReminderEngineError):
    """Raised when input is rejected before any I/O happens."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field

        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            context=ctx,
            original_error=original_error,
        )


class RecurrenceError(ValidationError):
    """Raised when a recurrence rule is malformed (e.g. weekly with no days)."""

    def __init__(
        self,
        message: str,
        frequency: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        context = {}
        if frequency:
            context["frequency"] = frequency

        super().__init__(
            message=message,
            field="recurrence",
            context=context,
            original_error=original_error,
        )


# =============================================================================
# Storage Errors
# =============================================================================

class StorageUnavailableError(ReminderEngineError):
    """Raised when the key-value capability cannot be reached."""

    def __init__(
        self,
        message: str = "Key-value store unavailable",
        key: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if key:
            ctx["key"] = key
        if operation:
            ctx["operation"] = operation

        super().__init__(
            message=message,
            category=ErrorCategory.STORAGE,
            context=ctx,
            original_error=original_error,
        )


class CorruptRecordError(ReminderEngineError):
    """
    Describes a stored payload that failed to parse.

    The store does not raise this: it logs it and treats the damaged record
    as absent so the rest of the data stays usable.
    """

    def __init__(
        self,
        key: str,
        reason: str,
        index: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        context: Dict[str, Any] = {"key": key}
        if index is not None:
            context["index"] = index

        super().__init__(
            message=f"Corrupt record dropped: {reason}",
            category=ErrorCategory.STORAGE,
            context=context,
            original_error=original_error,
        )


# =============================================================================
# Notification Errors
# =============================================================================

class NotificationPortError(ReminderEngineError):
    """Raised when the platform notification capability fails."""

    def __init__(
        self,
        message: str = "Notification port call failed",
        alarm_id: Optional[str] = None,
        operation: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.NOTIFICATION,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if alarm_id:
            ctx["alarm_id"] = alarm_id
        if operation:
            ctx["operation"] = operation

        super().__init__(
            message=message,
            category=category,
            context=ctx,
            original_error=original_error,
        )


class NotificationPermissionError(NotificationPortError):
    """Raised when notification permission has not been granted."""

    def __init__(
        self,
        message: str = "Notification permission not granted; scheduling disabled",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=message,
            operation="schedule",
            category=ErrorCategory.PERMISSION,
            original_error=original_error,
        )


class QuotaExceededError(NotificationPortError):
    """Raised when the platform cap on concurrently scheduled alarms is hit."""

    def __init__(
        self,
        limit: Optional[int] = None,
        alarm_ids: Optional[list] = None,
        original_error: Optional[Exception] = None,
    ):
        context: Dict[str, Any] = {}
        if limit is not None:
            context["limit"] = limit
        if alarm_ids:
            context["alarm_ids"] = alarm_ids

        super().__init__(
            message="Scheduled alarm quota exceeded",
            operation="schedule",
            category=ErrorCategory.QUOTA,
            context=context,
            original_error=original_error,
        )


class UnknownAlarmIdError(ReminderEngineError):
    """
    An action or firing references an alarm that no longer maps to a reminder.

    Typical cause: the reminder was deleted between firing and response.
    This is logged and discarded, never raised to the host.
    """

    def __init__(
        self,
        alarm_id: str,
        reason: str = "No reminder owns this alarm",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Unknown alarm id: {alarm_id}",
            category=ErrorCategory.UNKNOWN_ALARM,
            context={"alarm_id": alarm_id, "reason": reason},
            original_error=original_error,
        )


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(ReminderEngineError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str = "Configuration error",
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if config_key:
            ctx["config_key"] = config_key

        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            context=ctx,
            original_error=original_error,
        )


# =============================================================================
# Result Classes for Operations
# =============================================================================

class OperationResult:
    """
    Structured result for operations that can fail.

    Use this instead of returning None/False when an operation fails,
    to preserve error context.

    Usage:
        result = await scheduler.sync(reminder)
        if result.success:
            print(f"Scheduled: {result.data['scheduled']}")
        else:
            print(f"Failed: {result.error.message}")
    """

    def __init__(
        self,
        success: bool,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[ReminderEngineError] = None,
    ):
        self.success = success
        self.data = data or {}
        self.error = error

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> "OperationResult":
        """Create a successful result."""
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ReminderEngineError) -> "OperationResult":
        """Create a failed result."""
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to a plain dictionary."""
        if self.success:
            return {"success": True, "data": self.data}
        else:
            return {
                "success": False,
                "error": self.error.to_dict() if self.error else {"error": "Unknown error"},
            }

    def __repr__(self) -> str:
        if self.success:
            return f"OperationResult(ok, data={self.data!r})"
        return f"OperationResult(fail, error={self.error!r})"
