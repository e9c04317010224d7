"""Custom exceptions for medi.

Provides a structured exception hierarchy with error codes and
machine-readable error information so a front end can render failures
without parsing messages.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_ALREADY_EXISTS = 1002

    # Key errors (2xxx)
    KEY_INVALID = 2001

    # Task errors (3xxx)
    TASK_NOT_FOUND = 3001
    TASK_VALIDATION_FAILED = 3002

    # Storage errors (4xxx)
    STORAGE_UNAVAILABLE = 4001
    STORAGE_WRITE_FAILED = 4002
    INDEX_CORRUPTED = 4003
    INDEX_FORMAT_MISMATCH = 4004

    # Bulk/transfer errors (45xx)
    BULK_OPERATION_PARTIAL = 4501
    IMPORT_MALFORMED = 4502

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class MediError(Exception):
    """Base exception for all medi errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(MediError):
    """A referenced key or identifier is absent."""


class NoteNotFoundError(NotFoundError):
    """Raised when a note key does not exist in the store."""

    def __init__(self, key: str, message: Optional[str] = None):
        super().__init__(
            message or f"Key '{key}' not found in the store",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"key": key},
        )
        self.key = key


class TaskNotFoundError(NotFoundError):
    """Raised when a task identifier does not exist."""

    def __init__(self, task_id: int, message: Optional[str] = None):
        super().__init__(
            message or f"Task {task_id} not found",
            code=ErrorCode.TASK_NOT_FOUND,
            details={"task_id": task_id},
        )
        self.task_id = task_id


class AlreadyExistsError(MediError):
    """Raised when a create-only write targets an existing key."""

    def __init__(self, key: str, message: Optional[str] = None):
        super().__init__(
            message or f"Key '{key}' already exists. Use an update to modify it.",
            code=ErrorCode.NOTE_ALREADY_EXISTS,
            details={"key": key},
        )
        self.key = key


class ValidationError(MediError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class InvalidKeyError(ValidationError):
    """Raised when a note key is empty or contains disallowed characters."""

    def __init__(self, key: Any, reason: str):
        super().__init__(
            f"Invalid key {key!r}: {reason}",
            field="key",
            value=key,
            code=ErrorCode.KEY_INVALID,
        )
        self.key = key
        self.reason = reason


class StoreUnavailableError(MediError):
    """Raised when the canonical store cannot be opened, read or written.

    This is fatal for the current operation; the core never retries.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_UNAVAILABLE,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Only the file name; full paths stay out of rendered messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class IndexCorruptError(MediError):
    """Raised inside the index layer when derived state is unreadable.

    Never reaches callers of the service layer: the coordinator answers it
    with a full rebuild from the canonical store.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INDEX_CORRUPTED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=code, details=details)
        self.original_error = original_error


class BulkOperationError(MediError):
    """Raised when some items of a bulk operation failed.

    Attributes:
        operation: Name of the bulk operation (e.g. "delete_notes")
        total_count: Total number of items attempted
        success_count: Number of items that succeeded
        failed_keys: Keys that failed (full list, not truncated)
    """

    def __init__(
        self,
        message: str,
        operation: str,
        total_count: int = 0,
        success_count: int = 0,
        failed_keys: Optional[List[str]] = None,
        code: ErrorCode = ErrorCode.BULK_OPERATION_PARTIAL,
    ):
        if success_count > total_count:
            raise ValueError("success_count cannot exceed total_count")

        details: Dict[str, Any] = {
            "operation": operation,
            "total_count": total_count,
            "success_count": success_count,
            "failed_count": total_count - success_count,
        }
        if failed_keys:
            details["failed_keys"] = failed_keys[:10]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.total_count = total_count
        self.success_count = success_count
        self.failed_keys: List[str] = list(failed_keys) if failed_keys else []

    @property
    def failed_count(self) -> int:
        """Number of items that failed (computed from total - success)."""
        return self.total_count - self.success_count
