"""
Error taxonomy for changerelay

Every failure raised by the pipeline carries an ErrorCode from the catalog
below. The catalog decides whether a failure is transient (the triggering
event should be redelivered) or permanent (the event is acknowledged and the
failure is left for an operator).
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Error categorization for retry decisions"""
    TRANSIENT = "transient"      # Redeliver the event
    PERMANENT = "permanent"      # Acknowledge and report
    CONFLICT = "conflict"        # Retried locally with backoff


class ErrorCode(Enum):
    """Structured error codes"""

    # Object store (CR1xxx)
    OBJECT_NOT_FOUND = "CR1001"
    VERSION_CONFLICT = "CR1002"
    CONFLICT_EXHAUSTED = "CR1003"
    STORE_UNAVAILABLE = "CR1004"

    # Processing (CR2xxx)
    ARCHIVE_MISSING = "CR2001"
    COLLABORATOR_FAILED = "CR2002"
    INVALID_EVENT = "CR2003"
    INVALID_RECORD = "CR2004"

    # Configuration (CR3xxx)
    INVALID_CONFIG = "CR3001"

    # Fallback for anything not raised by changerelay itself
    UNEXPECTED = "CR9999"


@dataclass(frozen=True)
class ErrorDefinition:
    code: ErrorCode
    message: str
    category: ErrorCategory
    resolution_hint: Optional[str] = None


ERROR_CATALOG: Dict[ErrorCode, ErrorDefinition] = {
    ErrorCode.OBJECT_NOT_FOUND: ErrorDefinition(
        ErrorCode.OBJECT_NOT_FOUND, "Object not found", ErrorCategory.PERMANENT
    ),
    ErrorCode.VERSION_CONFLICT: ErrorDefinition(
        ErrorCode.VERSION_CONFLICT,
        "Object changed since it was read",
        ErrorCategory.CONFLICT,
    ),
    ErrorCode.CONFLICT_EXHAUSTED: ErrorDefinition(
        ErrorCode.CONFLICT_EXHAUSTED,
        "Concurrent modifications kept conflicting",
        ErrorCategory.TRANSIENT,
        resolution_hint="Refresh the record and retry the change",
    ),
    ErrorCode.STORE_UNAVAILABLE: ErrorDefinition(
        ErrorCode.STORE_UNAVAILABLE,
        "Object store unavailable",
        ErrorCategory.TRANSIENT,
        resolution_hint="Check object store connectivity",
    ),
    ErrorCode.ARCHIVE_MISSING: ErrorDefinition(
        ErrorCode.ARCHIVE_MISSING,
        "Trigger has no backing archive record",
        ErrorCategory.PERMANENT,
        resolution_hint="Inspect the trigger and restore or remove it manually",
    ),
    ErrorCode.COLLABORATOR_FAILED: ErrorDefinition(
        ErrorCode.COLLABORATOR_FAILED,
        "Side-effect dispatcher failed",
        ErrorCategory.TRANSIENT,
    ),
    ErrorCode.INVALID_EVENT: ErrorDefinition(
        ErrorCode.INVALID_EVENT,
        "Event could not be parsed",
        ErrorCategory.PERMANENT,
    ),
    ErrorCode.INVALID_RECORD: ErrorDefinition(
        ErrorCode.INVALID_RECORD,
        "Stored record is malformed",
        ErrorCategory.PERMANENT,
    ),
    ErrorCode.INVALID_CONFIG: ErrorDefinition(
        ErrorCode.INVALID_CONFIG,
        "Invalid configuration",
        ErrorCategory.PERMANENT,
    ),
    ErrorCode.UNEXPECTED: ErrorDefinition(
        ErrorCode.UNEXPECTED,
        "Unexpected error",
        ErrorCategory.TRANSIENT,
    ),
}


class RelayError(Exception):
    """Base exception for changerelay with structured error information"""

    code: ErrorCode = ErrorCode.UNEXPECTED

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        data: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        if code is not None:
            self.code = code
        self.definition = ERROR_CATALOG[self.code]
        self.data = data or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message or self.definition.message)

    @property
    def message(self) -> str:
        return self.args[0]

    @property
    def category(self) -> ErrorCategory:
        return self.definition.category

    @property
    def retryable(self) -> bool:
        """Whether redelivering the triggering event may succeed"""
        return self.definition.category != ErrorCategory.PERMANENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.code.value,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "resolution_hint": self.definition.resolution_hint,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        base_msg = f"[{self.code.value}] {self.message}"
        if self.data:
            context_str = ", ".join(f"{k}={v}" for k, v in self.data.items())
            base_msg += f" ({context_str})"
        return base_msg


class NotFoundError(RelayError):
    code = ErrorCode.OBJECT_NOT_FOUND

    def __init__(self, key: str, cause: Optional[BaseException] = None):
        super().__init__(f"Object not found: {key}", data={"key": key}, cause=cause)
        self.key = key


class VersionConflictError(RelayError):
    """Conditional write rejected because the stored version differs"""

    code = ErrorCode.VERSION_CONFLICT

    def __init__(self, key: str, expected_version: Optional[str]):
        if expected_version is None:
            message = f"Object already exists: {key}"
        else:
            message = f"Version mismatch for {key} (expected {expected_version})"
        super().__init__(
            message, data={"key": key, "expected_version": expected_version}
        )
        self.key = key
        self.expected_version = expected_version


class ConflictExhaustedError(RelayError):
    """Optimistic update gave up after repeated version conflicts"""

    code = ErrorCode.CONFLICT_EXHAUSTED

    def __init__(self, key: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Update of {key} conflicted {attempts} times; refresh and retry",
            data={"key": key, "attempts": attempts},
            cause=cause,
        )
        self.key = key
        self.attempts = attempts


class StoreUnavailableError(RelayError):
    code = ErrorCode.STORE_UNAVAILABLE


class DataIntegrityError(RelayError):
    code = ErrorCode.ARCHIVE_MISSING


class InvalidRecordError(RelayError):
    code = ErrorCode.INVALID_RECORD


class CollaboratorError(RelayError):
    """A side-effect dispatcher failed for one record and tenant"""

    code = ErrorCode.COLLABORATOR_FAILED

    def __init__(
        self,
        dispatcher: str,
        record_id: str,
        tenant_id: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Dispatcher {dispatcher} failed for record {record_id}, tenant {tenant_id}: {cause}",
            data={"dispatcher": dispatcher, "record_id": record_id, "tenant_id": tenant_id},
            cause=cause,
        )
        self.dispatcher = dispatcher
        self.record_id = record_id
        self.tenant_id = tenant_id


class InvalidEventError(RelayError):
    code = ErrorCode.INVALID_EVENT


class ConfigurationError(RelayError):
    code = ErrorCode.INVALID_CONFIG


def classify_error(error: BaseException) -> RelayError:
    """Wrap any exception in a RelayError carrying a retry decision.

    Errors we do not recognise are treated as transient so the event is
    redelivered rather than dropped.
    """
    if isinstance(error, RelayError):
        return error
    if isinstance(error, (asyncio.TimeoutError, ConnectionError, OSError)):
        return StoreUnavailableError(f"Transient I/O failure: {error}", cause=error)
    if isinstance(error, (json.JSONDecodeError, UnicodeDecodeError)):
        return InvalidEventError(f"Malformed payload: {error}", cause=error)
    return RelayError(f"{type(error).__name__}: {error}", cause=error)


def should_acknowledge(error: BaseException) -> bool:
    """Whether the triggering event should be removed from its source"""
    return not classify_error(error).retryable
