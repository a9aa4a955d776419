"""Structured error taxonomy for the database target."""
#
# PURPOSE:
# Every failure the target can report carries an error code, a human-readable
# message and an optional details dictionary, so that orchestration code can
# branch on the code and diagnostics can log the details verbatim.
#
# ERROR CODE FORMAT:
# - DB_XXX: Storage / connection errors
# - MIGRATION_XXX: Schema migration errors
# - CODEC_XXX: Row encoding / decoding errors
# - TARGET_XXX: Sink lifecycle errors
#
# USAGE:
#   from dbtarget.errors import TargetClosed
#
#   try:
#       target.submit_log(record)
#   except TargetClosed:
#       ...
#
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Storage Errors
    DB_CONNECTION_FAILED = "DB_001"

    # Migration Errors
    MIGRATION_FAILED = "MIGRATION_001"
    MIGRATION_DUPLICATE_ID = "MIGRATION_002"

    # Codec Errors
    CODEC_TYPE_MISMATCH = "CODEC_001"
    CODEC_UNKNOWN_METRIC_KIND = "CODEC_002"
    CODEC_UNKNOWN_LEVEL = "CODEC_003"
    CODEC_INVALID_VALUE = "CODEC_004"

    # Target Errors
    TARGET_INIT_FAILED = "TARGET_001"
    TARGET_CLOSED = "TARGET_002"
    TARGET_FLUSH_FAILED = "TARGET_003"
    TARGET_SHUTDOWN_FAILED = "TARGET_004"
    TARGET_NOT_READY = "TARGET_005"


class DBTargetError(Exception):
    """
    Base exception with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "DB_001")
        message: Human-readable error message
        details: Dictionary with additional context
    """

    default_code = ErrorCode.DB_CONNECTION_FAILED

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[ErrorCode] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a dictionary for structured logging."""
        return {
            "code": self.code.value,
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class DBConnectionError(DBTargetError):
    """Raised when the engine cannot allocate or locate storage."""

    default_code = ErrorCode.DB_CONNECTION_FAILED


class MigrationFailed(DBTargetError):
    """Raised when a step's up/down operation fails. Later steps are not run."""

    default_code = ErrorCode.MIGRATION_FAILED

    def __init__(self, step_id: str, cause: BaseException):
        self.step_id = step_id
        self.cause = cause
        super().__init__(
            f"Migration step {step_id} failed: {cause}",
            details={"step_id": step_id, "cause": repr(cause)},
        )


class DuplicateMigrationId(DBTargetError):
    default_code = ErrorCode.MIGRATION_DUPLICATE_ID

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(
            f"Migration step id registered twice: {step_id}",
            details={"step_id": step_id},
        )


class TypeMismatch(DBTargetError):
    """Raised when a stored column cannot be read as the requested type."""

    default_code = ErrorCode.CODEC_TYPE_MISMATCH

    def __init__(self, column: str, requested: type, actual: type):
        self.column = column
        self.requested = requested
        self.actual = actual
        super().__init__(
            f"Column {column} requested as {requested.__name__}, stored as {actual.__name__}",
            details={
                "column": column,
                "requested": requested.__name__,
                "actual": actual.__name__,
            },
        )


class UnknownMetricKind(DBTargetError):
    default_code = ErrorCode.CODEC_UNKNOWN_METRIC_KIND

    def __init__(self, kind: Any):
        self.kind = kind
        super().__init__(f"No type code for metric kind {kind!r}", details={"kind": str(kind)})


class UnknownLevelCode(DBTargetError):
    default_code = ErrorCode.CODEC_UNKNOWN_LEVEL

    def __init__(self, code: Any):
        self.level_code = code
        super().__init__(f"No log level for code {code!r}", details={"code": str(code)})


class InvalidValue(DBTargetError):
    """Raised when a record field holds a value the store cannot represent."""

    default_code = ErrorCode.CODEC_INVALID_VALUE

    def __init__(self, column: str, value: Any):
        self.column = column
        self.value = value
        super().__init__(
            f"Column {column} cannot store {value!r}",
            details={"column": column, "value": repr(value)},
        )


class InitializationFailed(DBTargetError):
    """Raised when the target never reaches READY. Do not submit events."""

    default_code = ErrorCode.TARGET_INIT_FAILED

    def __init__(self, target: str, cause: BaseException):
        self.cause = cause
        super().__init__(
            f"Target {target} failed to initialise: {cause}",
            details={"target": target, "cause": repr(cause)},
        )


class TargetClosed(DBTargetError):
    default_code = ErrorCode.TARGET_CLOSED

    def __init__(self, target: str):
        super().__init__(f"Target {target} is shutting down or closed", details={"target": target})


class TargetNotReady(DBTargetError):
    default_code = ErrorCode.TARGET_NOT_READY

    def __init__(self, target: str, state: str):
        super().__init__(
            f"Target {target} is not accepting events in state {state}",
            details={"target": target, "state": state},
        )


class FlushError(DBTargetError):
    """
    Raised by flush() when writes failed since the previous flush.

    Rows committed before the failure stay committed; `failures` holds the
    underlying exceptions in the order they happened.
    """

    default_code = ErrorCode.TARGET_FLUSH_FAILED

    def __init__(self, target: str, failures: list):
        self.failures = list(failures)
        super().__init__(
            f"Target {target} failed {len(self.failures)} write batch(es): {self.failures[-1]}",
            details={"target": target, "failures": [repr(f) for f in self.failures]},
        )


class ShutdownError(DBTargetError):
    default_code = ErrorCode.TARGET_SHUTDOWN_FAILED

    def __init__(self, target: str, failures: list):
        self.failures = list(failures)
        super().__init__(
            f"Target {target} shut down after {len(self.failures)} failed write(s)",
            details={"target": target, "failures": [repr(f) for f in self.failures]},
        )


__all__ = [
    "ErrorCode",
    "DBTargetError",
    "DBConnectionError",
    "MigrationFailed",
    "DuplicateMigrationId",
    "TypeMismatch",
    "UnknownMetricKind",
    "UnknownLevelCode",
    "InvalidValue",
    "InitializationFailed",
    "TargetClosed",
    "TargetNotReady",
    "FlushError",
    "ShutdownError",
]
