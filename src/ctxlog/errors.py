"""
Exception hierarchy for ctxlog.

All ctxlog exceptions inherit from CtxlogError, allowing callers to catch
every store-specific failure with a single except clause.

Exception Categories:
    - SecurityViolationError: Path escapes the project root or is disallowed
    - RecordValidationError: Record is missing fields or has malformed values
    - LockTimeoutError: Lock could not be acquired before the deadline
    - IntegrityError: Encoded line failed its integrity check
    - MalformedLineError: A persisted line could not be parsed (non-fatal)
    - StorageError: Underlying filesystem operation failed

Retry Semantics:
    - Security and validation errors are never retried; the caller must fix
      the configuration or the record.
    - LockTimeoutError is transient and safe to retry; no bytes were written.
    - IntegrityError and MalformedLineError are recovered inside bulk reads
      (the line is skipped) and only surface from direct decode/parse calls.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Security errors: 1xxx
ERROR_SECURITY_VIOLATION = 1001
ERROR_SECURITY_PATH_ESCAPE = 1002
ERROR_SECURITY_RESERVED_NAME = 1003
ERROR_SECURITY_NULL_BYTE = 1004
ERROR_SECURITY_DISALLOWED_PATTERN = 1005

# Validation errors: 2xxx
ERROR_VALIDATION_FAILED = 2001
ERROR_VALIDATION_MISSING_FIELD = 2002
ERROR_VALIDATION_INVALID_VALUE = 2003

# Lock errors: 3xxx
ERROR_LOCK_TIMEOUT = 3001
ERROR_LOCK_OWNERSHIP = 3002

# Integrity errors: 4xxx
ERROR_INTEGRITY_TAG_MISMATCH = 4001
ERROR_INTEGRITY_MALFORMED_TOKEN = 4002
ERROR_INTEGRITY_INVALID_KEY = 4003

# Read errors: 5xxx
ERROR_MALFORMED_LINE = 5001

# Storage errors: 6xxx
ERROR_STORAGE_WRITE = 6001
ERROR_STORAGE_READ = 6002


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class CtxlogError(Exception):
    """
    Base exception for all ctxlog errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Security Errors
# =============================================================================


@dataclass
class SecurityViolationError(CtxlogError):
    """
    Raised when a path fails confinement checks.

    Never retried automatically: the configured root or data path is wrong.

    Attributes:
        path: The path as supplied by the caller
        reason: Why the path was rejected
        rule: Which check rejected it (e.g. "path_escape", "reserved_name")
    """

    path: str = ""
    reason: str = ""
    rule: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Security violation for path {self.path!r}: {self.reason}"
        if self.code == 0:
            self.code = {
                "path_escape": ERROR_SECURITY_PATH_ESCAPE,
                "reserved_name": ERROR_SECURITY_RESERVED_NAME,
                "null_byte": ERROR_SECURITY_NULL_BYTE,
                "disallowed_pattern": ERROR_SECURITY_DISALLOWED_PATTERN,
            }.get(self.rule or "", ERROR_SECURITY_VIOLATION)
        if not self.suggestion:
            self.suggestion = "Use a path inside the configured project root"
        self.context.update({
            "path": self.path,
            "reason": self.reason,
            "rule": self.rule,
        })


# =============================================================================
# Validation Errors
# =============================================================================


@dataclass
class RecordValidationError(CtxlogError):
    """
    Raised when a record fails validation. No write is attempted.

    Attributes:
        record_type: Type tag of the offending record
        record_id: Identifier of the offending record
        errors: Every problem found, one message per field
    """

    record_type: str = ""
    record_id: str = ""
    errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            detail = "; ".join(self.errors) if self.errors else "invalid record"
            self.message = f"Invalid {self.record_type or 'record'} {self.record_id!r}: {detail}"
        if self.code == 0:
            if self.errors and all("is required" in e for e in self.errors):
                self.code = ERROR_VALIDATION_MISSING_FIELD
            elif self.errors:
                self.code = ERROR_VALIDATION_INVALID_VALUE
            else:
                self.code = ERROR_VALIDATION_FAILED
        self.context.update({
            "record_type": self.record_type,
            "record_id": self.record_id,
            "errors": list(self.errors),
        })


# =============================================================================
# Lock Errors
# =============================================================================


@dataclass
class LockError(CtxlogError):
    """
    Base class for lock errors.

    Attributes:
        resource: Path of the data file the lock protects
    """

    resource: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["resource"] = self.resource


@dataclass
class LockTimeoutError(LockError):
    """Raised when a lock cannot be acquired before the timeout."""

    timeout_seconds: float = 0.0
    holder: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Timed out after {self.timeout_seconds:g}s waiting for lock on {self.resource}"
            )
        if self.code == 0:
            self.code = ERROR_LOCK_TIMEOUT
        if not self.suggestion:
            self.suggestion = "Retry with backoff or increase lock_timeout_seconds"
        super().__post_init__()
        self.context.update({
            "timeout_seconds": self.timeout_seconds,
            "holder": self.holder,
        })


@dataclass
class LockOwnershipError(LockError):
    """Raised when releasing a lock whose marker no longer carries our token."""

    token: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Lock on {self.resource} is no longer held by this handle"
        if self.code == 0:
            self.code = ERROR_LOCK_OWNERSHIP
        super().__post_init__()
        self.context["token"] = self.token


# =============================================================================
# Integrity Errors
# =============================================================================


@dataclass
class IntegrityError(CtxlogError):
    """
    Raised when an encoded token is tampered with or corrupt.

    Attributes:
        token_prefix: First characters of the offending token
        reason: What failed ("tag mismatch", "bad base64", ...)
    """

    token_prefix: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Integrity check failed: {self.reason}"
        if self.code == 0:
            self.code = (
                ERROR_INTEGRITY_TAG_MISMATCH
                if self.reason == "tag mismatch"
                else ERROR_INTEGRITY_MALFORMED_TOKEN
            )
        self.context.update({
            "token_prefix": self.token_prefix,
            "reason": self.reason,
        })


@dataclass
class EncoderKeyError(CtxlogError):
    """
    Raised when a configured encoder key cannot be used.

    Attributes:
        source: Where the key came from ("config" or the environment variable)
        reason: What is wrong with it
    """

    source: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid encoder key from {self.source}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_INTEGRITY_INVALID_KEY
        if not self.suggestion:
            self.suggestion = "Use a hex key of at least 32 characters"
        self.context.update({
            "source": self.source,
            "reason": self.reason,
        })


# =============================================================================
# Read Errors
# =============================================================================


@dataclass
class MalformedLineError(CtxlogError):
    """
    Raised when a persisted line cannot be parsed.

    Internal and non-fatal: the reader logs and skips such lines.
    """

    line_number: int | None = None
    raw: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            where = f"line {self.line_number}" if self.line_number is not None else "line"
            self.message = f"Malformed {where}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_MALFORMED_LINE
        self.context.update({
            "line_number": self.line_number,
            "raw": self.raw[:200],
            "reason": self.reason,
        })


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(CtxlogError):
    """
    Base class for filesystem errors.

    Attributes:
        operation: The operation that failed (e.g., "append", "read")
        path: The file involved
    """

    operation: str = ""
    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context.update({
            "operation": self.operation,
            "path": self.path,
        })


@dataclass
class StorageWriteError(StorageError):
    """Raised when writing to a data file fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Write to {self.path} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when reading a data file fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Read of {self.path} failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error
