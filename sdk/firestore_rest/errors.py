"""
Error types for the Firestore REST SDK.

This module defines all exception types raised by the SDK:
- FirestoreError: Base exception
- PathError, CodecError, UsageError: Local failures, never sent over the wire
- AuthError, TransportError: Collaborator failures (credentials, network)
- NotFoundError, AlreadyExistsError, PreconditionFailedError,
  ValidationError, PermissionDeniedError: Server-reported document errors
- ContentionError: Commit rejected because the read set was invalidated
- TransactionAbortedError: Transaction retries exhausted
- CancelledError, DeadlineExceededError: Caller stopped the transaction

Invariants:
    - All errors inherit from FirestoreError
    - Only ContentionError is retried, and only by the transaction engine
    - Errors include context for debugging
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class FirestoreError(Exception):
    """Base exception for all Firestore SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "FIRESTORE_ERROR"
        self.details = details or {}


class PathError(FirestoreError):
    """Malformed resource path.

    Raised when:
    - A segment is empty or contains '/'
    - A resource name has the wrong prefix
    - A collection path is used where a document is required (or vice versa)
    - parent() is called on the database root
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="PATH_ERROR", details={"path": path})
        self.path = path


class CodecErrorKind(Enum):
    """Reasons a value failed to encode or decode."""

    UNKNOWN_VARIANT = "unknown_variant"
    MALFORMED_ENVELOPE = "malformed_envelope"
    MALFORMED_BYTES = "malformed_bytes"
    MALFORMED_TIMESTAMP = "malformed_timestamp"
    MALFORMED_NUMBER = "malformed_number"
    INTEGER_OVERFLOW = "integer_overflow"
    NAIVE_DATETIME = "naive_datetime"
    UNSUPPORTED_TYPE = "unsupported_type"
    INVALID_KEY = "invalid_key"


class CodecError(FirestoreError):
    """Value encode/decode failure.

    Attributes:
        kind: Machine-readable reason
    """

    def __init__(self, message: str, kind: CodecErrorKind) -> None:
        super().__init__(message, code="CODEC_ERROR", details={"kind": kind.value})
        self.kind = kind


class UsageError(FirestoreError):
    """API misuse.

    Raised when:
    - A transaction handle is used after it finished
    - A reference from another database is passed in
    - A write is buffered in a read-only transaction
    - A query is built with an unsupported operator
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, code="USAGE_ERROR")


class AuthError(FirestoreError):
    """Credential or token failure. Never retried by the SDK."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, code="AUTH_ERROR", details={"status": status})
        self.status = status


class TransportError(FirestoreError):
    """Network or HTTP failure below the application level.

    Retry policy, if any, belongs to the transport.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"status": status, "url": url},
        )
        self.status = status
        self.url = url


class NotFoundError(FirestoreError):
    """Document not found (update or delete with an existence precondition)."""

    def __init__(self, message: str, resource_name: Optional[str] = None) -> None:
        super().__init__(message, code="NOT_FOUND", details={"resource_name": resource_name})
        self.resource_name = resource_name


class AlreadyExistsError(FirestoreError):
    """Document already exists (create)."""

    def __init__(self, message: str, resource_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="ALREADY_EXISTS",
            details={"resource_name": resource_name},
        )
        self.resource_name = resource_name


class PreconditionFailedError(FirestoreError):
    """Update-time precondition did not match the stored document."""

    def __init__(self, message: str, resource_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="FAILED_PRECONDITION",
            details={"resource_name": resource_name},
        )
        self.resource_name = resource_name


class ValidationError(FirestoreError):
    """Server rejected the request as invalid (INVALID_ARGUMENT)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_ARGUMENT")


class PermissionDeniedError(FirestoreError):
    """Caller lacks permission for the resource."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="PERMISSION_DENIED")


class ContentionError(FirestoreError):
    """Commit aborted because a concurrent writer invalidated the read set."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="ABORTED")


class TransactionAbortedError(FirestoreError):
    """Transaction kept hitting contention until attempts ran out.

    Attributes:
        attempts: Number of attempts made
    """

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message, code="TRANSACTION_ABORTED", details={"attempts": attempts})
        self.attempts = attempts


class CancelledError(FirestoreError):
    """Transaction stopped by the caller's cancellation signal."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message, code="CANCELLED", details={"attempts": attempts})
        self.attempts = attempts


class DeadlineExceededError(CancelledError):
    """Per-attempt or overall transaction deadline exceeded."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message, attempts=attempts)
        self.code = "DEADLINE_EXCEEDED"


_STATUS_ERRORS = {
    "ABORTED": ContentionError,
    "NOT_FOUND": NotFoundError,
    "ALREADY_EXISTS": AlreadyExistsError,
    "FAILED_PRECONDITION": PreconditionFailedError,
    "INVALID_ARGUMENT": ValidationError,
    "UNAUTHENTICATED": AuthError,
    "PERMISSION_DENIED": PermissionDeniedError,
}

_HTTP_STATUS_NAMES = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    409: "ABORTED",
    412: "FAILED_PRECONDITION",
}


def error_from_response(
    status: int,
    body: Any,
    url: Optional[str] = None,
) -> FirestoreError:
    """Map a non-2xx REST response to the SDK error taxonomy.

    The google error envelope ``{"error": {"code", "message", "status"}}``
    is preferred; the HTTP status class is the fallback.

    Args:
        status: HTTP status code
        body: Decoded JSON body (may be None or a list)
        url: Request URL, for context

    Returns:
        The error to raise
    """
    error = None
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]

    message = (error or {}).get("message") or f"HTTP {status}"
    status_name = (error or {}).get("status") or _HTTP_STATUS_NAMES.get(status)

    error_cls = _STATUS_ERRORS.get(status_name or "")
    if error_cls is None:
        return TransportError(f"{status_name or 'HTTP'} {status}: {message}", status=status, url=url)
    if error_cls is AuthError:
        return AuthError(message, status=status)
    return error_cls(message)
