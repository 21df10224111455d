"""Error Hierarchy - typed, categorized exceptions for every BoxOffice failure mode.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Every error declares whether the caller may retry it (retryable)
    - Business-rule failures (inventory, signature, replay) are authoritative, never retryable
    - to_response() produces the REST envelope; no internal details leak into it

Design Decisions:
    - Single hierarchy with BoxOfficeError base: one FastAPI handler catches all
    - ErrorContext as dataclass: observability data without coupling to logging
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    RESOURCE_NOT_FOUND = "resource_not_found"
    SECURITY = "security"
    RATE_LIMIT = "rate_limit"
    DATABASE = "database"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Rich context for error observability and debugging."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    order_id: str | None = None
    event_id: str | None = None
    ticket_type_id: str | None = None
    retry_after_seconds: int | None = None
    debug_info: dict[str, Any] | None = None


class BoxOfficeError(Exception):
    """Base exception for all BoxOffice errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 500,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status
        self.retryable = retryable

    def details(self) -> dict:
        """Error-specific payload surfaced to callers. Overridden by subclasses."""
        return {}

    def to_response(self) -> dict:
        """Convert to standardized REST error response."""
        body = {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "timestamp": self.context.timestamp.isoformat(),
        }
        details = self.details()
        if details:
            body["details"] = details
        return {"error": body}


# ─── Domain Errors (400-level) ──────────────────────────────────

class InvalidSelectionError(BoxOfficeError):
    """Checkout input is empty or malformed."""
    def __init__(self, message: str, field: str, context: ErrorContext | None = None):
        super().__init__(
            message, "INVALID_SELECTION", ErrorCategory.VALIDATION,
            ErrorSeverity.WARNING, context, 400,
        )
        self.field = field

    def details(self) -> dict:
        return {"field": self.field}


@dataclass(frozen=True)
class Shortfall:
    """One line item that could not be reserved."""
    ticket_type_id: str
    name: str
    requested: int
    available: int


class InsufficientInventoryError(BoxOfficeError):
    """One or more ticket types cannot cover the requested quantity."""
    def __init__(self, shortfalls: list[Shortfall], context: ErrorContext | None = None):
        names = ", ".join(
            f"{s.name} (requested {s.requested}, available {s.available})"
            for s in shortfalls
        )
        super().__init__(
            f"Not enough tickets available: {names}",
            "INSUFFICIENT_INVENTORY", ErrorCategory.BUSINESS_RULE,
            ErrorSeverity.WARNING, context, 409,
        )
        self.shortfalls = shortfalls

    def details(self) -> dict:
        return {
            "shortfalls": [
                {
                    "ticket_type_id": s.ticket_type_id,
                    "name": s.name,
                    "requested": s.requested,
                    "available": s.available,
                }
                for s in self.shortfalls
            ],
        }


class SignatureMismatchError(BoxOfficeError):
    """A ticket credential or webhook signature failed verification."""
    def __init__(self, message: str = "Signature verification failed", context: ErrorContext | None = None):
        super().__init__(
            message, "SIGNATURE_MISMATCH", ErrorCategory.SECURITY,
            ErrorSeverity.WARNING, context, 401,
        )


class RateLimitedError(BoxOfficeError):
    """Caller exceeded the request cap of a rate-limit policy."""
    def __init__(
        self, policy: str, retry_after: int, context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.retry_after_seconds = retry_after
        super().__init__(
            f"Rate limit exceeded for '{policy}'. Retry after {retry_after}s.",
            "RATE_LIMITED", ErrorCategory.RATE_LIMIT,
            ErrorSeverity.WARNING, ctx, 429, retryable=True,
        )
        self.policy = policy
        self.retry_after = retry_after

    def details(self) -> dict:
        return {"policy": self.policy, "retry_after": self.retry_after}


class DuplicateConfirmationError(BoxOfficeError):
    """A payment confirmation was replayed."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(
            message, "DUPLICATE_CONFIRMATION", ErrorCategory.CONFLICT,
            ErrorSeverity.WARNING, context, 409,
        )


class InvalidTransitionError(BoxOfficeError):
    """Status change not allowed from the entity's current status."""
    def __init__(
        self, entity: str, current: str, target: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{entity} cannot move from '{current}' to '{target}'",
            "INVALID_TRANSITION", ErrorCategory.BUSINESS_RULE,
            ErrorSeverity.ERROR, context, 409,
        )
        self.entity = entity
        self.current = current
        self.target = target


class ResourceNotFoundError(BoxOfficeError):
    """Requested resource does not exist."""
    def __init__(
        self, resource_type: str, resource_id: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            "RESOURCE_NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorSeverity.ERROR, context, 404,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


# ─── Infrastructure Errors ──────────────────────────────────────

class QueryTimeoutError(BoxOfficeError):
    """A guarded read did not finish before its deadline."""
    def __init__(self, description: str, timeout_ms: int, context: ErrorContext | None = None):
        super().__init__(
            f"Query timeout after {timeout_ms}ms: {description[:200]}",
            "QUERY_TIMEOUT", ErrorCategory.TIMEOUT,
            ErrorSeverity.ERROR, context, 504, retryable=True,
        )
        self.timeout_ms = timeout_ms


class ConstraintViolationError(BoxOfficeError):
    """Storage-layer uniqueness or check constraint rejected a write.

    Token collisions are retryable with a fresh token. Inventory check
    failures are authoritative and never retried.
    """
    def __init__(
        self,
        constraint: str,
        retryable: bool = False,
        context: ErrorContext | None = None,
    ):
        super().__init__(
            f"Constraint violated: {constraint}",
            "CONSTRAINT_VIOLATION", ErrorCategory.CONFLICT,
            ErrorSeverity.ERROR, context, 409, retryable=retryable,
        )
        self.constraint = constraint


class DatabaseError(BoxOfficeError):
    """Database operation failed."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Database {operation} failed: {message}",
            "DATABASE_ERROR", ErrorCategory.DATABASE,
            ErrorSeverity.CRITICAL, context, 503, retryable=True,
        )
        self.operation = operation
