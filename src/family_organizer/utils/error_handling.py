"""
Error handling utilities for the family organizer core.

This module defines the domain error taxonomy shared by every manager, the
ErrorContext carried through logging, sensitive-data sanitisation, and the
transport-neutral error payload the request layer turns into a response.

Error kinds:
- ValidationError: malformed or missing input; the caller must fix the input.
- NotFound: a referenced family, todo or user does not exist.
- AccessDenied: the access policy rejected the actor. Never retried.
- Conflict: duplicate resource or a stale version.
- StorageError: the persistence collaborator failed. Callers may retry with
  backoff; domain errors are never retried.

Domain-specific admission and workflow errors (FamilyNotAcceptingMembers,
AlreadyInFamily, CodeGenerationExhausted, BatchTooLarge) live next to the
managers that raise them and subclass OrganizerError.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import functools
import hashlib
import inspect
import re
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from family_organizer.managers.logging_manager import get_logger

logger = get_logger(prefix="[Error Handling]")

SENSITIVE_KEYS = ["password", "token", "secret", "key", "auth", "credential", "private", "hash", "signature"]

# Sensitive data patterns for sanitization
SENSITIVE_PATTERNS = [rf'({name}["\']?\s*[:=]\s*["\']?)([^"\'}}\s,]+)' for name in SENSITIVE_KEYS]


@dataclass
class ErrorContext:
    """Context information for error handling and logging."""

    operation: str
    user_id: Optional[str] = None
    family_id: Optional[str] = None
    todo_id: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "operation": self.operation,
            "user_id": self.user_id,
            "family_id": self.family_id,
            "todo_id": self.todo_id,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


# --- Domain exception hierarchy ---


class OrganizerError(Exception):
    """Base exception for the organizer core with error code and context."""

    http_status: int = 500

    def __init__(self, message: str, error_code: str = None, context: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "ORGANIZER_ERROR"
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)


class ValidationError(OrganizerError):
    """Input validation failed with field-specific details."""

    http_status = 400

    def __init__(self, message: str, field: str = None, value: Any = None, errors: List[Dict[str, Any]] = None):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            {
                "field": field,
                "value": str(value) if value is not None else None,
                "errors": errors or [],
            },
        )

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError, message: str = "Validation failed") -> "ValidationError":
        """Collapse a pydantic ValidationError into the domain error."""
        errors = [
            {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        first_field = errors[0]["field"] if errors else None
        return cls(message, field=first_field or None, errors=errors)


class NotFound(OrganizerError):
    """A referenced record does not exist."""

    http_status = 404

    def __init__(self, message: str, resource: str = None, resource_id: str = None, error_code: str = "NOT_FOUND"):
        super().__init__(message, error_code, {"resource": resource, "resource_id": resource_id})


class AccessDenied(OrganizerError):
    """The access policy rejected the actor."""

    http_status = 403

    def __init__(self, message: str = "Access denied", actor_id: str = None, action: str = None):
        super().__init__(message, "ACCESS_DENIED", {"actor_id": actor_id, "action": action})


# Admin-only family operations report the same kind under the name callers expect.
Forbidden = AccessDenied


class Conflict(OrganizerError):
    """Duplicate resource or stale write."""

    http_status = 409

    def __init__(self, message: str, resource: str = None, context: Dict[str, Any] = None):
        super().__init__(message, "CONFLICT", {"resource": resource, **(context or {})})


class StorageError(OrganizerError):
    """The persistence collaborator failed (timeout, unavailability, driver error)."""

    http_status = 503

    def __init__(self, message: str, operation: str = None, collection: str = None, error_code: str = "STORAGE_ERROR"):
        super().__init__(message, error_code, {"operation": operation, "collection": collection})


class DuplicateDocument(StorageError):
    """A write violated a unique index."""

    def __init__(self, message: str, operation: str = None, collection: str = None):
        super().__init__(message, operation=operation, collection=collection, error_code="DUPLICATE_DOCUMENT")


# --- Sanitisation and user-facing payloads ---


def sanitize_sensitive_data(data: Any) -> Any:
    """
    Sanitize sensitive data from logs and error messages.

    Args:
        data: Data to sanitize (string, dict, list, etc.)

    Returns:
        Sanitized data with sensitive information redacted
    """
    if isinstance(data, str):
        sanitized = data
        for pattern in SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, r"\1<REDACTED>", sanitized, flags=re.IGNORECASE)
        return sanitized

    elif isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if any(sensitive in str(key).lower() for sensitive in SENSITIVE_KEYS):
                sanitized[key] = "<REDACTED>"
            else:
                sanitized[key] = sanitize_sensitive_data(value)
        return sanitized

    elif isinstance(data, list):
        return [sanitize_sensitive_data(item) for item in data]

    elif isinstance(data, tuple):
        return tuple(sanitize_sensitive_data(item) for item in data)

    else:
        return data


USER_MESSAGES = {
    "ValidationError": "The information you provided is not valid. Please check your input and try again.",
    "NotFound": "The requested item could not be found.",
    "FamilyNotFound": "No family was found for that code or id.",
    "TodoNotFound": "The requested task or meeting could not be found.",
    "UserNotFound": "The requested user could not be found.",
    "AccessDenied": "You do not have permission to perform this action.",
    "Conflict": "This change conflicts with existing data. Refresh and try again.",
    "FamilyNotAcceptingMembers": "This family is not accepting new members.",
    "AlreadyInFamily": "You already belong to a family.",
    "CodeGenerationExhausted": "We could not generate a family code right now. Please try again.",
    "BatchTooLarge": "Too many items were submitted at once.",
    "AccountLocked": "This account is temporarily locked. Please try again later.",
    "StorageError": "A storage error occurred. Please try again later.",
    "DuplicateDocument": "A storage error occurred. Please try again later.",
}


def create_user_friendly_error(
    exception: Exception, context: ErrorContext, include_technical_details: bool = False
) -> Dict[str, Any]:
    """
    Create a transport-neutral error payload from an exception.

    Args:
        exception: Original exception
        context: Error context
        include_technical_details: Whether to include technical details

    Returns:
        Error payload with code, message, suggested HTTP status and support reference
    """
    error_type = type(exception).__name__
    user_message = USER_MESSAGES.get(error_type, "An unexpected error occurred. Please try again later.")

    error_response = {
        "error": {
            "code": getattr(exception, "error_code", error_type.upper()),
            "message": user_message,
            "http_status": getattr(exception, "http_status", 500),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": context.request_id,
            "support_reference": _generate_support_reference(exception, context),
        }
    }

    if include_technical_details:
        error_response["error"]["technical_details"] = {
            "exception_type": error_type,
            "exception_message": str(exception),
            "operation": context.operation,
            "context": sanitize_sensitive_data(context.to_dict()),
        }

    if isinstance(exception, OrganizerError) and exception.context:
        error_response["error"]["context"] = sanitize_sensitive_data(exception.context)

    return error_response


def _generate_support_reference(exception: Exception, context: ErrorContext) -> str:
    """Generate a support reference for error tracking."""
    error_data = f"{type(exception).__name__}:{context.operation}:{context.timestamp.isoformat()}"
    return hashlib.md5(error_data.encode()).hexdigest()[:12].upper()


def handle_errors(operation_name: str, user_friendly_errors: bool = True):
    """
    Error handling decorator for async manager operations.

    Times the call, logs success and failure with sanitised context, attaches a
    user-friendly payload to the raised exception and re-raises it. Domain
    rejections log at WARNING, everything else at ERROR with traceback.

    Args:
        operation_name: Name of the operation for logging
        user_friendly_errors: Whether to attach `user_friendly_response` to raised errors
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                arguments = signature.bind_partial(*args, **kwargs).arguments
            except TypeError:
                # The call itself will raise; log with what was passed by name
                arguments = kwargs
            context = ErrorContext(
                operation=operation_name,
                user_id=_extract_actor_id(arguments),
                family_id=arguments.get("family_id"),
                todo_id=arguments.get("todo_id"),
                request_id=arguments.get("request_id"),
            )
            start_time = time.time()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration = time.time() - start_time
                log_context = {**sanitize_sensitive_data(context.to_dict()), "exception_type": type(e).__name__}
                if isinstance(e, OrganizerError) and not isinstance(e, StorageError):
                    logger.warning(
                        "Operation %s rejected after %.3fs: %s", operation_name, duration, e, extra=log_context
                    )
                else:
                    logger.error(
                        "Operation %s failed after %.3fs: %s",
                        operation_name,
                        duration,
                        e,
                        exc_info=True,
                        extra=log_context,
                    )
                if user_friendly_errors:
                    e.user_friendly_response = create_user_friendly_error(e, context)
                raise

            duration = time.time() - start_time
            logger.debug("Operation %s completed successfully in %.3fs", operation_name, duration)
            return result

        return async_wrapper

    return decorator


def _extract_actor_id(arguments: Dict[str, Any]) -> Optional[str]:
    for name in ("actor_id", "user_id", "requesting_user_id"):
        if arguments.get(name):
            return arguments[name]
    actor = arguments.get("actor")
    return getattr(actor, "id", None) if actor is not None else None
