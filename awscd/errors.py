"""
Error Definitions for awscd

This module defines the exception classes raised by the reconciliation and
provisioning engine. "Not found" is never an error: inventory lookups return
``None`` for absent resources and only provider failures surface here.
"""

from typing import Any, Dict, List, Optional


class AwsCdError(Exception):
    """Base exception class for all awscd errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class TransientError(AwsCdError):
    """Raised when the provider fails for a reason other than "not found".

    Covers authentication failures, throttling, network errors and any
    unexpected provider response. Aborts the affected resource's subtree.
    """

    def __init__(self, operation: str, reason: str, code: Optional[str] = None, **details):
        message = f"Provider call {operation} failed: {reason}"

        super().__init__(message, {"operation": operation, "code": code, **details})
        self.operation = operation
        self.reason = reason
        self.code = code


class ConflictError(AwsCdError):
    """Raised when a conflict resolution cannot be applied."""

    def __init__(self, kind: str, name: str, reason: str, **details):
        message = f"Conflict on {kind} {name}: {reason}"

        super().__init__(message, {"kind": kind, "name": name, **details})
        self.kind = kind
        self.name = name
        self.reason = reason


class PlanRejectedError(AwsCdError):
    """Raised when apply is attempted on a plan with unresolved conflicts."""

    def __init__(self, unresolved: List[str], **details):
        message = f"Plan has {len(unresolved)} unresolved conflict(s): {', '.join(unresolved)}"

        super().__init__(message, {"unresolved": unresolved, **details})
        self.unresolved = unresolved


class CascadeConfirmationRequired(AwsCdError):
    """Raised when recreating a resource would orphan existing dependents."""

    def __init__(self, kind: str, name: str, dependents: List[str], **details):
        message = (
            f"Recreating {kind} {name} affects existing dependents {dependents}; "
            f"cascade confirmation is required"
        )

        super().__init__(message, {"kind": kind, "name": name, "dependents": dependents, **details})
        self.kind = kind
        self.name = name
        self.dependents = dependents


class TimeoutError(AwsCdError):
    """Raised when a bounded settle-wait exceeds its limit."""

    def __init__(self, operation: str, timeout_seconds: float, **details):
        message = f"Operation timed out: {operation} exceeded {timeout_seconds}s limit"

        super().__init__(
            message, {"operation": operation, "timeout_seconds": timeout_seconds, **details}
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class PersistenceError(AwsCdError):
    """Raised when the project descriptor cannot be read or written."""

    def __init__(self, path: str, operation: str, reason: str, **details):
        message = f"Descriptor error during {operation} on {path}: {reason}"

        super().__init__(
            message, {"path": path, "operation": operation, "reason": reason, **details}
        )
        self.path = path
        self.operation = operation
        self.reason = reason


class ValidationError(AwsCdError):
    """Raised when desired configuration fails validation."""

    def __init__(self, field: str, value: Any, constraint: str, **details):
        message = f"Validation failed for {field}: {value} violates constraint '{constraint}'"

        super().__init__(
            message, {"field": field, "value": value, "constraint": constraint, **details}
        )
        self.field = field
        self.value = value
        self.constraint = constraint


class TeardownStateError(AwsCdError):
    """Raised when the teardown executor is driven out of order."""

    def __init__(self, current: str, attempted: str, **details):
        message = f"Cannot {attempted} while teardown is {current}"

        super().__init__(message, {"current": current, "attempted": attempted, **details})
        self.current = current
        self.attempted = attempted


class AlreadyExistsError(AwsCdError):
    """Raised by a create call when a resource with the same name exists.

    The provisioner treats this as adoption, never as a failure.
    """

    def __init__(self, kind: str, name: str, code: Optional[str] = None, **details):
        message = f"{kind} {name} already exists"

        super().__init__(message, {"kind": kind, "name": name, "code": code, **details})
        self.kind = kind
        self.name = name
        self.code = code
