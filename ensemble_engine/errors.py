"""Error taxonomy for ensemble loading and execution.

Every error raised by the engine derives from EnsembleError so callers can
catch the whole family at once. Each error carries a stable ``code`` and a
``details`` mapping that is safe to serialize into an execution result:

- SchemaValidationError: definition is malformed (raised before execution)
- InterpolationError: a ``${scope.path}`` reference could not be resolved
- StateAccessViolation: a step touched state outside its use/set lists
- UnknownMemberType: no member registered under a type tag
- MemberExecutionError: wraps any failure raised by a concrete member
- ExecutionCancelled: the run was cancelled between stages
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class EnsembleError(Exception):
    """Base exception for the ensemble engine."""

    code = "ENSEMBLE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and result payloads."""
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class SchemaValidationError(EnsembleError):
    """Raised when an ensemble definition fails validation.

    Attributes:
        field: Dotted location of the offending field (e.g. ``flow.2.set``)
        reason: Human readable explanation
    """

    code = "SCHEMA_VALIDATION_ERROR"

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(
            f"Invalid ensemble definition at '{field}': {reason}",
            {"field": field, "reason": reason},
        )


class InterpolationError(EnsembleError):
    """Raised when a reference token cannot be resolved."""

    code = "INTERPOLATION_ERROR"

    def __init__(self, scope: str, path: str, reason: str = "path not found") -> None:
        self.scope = scope
        self.path = path
        self.reason = reason
        reference = f"{scope}.{path}" if scope and path else scope or path
        super().__init__(
            f"Cannot resolve '${{{reference}}}': {reason}",
            {"scope": scope, "path": path, "reason": reason},
        )


class StateAccessViolation(EnsembleError):
    """Raised when a step reads or writes a state key it did not declare."""

    code = "STATE_ACCESS_VIOLATION"

    def __init__(self, key: str, step: Optional[str] = None, operation: str = "read") -> None:
        self.key = key
        self.step = step
        self.operation = operation
        declared = "use" if operation == "read" else "set"
        owner = f"Step '{step}'" if step else "Step"
        super().__init__(
            f"{owner} cannot {operation} state key '{key}': not in its '{declared}' list",
            {"key": key, "step": step, "operation": operation},
        )


class UnknownMemberType(EnsembleError):
    """Raised when no member implementation is registered for a tag."""

    code = "UNKNOWN_MEMBER_TYPE"

    def __init__(self, tag: str) -> None:
        self.tag = tag
        super().__init__(f"No member registered for type '{tag}'", {"tag": tag})


class MemberExecutionError(EnsembleError):
    """Wraps any failure raised or returned by a concrete member."""

    code = "MEMBER_EXECUTION_ERROR"

    def __init__(self, tag: str, cause: BaseException) -> None:
        self.tag = tag
        self.cause = cause
        super().__init__(
            f"Member '{tag}' failed: {cause}",
            {"tag": tag, "cause": repr(cause), "cause_type": type(cause).__name__},
        )


class ExecutionCancelled(EnsembleError):
    """Raised when a run observes its cancellation signal."""

    code = "EXECUTION_CANCELLED"

    def __init__(self, ensemble: str, stage: Optional[int] = None) -> None:
        self.ensemble = ensemble
        self.stage = stage
        super().__init__(
            f"Execution of '{ensemble}' was cancelled",
            {"ensemble": ensemble, "stage": stage},
        )


# Errors a step-level fallback may absorb
RECOVERABLE_STEP_ERRORS = (MemberExecutionError, StateAccessViolation, InterpolationError)
