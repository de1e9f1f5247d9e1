"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception hierarchy for the decision monitor.

- Clear separation between input, computation and write failures
- Every error carries severity and debugging context
- Callers can tell "computed but not saved" apart from
  "never computed"

============================================================
EXCEPTION HIERARCHY
============================================================
DecisionMonitorException (base)
├── ConfigurationError
│   └── InvalidConfigError
├── InputAssemblyError
│   ├── DecisionNotFoundError
│   └── MissingReferenceError
├── EvaluationError
├── PersistenceError
│   ├── EvaluationPersistenceError
│   ├── ConcurrentEvaluationError
│   └── EvaluationLeaseTimeout
├── DependencyCycleError
└── LifecycleTransitionError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, evaluation results may be missing."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Caller can correct the input and retry."""

    TRANSIENT = "transient"
    """Temporary error, a later run may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class DecisionMonitorException(Exception):
    """
    Base exception for all decision monitor errors.

    All exceptions carry:
    - severity
    - context: for debugging (decision id, reason, ...)
    - recoverable / classification: for retry decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_recoverable: bool = True
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.recoverable = recoverable if recoverable is not None else self.default_recoverable
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_recoverable(self) -> bool:
        """Check if error is recoverable."""
        return self.classification in (
            ErrorClassification.RECOVERABLE,
            ErrorClassification.TRANSIENT,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        line = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if ctx_str:
            line += f" | {ctx_str}"
        return line


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(DecisionMonitorException):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_recoverable = False
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, context=context, **kwargs)


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            config_key=key,
            actual_value=value,
            context={"reason": reason},
        )


# ============================================================
# INPUT ASSEMBLY ERRORS
# ============================================================

class InputAssemblyError(DecisionMonitorException):
    """
    The evaluation snapshot could not be assembled.

    Nothing has been written when this is raised.
    """

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.RECOVERABLE

    def __init__(self, message: str, decision_id: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if decision_id:
            context["decision_id"] = decision_id
        super().__init__(message, context=context, **kwargs)
        self.decision_id = decision_id


class DecisionNotFoundError(InputAssemblyError):
    """The decision does not exist."""

    def __init__(self, decision_id: str):
        super().__init__(f"Decision not found: {decision_id}", decision_id=decision_id)


class MissingReferenceError(InputAssemblyError):
    """A linked assumption, constraint or dependency target is missing."""

    def __init__(self, decision_id: str, kind: str, reference_id: str):
        super().__init__(
            f"Decision {decision_id} references missing {kind} {reference_id}",
            decision_id=decision_id,
            context={"kind": kind, "reference_id": reference_id},
        )
        self.kind = kind
        self.reference_id = reference_id


# ============================================================
# EVALUATION ERRORS
# ============================================================

class EvaluationError(DecisionMonitorException):
    """The engine failed on an input it should have handled."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE
    default_recoverable = False


# ============================================================
# PERSISTENCE ERRORS
# ============================================================

class PersistenceError(DecisionMonitorException):
    """Base class for write-side failures."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT


class EvaluationPersistenceError(PersistenceError):
    """
    The engine produced a result but it could not be stored.

    `result` holds the computed, NON-durable outcome so callers
    can inspect it without mistaking it for saved state.
    """

    def __init__(self, decision_id: str, result: Any = None, cause: Optional[Exception] = None):
        super().__init__(
            f"Evaluation of decision {decision_id} computed but not persisted",
            context={"decision_id": decision_id},
            cause=cause,
        )
        self.decision_id = decision_id
        self.result = result


class ConcurrentEvaluationError(PersistenceError):
    """
    The decision row changed between read and write (version mismatch).

    `result`, when set, is the computed but discarded outcome.
    """

    def __init__(self, decision_id: str, expected_version: int, result: Any = None):
        super().__init__(
            f"Decision {decision_id} was modified concurrently "
            f"(expected version {expected_version})",
            context={"decision_id": decision_id, "expected_version": expected_version},
        )
        self.decision_id = decision_id
        self.expected_version = expected_version
        self.result = result


class EvaluationLeaseTimeout(PersistenceError):
    """Another evaluation of the same decision held the lease too long."""

    def __init__(self, decision_id: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for evaluation lease on {decision_id}",
            context={"decision_id": decision_id, "timeout": timeout},
        )
        self.decision_id = decision_id


# ============================================================
# GRAPH / LIFECYCLE ERRORS
# ============================================================

class DependencyCycleError(DecisionMonitorException):
    """Adding a dependency edge would close a cycle."""

    default_classification = ErrorClassification.RECOVERABLE

    def __init__(self, source_id: str, target_id: str, reason: str = "cycle"):
        super().__init__(
            f"Dependency {source_id} -> {target_id} rejected: {reason}",
            context={"source_id": source_id, "target_id": target_id, "reason": reason},
        )


class LifecycleTransitionError(DecisionMonitorException):
    """A human action is not allowed in the decision's current state."""

    default_severity = Severity.LOW

    def __init__(self, decision_id: str, message: str):
        super().__init__(message, context={"decision_id": decision_id})
        self.decision_id = decision_id


# ============================================================
# HELPERS
# ============================================================

def wrap_exception(
    exc: Exception,
    wrapper_class: type = DecisionMonitorException,
    message: Optional[str] = None,
    **kwargs,
) -> DecisionMonitorException:
    """Wrap a standard exception in a DecisionMonitorException."""
    msg = message or f"{type(exc).__name__}: {exc}"
    return wrapper_class(message=msg, cause=exc, **kwargs)


__all__ = [
    "Severity",
    "ErrorClassification",
    "DecisionMonitorException",
    "ConfigurationError",
    "InvalidConfigError",
    "InputAssemblyError",
    "DecisionNotFoundError",
    "MissingReferenceError",
    "EvaluationError",
    "PersistenceError",
    "EvaluationPersistenceError",
    "ConcurrentEvaluationError",
    "EvaluationLeaseTimeout",
    "DependencyCycleError",
    "LifecycleTransitionError",
    "wrap_exception",
]
