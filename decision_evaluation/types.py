"""
Decision Evaluation - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts for the Decision Evaluation Engine and the
Evaluation Scheduling Service.

Inputs are immutable snapshots assembled by the repository.
Outputs carry the new state plus a five-entry trace that
explains every step.

============================================================
DESIGN PRINCIPLES
============================================================
- Snapshots are frozen; the engine never mutates inputs
- Enums for every discrete value
- Enum values match the persisted column values
- Clear separation between input and output types

============================================================
EVALUATION STEPS
============================================================
Every run records exactly five steps, in order:

1. CONSTRAINT_VALIDATION   - any violated constraint invalidates
2. DEPENDENCY_EVALUATION   - health capped by weakest dependency
3. ASSUMPTION_CHECK        - broken assumptions penalize / invalidate
4. HEALTH_DECAY            - time-based decay or expiry retirement
5. LIFECYCLE_DETERMINATION - thresholds map health to lifecycle

Short-circuited steps are recorded as SKIPPED.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ============================================================
# ENUMS
# ============================================================


class DecisionLifecycle(str, Enum):
    """
    Lifecycle state of a monitored decision.

    - STABLE: no action needed
    - UNDER_REVIEW: the system asks for a human look
    - AT_RISK: urgent attention needed
    - INVALIDATED: a constraint or assumption failed
    - RETIRED: permanently out of monitoring
    """

    STABLE = "STABLE"
    UNDER_REVIEW = "UNDER_REVIEW"
    AT_RISK = "AT_RISK"
    INVALIDATED = "INVALIDATED"
    RETIRED = "RETIRED"

    @property
    def is_terminal(self) -> bool:
        """Terminal for automatic transitions."""
        return self in (DecisionLifecycle.INVALIDATED, DecisionLifecycle.RETIRED)


class InvalidationReason(str, Enum):
    """Why a decision became INVALIDATED or RETIRED."""

    CONSTRAINT_VIOLATION = "constraint_violation"
    BROKEN_ASSUMPTIONS = "broken_assumptions"
    EXPIRED = "expired"
    MANUAL = "manual"


class AssumptionStatus(str, Enum):
    """
    Drift model for an assumption.

    HOLDING -> SHAKY -> BROKEN represents degradation over time.
    """

    HOLDING = "HOLDING"
    SHAKY = "SHAKY"
    BROKEN = "BROKEN"

    @classmethod
    def parse(cls, value: Any) -> "AssumptionStatus":
        """
        Parse a stored status value.

        Older rows use VALID for what is now HOLDING.
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper()
        if normalized == "VALID":
            return cls.HOLDING
        return cls(normalized)


class AssumptionScope(str, Enum):
    """UNIVERSAL assumptions apply to every decision."""

    UNIVERSAL = "UNIVERSAL"
    DECISION_SPECIFIC = "DECISION_SPECIFIC"


class ConstraintType(str, Enum):
    LEGAL = "LEGAL"
    BUDGET = "BUDGET"
    POLICY = "POLICY"
    TECHNICAL = "TECHNICAL"
    COMPLIANCE = "COMPLIANCE"
    OTHER = "OTHER"


class EvaluationStep(str, Enum):
    """The five engine steps, in execution order."""

    CONSTRAINT_VALIDATION = "constraint_validation"
    DEPENDENCY_EVALUATION = "dependency_evaluation"
    ASSUMPTION_CHECK = "assumption_check"
    HEALTH_DECAY = "health_decay"
    LIFECYCLE_DETERMINATION = "lifecycle_determination"

    @classmethod
    def all_steps(cls) -> List["EvaluationStep"]:
        """Return all steps in evaluation order."""
        return [
            cls.CONSTRAINT_VALIDATION,
            cls.DEPENDENCY_EVALUATION,
            cls.ASSUMPTION_CHECK,
            cls.HEALTH_DECAY,
            cls.LIFECYCLE_DETERMINATION,
        ]


class StepOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class EvaluationReason(str, Enum):
    """
    Why the scheduler did (or did not) run an evaluation.

    Only EXPLICIT_FLAG, NEVER_EVALUATED, STALE, EXPIRY_WINDOW
    and FORCED lead to an engine run.
    """

    DECISION_NOT_FOUND = "decision_not_found"
    TERMINAL_STATE = "terminal_state"
    EXPLICIT_FLAG = "explicit_flag"
    NEVER_EVALUATED = "never_evaluated"
    STALE = "stale"
    EXPIRY_WINDOW = "expiry_window"
    FRESH = "fresh"
    FORCED = "forced"

    @property
    def requires_evaluation(self) -> bool:
        return self in (
            EvaluationReason.EXPLICIT_FLAG,
            EvaluationReason.NEVER_EVALUATED,
            EvaluationReason.STALE,
            EvaluationReason.EXPIRY_WINDOW,
            EvaluationReason.FORCED,
        )


class BatchItemStatus(str, Enum):
    EVALUATED = "evaluated"
    SKIPPED = "skipped"
    FAILED = "failed"


# ============================================================
# INPUT DATA CONTRACTS
# ============================================================


@dataclass(frozen=True)
class DecisionSnapshot:
    """
    Point-in-time copy of a decision row.

    All datetimes are timezone-aware UTC. `version` is the row
    version the snapshot was read at; evaluation writes are
    conditional on it.
    """

    id: str
    lifecycle: DecisionLifecycle
    health_signal: int
    created_at: datetime

    title: str = ""
    last_reviewed_at: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    invalidated_reason: Optional[InvalidationReason] = None

    # Scheduling bookkeeping
    last_evaluated_at: Optional[datetime] = None
    needs_evaluation: bool = False
    version: int = 1

    @property
    def review_anchor(self) -> datetime:
        """Timestamp review decay is measured from."""
        return self.last_reviewed_at or self.created_at


@dataclass(frozen=True)
class AssumptionInput:
    id: str
    status: AssumptionStatus
    scope: AssumptionScope = AssumptionScope.DECISION_SPECIFIC

    @property
    def is_universal(self) -> bool:
        return self.scope == AssumptionScope.UNIVERSAL


@dataclass(frozen=True)
class ConstraintInput:
    """
    A linked constraint with its pre-computed verdict.

    The engine never evaluates the rule itself; it reads `violated`.
    """

    id: str
    violated: bool
    name: str = ""
    constraint_type: ConstraintType = ConstraintType.OTHER
    violation_reason: Optional[str] = None


@dataclass(frozen=True)
class DependencyInput:
    """Health and lifecycle of a decision this one depends on."""

    decision_id: str
    health_signal: int
    lifecycle: DecisionLifecycle = DecisionLifecycle.STABLE


@dataclass(frozen=True)
class EvaluationInput:
    """
    Complete input bundle for one engine run.

    `assumptions` holds both the linked decision-specific
    assumptions and every universal assumption.
    """

    decision: DecisionSnapshot
    now: datetime
    assumptions: Tuple[AssumptionInput, ...] = ()
    constraints: Tuple[ConstraintInput, ...] = ()
    dependencies: Tuple[DependencyInput, ...] = ()


# ============================================================
# OUTPUT DATA CONTRACTS
# ============================================================


@dataclass(frozen=True)
class TraceEntry:
    """What one engine step decided."""

    step: EvaluationStep
    outcome: StepOutcome
    details: str
    health_after: int
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.outcome == StepOutcome.PASSED

    @property
    def skipped(self) -> bool:
        return self.outcome == StepOutcome.SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step.value,
            "outcome": self.outcome.value,
            "details": self.details,
            "health_after": self.health_after,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class EvaluationResult:
    """
    Output of the Decision Evaluation Engine.

    ============================================================
    OUTPUT GUARANTEES
    ============================================================
    - new_health_signal: always 0-100
    - trace: always exactly five entries in step order
    - invalidated_reason: set only for INVALIDATED / RETIRED
    - changes_detected: health or lifecycle differs from input

    ============================================================
    """

    decision_id: str
    previous_lifecycle: DecisionLifecycle
    previous_health_signal: int
    new_lifecycle: DecisionLifecycle
    new_health_signal: int
    trace: Tuple[TraceEntry, ...]
    changes_detected: bool
    evaluated_at: datetime
    invalidated_reason: Optional[InvalidationReason] = None
    engine_version: str = "1.0.0"

    @property
    def lifecycle_changed(self) -> bool:
        return self.new_lifecycle != self.previous_lifecycle

    def get_step(self, step: EvaluationStep) -> TraceEntry:
        for entry in self.trace:
            if entry.step == step:
                return entry
        raise KeyError(step)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "previous_lifecycle": self.previous_lifecycle.value,
            "previous_health_signal": self.previous_health_signal,
            "new_lifecycle": self.new_lifecycle.value,
            "new_health_signal": self.new_health_signal,
            "invalidated_reason": (
                self.invalidated_reason.value if self.invalidated_reason else None
            ),
            "changes_detected": self.changes_detected,
            "evaluated_at": self.evaluated_at.isoformat(),
            "engine_version": self.engine_version,
            "trace": [entry.to_dict() for entry in self.trace],
        }


@dataclass(frozen=True)
class EvaluationCheck:
    """Answer to "does this decision need evaluation right now?"."""

    decision_id: str
    needs_evaluation: bool
    reason: EvaluationReason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "needs_evaluation": self.needs_evaluation,
            "reason": self.reason.value,
        }


@dataclass(frozen=True)
class BatchItemResult:
    decision_id: str
    status: BatchItemStatus
    result: Optional[EvaluationResult] = None
    reason: Optional[EvaluationReason] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class BatchEvaluationResult:
    """
    Summary of one batch run.

    Committed items stay committed even when the batch is cut
    short by a deadline or item cap; `truncated` tells the
    caller that `not_attempted` ids remain.
    """

    results: List[BatchItemResult] = field(default_factory=list)
    truncated: bool = False
    not_attempted: List[str] = field(default_factory=list)

    def _count(self, status: BatchItemStatus) -> int:
        return sum(1 for item in self.results if item.status == status)

    @property
    def evaluated(self) -> int:
        return self._count(BatchItemStatus.EVALUATED)

    @property
    def skipped(self) -> int:
        return self._count(BatchItemStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(BatchItemStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "skipped": self.skipped,
            "failed": self.failed,
            "truncated": self.truncated,
            "not_attempted": list(self.not_attempted),
            "results": [item.to_dict() for item in self.results],
        }
