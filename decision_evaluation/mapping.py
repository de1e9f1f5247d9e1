"""
Decision Evaluation - Row / Snapshot Mapping.

Converts ORM rows into the frozen input contracts and engine
output into persistable values. All datetimes leaving this
module are aware UTC.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.clock import ensure_utc

from .types import (
    AssumptionInput,
    AssumptionScope,
    AssumptionStatus,
    ConstraintInput,
    ConstraintType,
    DecisionLifecycle,
    DecisionSnapshot,
    DependencyInput,
    EvaluationInput,
    InvalidationReason,
    TraceEntry,
)


def parse_lifecycle(value: Any) -> DecisionLifecycle:
    if isinstance(value, DecisionLifecycle):
        return value
    return DecisionLifecycle(str(value).strip().upper())


def parse_reason(value: Any) -> Optional[InvalidationReason]:
    if value is None or value == "":
        return None
    if isinstance(value, InvalidationReason):
        return value
    return InvalidationReason(str(value).strip().lower())


def parse_constraint_type(value: Any) -> ConstraintType:
    try:
        return ConstraintType(str(value).strip().upper())
    except ValueError:
        return ConstraintType.OTHER


def decision_to_snapshot(decision) -> DecisionSnapshot:
    """Build a DecisionSnapshot from a DecisionModel row."""
    return DecisionSnapshot(
        id=decision.id,
        title=decision.title or "",
        lifecycle=parse_lifecycle(decision.lifecycle),
        health_signal=int(decision.health_signal),
        created_at=ensure_utc(decision.created_at),
        last_reviewed_at=ensure_utc(decision.last_reviewed_at),
        expiry_date=ensure_utc(decision.expiry_date),
        invalidated_reason=parse_reason(decision.invalidated_reason),
        last_evaluated_at=ensure_utc(decision.last_evaluated_at),
        needs_evaluation=bool(decision.needs_evaluation),
        version=int(decision.version),
    )


def assumption_to_input(assumption) -> AssumptionInput:
    return AssumptionInput(
        id=assumption.id,
        status=AssumptionStatus.parse(assumption.status),
        scope=AssumptionScope(str(assumption.scope).strip().upper()),
    )


def constraint_to_input(constraint, link) -> ConstraintInput:
    """Combine a constraint row with its decision link verdict."""
    return ConstraintInput(
        id=constraint.id,
        violated=bool(link.is_violated),
        name=constraint.name or "",
        constraint_type=parse_constraint_type(constraint.constraint_type),
        violation_reason=link.violation_reason,
    )


def dependency_to_input(target) -> DependencyInput:
    return DependencyInput(
        decision_id=target.id,
        health_signal=int(target.health_signal),
        lifecycle=parse_lifecycle(target.lifecycle),
    )


def merge_assumptions(
    linked: Iterable[AssumptionInput],
    universal: Iterable[AssumptionInput],
) -> List[AssumptionInput]:
    """
    Linked assumptions plus every universal one, each id once.

    A universal assumption that is also explicitly linked keeps
    its universal scope.
    """
    merged: Dict[str, AssumptionInput] = {}
    for assumption in linked:
        merged[assumption.id] = assumption
    for assumption in universal:
        merged[assumption.id] = assumption
    return sorted(merged.values(), key=lambda a: a.id)


def build_evaluation_input(
    snapshot: DecisionSnapshot,
    now: datetime,
    assumptions: Iterable[AssumptionInput] = (),
    constraints: Iterable[ConstraintInput] = (),
    dependencies: Iterable[DependencyInput] = (),
) -> EvaluationInput:
    """
    Assemble an EvaluationInput.

    Self-dependencies are dropped; collections are sorted by id
    so identical stored state always yields an identical input.
    """
    deps = [d for d in dependencies if d.decision_id != snapshot.id]
    return EvaluationInput(
        decision=snapshot,
        now=ensure_utc(now),
        assumptions=tuple(sorted(assumptions, key=lambda a: a.id)),
        constraints=tuple(sorted(constraints, key=lambda c: c.id)),
        dependencies=tuple(sorted(deps, key=lambda d: d.decision_id)),
    )


def trace_to_json(trace: Iterable[TraceEntry]) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in trace]
