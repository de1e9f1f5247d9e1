"""
Database ORM Models - Decision Store.

============================================================
DECISION STORE SCHEMA
============================================================

Tables:
1. decisions              - monitored decisions + scheduling bookkeeping
2. assumptions            - global, reusable beliefs
3. constraints            - immutable organizational facts
4. decision_assumptions   - many-to-many decision <-> assumption
5. decision_constraints   - many-to-many with pre-computed violation flag
6. dependencies           - directed edge: source depends on target
7. evaluation_records     - immutable audit trail, one row per run

All timestamps are UTC.

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .engine import Base


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


# =============================================================
# 1. DECISIONS
# =============================================================

class DecisionModel(Base):
    """
    A decision under monitoring.

    `lifecycle`, `health_signal` and `invalidated_reason` are written
    by evaluation or by explicit human actions only.
    `last_evaluated_at` and `needs_evaluation` belong to the
    scheduling service. `version` is bumped on every write and
    checked by evaluation writes.
    """

    __tablename__ = "decisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lifecycle: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="STABLE",
        comment="STABLE, UNDER_REVIEW, AT_RISK, INVALIDATED, RETIRED",
    )
    health_signal: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=100,
        comment="Internal 0-100 signal, never authoritative",
    )
    invalidated_reason: Mapped[Optional[str]] = mapped_column(
        String(40),
        nullable=True,
        comment="constraint_violation, broken_assumptions, expired, manual",
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    last_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Scheduling bookkeeping
    last_evaluated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    needs_evaluation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_decisions_needs_eval", "needs_evaluation", "last_evaluated_at"),
        Index("ix_decisions_last_eval", "last_evaluated_at"),
        Index("ix_decisions_lifecycle", "lifecycle"),
    )

    def __repr__(self) -> str:
        return (
            f"DecisionModel(id={self.id}, lifecycle={self.lifecycle}, "
            f"health={self.health_signal}, dirty={self.needs_evaluation})"
        )


# =============================================================
# 2. ASSUMPTIONS
# =============================================================

class AssumptionModel(Base):
    """Global assumption; UNIVERSAL scope applies to every decision."""

    __tablename__ = "assumptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="HOLDING")
    scope: Mapped[str] = mapped_column(String(30), nullable=False, default="DECISION_SPECIFIC")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_assumptions_scope", "scope"),
    )

    def __repr__(self) -> str:
        return f"AssumptionModel(id={self.id}, status={self.status}, scope={self.scope})"


# =============================================================
# 3. CONSTRAINTS
# =============================================================

class ConstraintModel(Base):
    """Immutable organizational fact."""

    __tablename__ = "constraints"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    constraint_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="OTHER",
        comment="LEGAL, BUDGET, POLICY, TECHNICAL, COMPLIANCE, OTHER",
    )
    rule_expression: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"ConstraintModel(id={self.id}, name={self.name})"


# =============================================================
# 4. DECISION <-> ASSUMPTION LINKS
# =============================================================

class DecisionAssumptionLink(Base):
    __tablename__ = "decision_assumptions"

    decision_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("decisions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    assumption_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("assumptions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_decision_assumptions_assumption", "assumption_id"),
    )


# =============================================================
# 5. DECISION <-> CONSTRAINT LINKS
# =============================================================

class DecisionConstraintLink(Base):
    """
    Link row carrying the violation verdict.

    The verdict is produced by the constraint-evaluation
    collaborator; evaluation only reads `is_violated`.
    """

    __tablename__ = "decision_constraints"

    decision_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("decisions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    constraint_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("constraints.id", ondelete="CASCADE"),
        primary_key=True,
    )
    is_violated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    violation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_decision_constraints_constraint", "constraint_id"),
    )


# =============================================================
# 6. DEPENDENCIES
# =============================================================

class DependencyModel(Base):
    """Source decision depends on target decision's health."""

    __tablename__ = "dependencies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    source_decision_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("decisions.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_decision_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("decisions.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("source_decision_id", "target_decision_id", name="uq_dependency_edge"),
        Index("ix_dependencies_source", "source_decision_id"),
        Index("ix_dependencies_target", "target_decision_id"),
    )

    def __repr__(self) -> str:
        return f"DependencyModel({self.source_decision_id} -> {self.target_decision_id})"


# =============================================================
# 7. EVALUATION RECORDS (AUDIT TRAIL)
# =============================================================

class EvaluationRecordModel(Base):
    """
    One immutable row per engine run.

    Rows are inserted, never updated.
    """

    __tablename__ = "evaluation_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    decision_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("decisions.id", ondelete="CASCADE"),
        nullable=False,
    )
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    previous_lifecycle: Mapped[str] = mapped_column(String(20), nullable=False)
    new_lifecycle: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_health: Mapped[int] = mapped_column(Integer, nullable=False)
    new_health: Mapped[int] = mapped_column(Integer, nullable=False)
    invalidated_reason: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    changes_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    trigger_reason: Mapped[Optional[str]] = mapped_column(
        String(40),
        nullable=True,
        comment="Why the run happened: explicit_flag, stale, forced, ...",
    )
    trace: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    engine_version: Mapped[str] = mapped_column(String(20), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_evaluation_records_decision", "decision_id", "evaluated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"EvaluationRecordModel(decision={self.decision_id}, "
            f"{self.previous_lifecycle} -> {self.new_lifecycle})"
        )


__all__ = [
    "generate_uuid",
    "utc_now",
    "DecisionModel",
    "AssumptionModel",
    "ConstraintModel",
    "DecisionAssumptionLink",
    "DecisionConstraintLink",
    "DependencyModel",
    "EvaluationRecordModel",
]
