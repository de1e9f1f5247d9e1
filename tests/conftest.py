"""
Shared fixtures for the decision monitor tests.

- In-memory SQLite decision store (one connection, shared
  across threads)
- MockClock pinned at NOW
- DecisionStoreSeeder for writing rows directly
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from core.clock import MockClock
from database.engine import create_all_tables, create_session_factory, transaction_scope
from database.models import (
    AssumptionModel,
    ConstraintModel,
    DecisionAssumptionLink,
    DecisionConstraintLink,
    DecisionModel,
    DependencyModel,
    EvaluationRecordModel,
)
from decision_evaluation.scheduler import EvaluationScheduler


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class DecisionStoreSeeder:
    """Writes decision store rows in their own transactions."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter:03d}"

    def decision(
        self,
        decision_id: Optional[str] = None,
        lifecycle: str = "STABLE",
        health_signal: int = 100,
        created_at: datetime = NOW - timedelta(days=10),
        last_reviewed_at: Optional[datetime] = None,
        expiry_date: Optional[datetime] = None,
        invalidated_reason: Optional[str] = None,
        last_evaluated_at: Optional[datetime] = None,
        needs_evaluation: bool = False,
    ) -> str:
        decision_id = decision_id or self._next_id("dec")
        with transaction_scope(self.session_factory) as session:
            session.add(DecisionModel(
                id=decision_id,
                title=f"Decision {decision_id}",
                lifecycle=lifecycle,
                health_signal=health_signal,
                invalidated_reason=invalidated_reason,
                created_at=created_at,
                last_reviewed_at=last_reviewed_at,
                expiry_date=expiry_date,
                last_evaluated_at=last_evaluated_at,
                needs_evaluation=needs_evaluation,
            ))
        return decision_id

    def assumption(
        self,
        status: str = "HOLDING",
        scope: str = "DECISION_SPECIFIC",
        assumption_id: Optional[str] = None,
    ) -> str:
        assumption_id = assumption_id or self._next_id("asm")
        with transaction_scope(self.session_factory) as session:
            session.add(AssumptionModel(
                id=assumption_id,
                description=f"Assumption {assumption_id}",
                status=status,
                scope=scope,
            ))
        return assumption_id

    def link_assumption(self, decision_id: str, assumption_id: str) -> None:
        with transaction_scope(self.session_factory) as session:
            session.add(DecisionAssumptionLink(decision_id=decision_id, assumption_id=assumption_id))

    def constraint(self, name: str = "Budget cap", constraint_id: Optional[str] = None) -> str:
        constraint_id = constraint_id or self._next_id("con")
        with transaction_scope(self.session_factory) as session:
            session.add(ConstraintModel(id=constraint_id, name=name, constraint_type="BUDGET"))
        return constraint_id

    def link_constraint(self, decision_id: str, constraint_id: str, is_violated: bool = False) -> None:
        with transaction_scope(self.session_factory) as session:
            session.add(DecisionConstraintLink(
                decision_id=decision_id,
                constraint_id=constraint_id,
                is_violated=is_violated,
            ))

    def depend(self, source_id: str, target_id: str) -> None:
        """`source_id` depends on `target_id`."""
        with transaction_scope(self.session_factory) as session:
            session.add(DependencyModel(source_decision_id=source_id, target_decision_id=target_id))

    def get(self, decision_id: str) -> Optional[DecisionModel]:
        with transaction_scope(self.session_factory) as session:
            return session.get(DecisionModel, decision_id)

    def records(self, decision_id: str) -> List[EvaluationRecordModel]:
        with transaction_scope(self.session_factory) as session:
            return list(session.scalars(
                select(EvaluationRecordModel).where(EvaluationRecordModel.decision_id == decision_id)
            ))


# =============================================================
# Fixtures
# =============================================================

@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def clock():
    return MockClock(NOW)


@pytest.fixture
def seeder(session_factory):
    return DecisionStoreSeeder(session_factory)


@pytest.fixture
def scheduler(session_factory, clock):
    return EvaluationScheduler(session_factory, clock=clock)
