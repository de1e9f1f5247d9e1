"""
Decision Review Service.

Explicit human actions on a monitored decision:
- mark_reviewed: acknowledge the decision, resetting review decay,
  then re-evaluate it
- retire: take the decision out of monitoring for good

These are the only writers of `last_reviewed_at` and of the
`manual` reason. Both take the decision's evaluation lease so
they never interleave with an engine run.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from core.clock import days_between, ensure_utc
from core.exceptions import DecisionNotFoundError, LifecycleTransitionError
from database.engine import transaction_scope
from database.models import DecisionModel, EvaluationRecordModel
from decision_evaluation.mapping import decision_to_snapshot
from decision_evaluation.repository import DecisionEvaluationRepository
from decision_evaluation.scheduler import EvaluationScheduler
from decision_evaluation.types import (
    DecisionLifecycle,
    DecisionSnapshot,
    EvaluationResult,
    InvalidationReason,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewOutcome:
    decision: DecisionSnapshot
    evaluation: Optional[EvaluationResult] = None
    dependents_marked: int = 0


class DecisionReviewService:
    """Service for human review actions on decisions."""

    def __init__(self, scheduler: EvaluationScheduler):
        self.scheduler = scheduler

    @property
    def retirement_grace_days(self) -> int:
        return self.scheduler.engine.config.retirement_grace_days

    # ---------------------------------------------------------
    # ACTIONS
    # ---------------------------------------------------------

    def mark_reviewed(
        self,
        decision_id: str,
        reviewer: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> ReviewOutcome:
        """
        Record a human review and re-evaluate.

        An INVALIDATED decision whose cause is gone recovers in
        the forced evaluation that follows.

        Raises:
            DecisionNotFoundError: Unknown decision
            LifecycleTransitionError: RETIRED, or further past
                expiry than the retirement grace period
        """
        now = self.scheduler.now()

        with self.scheduler.lease(decision_id):
            with transaction_scope(self.scheduler.session_factory) as session:
                decision = self._get_for_update(session, decision_id)
                lifecycle = DecisionLifecycle(decision.lifecycle)

                if lifecycle == DecisionLifecycle.RETIRED:
                    raise LifecycleTransitionError(
                        decision_id, "Cannot review a retired decision"
                    )

                expiry = ensure_utc(decision.expiry_date)
                if expiry is not None:
                    days_past = days_between(expiry, now)
                    if days_past > self.retirement_grace_days:
                        raise LifecycleTransitionError(
                            decision_id,
                            f"Decision expired {math.floor(days_past)} days ago and should be retired",
                        )

                decision.last_reviewed_at = now
                session.flush()

            evaluation = self.scheduler.evaluate_if_needed(decision_id, force=True)
            state = self.get_decision_state(decision_id)

        logger.info(
            f"Decision marked as reviewed: id={decision_id} | reviewer={reviewer or 'unknown'} | "
            f"comment={comment or ''} | "
            f"lifecycle={state.lifecycle.value} | health={state.health_signal}"
        )
        return ReviewOutcome(decision=state, evaluation=evaluation)

    def retire(
        self,
        decision_id: str,
        reviewer: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> ReviewOutcome:
        """
        Retire a decision permanently.

        Sets RETIRED, health 0 and reason `manual`, clears the
        dirty flag and flags direct dependents for re-evaluation.

        Raises:
            DecisionNotFoundError: Unknown decision
            LifecycleTransitionError: Already RETIRED
        """
        with self.scheduler.lease(decision_id):
            with transaction_scope(self.scheduler.session_factory) as session:
                decision = self._get_for_update(session, decision_id)
                if decision.lifecycle == DecisionLifecycle.RETIRED.value:
                    raise LifecycleTransitionError(decision_id, "Decision is already retired")

                decision.lifecycle = DecisionLifecycle.RETIRED.value
                decision.health_signal = 0
                decision.invalidated_reason = InvalidationReason.MANUAL.value
                decision.needs_evaluation = False
                session.flush()
                state = decision_to_snapshot(decision)

        dependents = self.scheduler.find_dependents(decision_id)
        marked = self.scheduler.mark_for_evaluation(dependents, reason="decision_retired")

        logger.info(
            f"Decision retired: id={decision_id} | reviewer={reviewer or 'unknown'} | "
            f"comment={comment or ''} | "
            f"dependents_marked={marked}"
        )
        return ReviewOutcome(decision=state, dependents_marked=marked)

    # ---------------------------------------------------------
    # QUERY METHODS
    # ---------------------------------------------------------

    def get_decision_state(self, decision_id: str) -> DecisionSnapshot:
        with transaction_scope(self.scheduler.session_factory) as session:
            snapshot = DecisionEvaluationRepository(session).get_snapshot(decision_id)
        if snapshot is None:
            raise DecisionNotFoundError(decision_id)
        return snapshot

    def get_evaluation_history(self, decision_id: str, limit: int = 50) -> List[EvaluationRecordModel]:
        """Audit rows newest first; raises DecisionNotFoundError for unknown ids."""
        with transaction_scope(self.scheduler.session_factory) as session:
            repository = DecisionEvaluationRepository(session)
            if repository.get_decision(decision_id) is None:
                raise DecisionNotFoundError(decision_id)
            return repository.get_evaluation_history(decision_id, limit=limit)

    @staticmethod
    def _get_for_update(session, decision_id: str) -> DecisionModel:
        decision = session.get(DecisionModel, decision_id)
        if decision is None:
            raise DecisionNotFoundError(decision_id)
        return decision
