"""
Evaluation Scheduling Service.

============================================================
PURPOSE
============================================================
Decides WHEN the Decision Evaluation Engine runs and carries
its results to the decision store.

Flow per decision:
1. Staleness check (skip when fresh, unless forced)
2. Snapshot load
3. Engine run
4. Version-checked write + audit row, dirty flag cleared
5. decision_evaluated event (one-hop cascade to dependents)

============================================================
CONCURRENCY
============================================================
- One in-process lease per decision id
- Writes are conditional on the row version read in step 2;
  on a conflict the decision is reloaded and evaluated once
  more, then the conflict is raised
- Batches run item by item; each item commits on its own, so
  work done before a deadline or item cap stays committed

============================================================
USAGE
============================================================
    from database import get_session_factory
    from decision_evaluation import EvaluationScheduler

    scheduler = EvaluationScheduler(get_session_factory())

    result = scheduler.evaluate_if_needed(decision_id)
    summary = scheduler.evaluate_batch()

============================================================
"""

import logging
import time
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import sessionmaker

from core.clock import ClockFactory, ClockProtocol, ensure_utc
from core.exceptions import (
    ConcurrentEvaluationError,
    EvaluationPersistenceError,
    DecisionNotFoundError,
)
from database.engine import DatabasePersistenceError, get_session_factory, transaction_scope

from .config import SchedulingConfig
from .engine import DecisionEvaluationEngine
from .events import (
    AssumptionStatusChanged,
    ConstraintLinkChanged,
    DecisionEvaluated,
    DependencyChanged,
    EvaluationEventBus,
    EvaluationEventHandlers,
)
from .leases import DecisionLeaseManager
from .repository import DecisionEvaluationRepository
from .staleness import check_staleness
from .types import (
    AssumptionScope,
    AssumptionStatus,
    BatchEvaluationResult,
    BatchItemResult,
    BatchItemStatus,
    DecisionSnapshot,
    EvaluationCheck,
    EvaluationInput,
    EvaluationReason,
    EvaluationResult,
)


logger = logging.getLogger(__name__)


class EvaluationScheduler:
    """
    Evaluation Scheduling Service.

    ============================================================
    ENTRY POINTS
    ============================================================
    - needs_evaluation: Would a run happen now, and why
    - evaluate_if_needed: Evaluate one decision when needed
    - evaluate_batch: Evaluate many, isolating failures
    - run_sweep: Batch over the candidate query
    - mark_for_evaluation: Set dirty flags (event handlers)

    ============================================================
    """

    MAX_CONFLICT_RETRIES = 1

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        engine: Optional[DecisionEvaluationEngine] = None,
        config: Optional[SchedulingConfig] = None,
        clock: Optional[ClockProtocol] = None,
        lease_manager: Optional[DecisionLeaseManager] = None,
        event_bus: Optional[EvaluationEventBus] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            session_factory: Session factory for the decision store
            engine: Evaluation engine (default configuration if omitted)
            config: Scheduling configuration
            clock: Time source; a MockClock replays sweeps at a
                   simulated time
            lease_manager: Shared leases when several schedulers
                   run in one process
            event_bus: Bus to publish on. When omitted a private bus
                   is created with the standard handlers registered.
        """
        self._session_factory = session_factory or get_session_factory()
        self.engine = engine or DecisionEvaluationEngine()
        self.config = config or SchedulingConfig()
        self.clock = clock or ClockFactory.get_clock()
        self.leases = lease_manager or DecisionLeaseManager()

        if event_bus is None:
            event_bus = EvaluationEventBus()
            EvaluationEventHandlers(self).register(event_bus)
        self.event_bus = event_bus

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory

    def now(self) -> datetime:
        return ensure_utc(self.clock.now())

    # --------------------------------------------------------
    # STALENESS
    # --------------------------------------------------------

    def check_staleness(
        self,
        snapshot: DecisionSnapshot,
        now: Optional[datetime] = None,
        stale_hours: Optional[float] = None,
    ) -> EvaluationReason:
        return check_staleness(snapshot, now or self.now(), self.config, stale_hours)

    def needs_evaluation(
        self,
        decision_id: str,
        stale_hours: Optional[float] = None,
    ) -> EvaluationCheck:
        """Report whether `decision_id` would be evaluated now, and why."""
        with transaction_scope(self._session_factory) as session:
            snapshot = DecisionEvaluationRepository(session).get_snapshot(decision_id)

        if snapshot is None:
            return EvaluationCheck(decision_id, False, EvaluationReason.DECISION_NOT_FOUND)

        reason = self.check_staleness(snapshot, stale_hours=stale_hours)
        return EvaluationCheck(decision_id, reason.requires_evaluation, reason)

    # --------------------------------------------------------
    # DIRTY FLAGS
    # --------------------------------------------------------

    def mark_for_evaluation(self, decision_ids: Sequence[str], reason: Optional[str] = None) -> int:
        """
        Flag decisions for re-evaluation.

        RETIRED decisions are never flagged. Only the given ids
        are flagged; dependents are reached through the
        decision_evaluated event once these are re-evaluated.

        Returns:
            Number of decisions flagged
        """
        ids = list(dict.fromkeys(decision_ids))
        if not ids:
            return 0

        with transaction_scope(self._session_factory) as session:
            count = DecisionEvaluationRepository(session).mark_for_evaluation(ids)

        logger.info(
            f"Marked {count} decision(s) for re-evaluation | reason={reason or 'manual'} | "
            f"ids={ids[:5]}"
        )
        return count

    def mark_all_for_evaluation(self, reason: Optional[str] = None) -> int:
        """Flag every non-RETIRED decision."""
        with transaction_scope(self._session_factory) as session:
            count = DecisionEvaluationRepository(session).mark_all_active_for_evaluation()

        logger.info(f"Marked all {count} active decision(s) for re-evaluation | reason={reason or 'manual'}")
        return count

    def find_linked_decisions(
        self,
        assumption_id: Optional[str] = None,
        constraint_id: Optional[str] = None,
    ) -> List[str]:
        with transaction_scope(self._session_factory) as session:
            repository = DecisionEvaluationRepository(session)
            decision_ids: List[str] = []
            if assumption_id:
                decision_ids.extend(repository.find_decisions_linked_to_assumption(assumption_id))
            if constraint_id:
                decision_ids.extend(repository.find_decisions_linked_to_constraint(constraint_id))
        return list(dict.fromkeys(decision_ids))

    def find_dependents(self, decision_id: str) -> List[str]:
        with transaction_scope(self._session_factory) as session:
            return DecisionEvaluationRepository(session).find_dependents(decision_id)

    # --------------------------------------------------------
    # EVALUATION
    # --------------------------------------------------------

    def lease(self, decision_id: str):
        """Hold the evaluation lease for `decision_id`."""
        return self.leases.lease(decision_id, timeout=self.config.lease_timeout_seconds)

    def evaluate_if_needed(self, decision_id: str, force: bool = False) -> Optional[EvaluationResult]:
        """
        Evaluate one decision if it needs it.

        Returns:
            The persisted EvaluationResult, or None when the
            decision was fresh (or RETIRED) and `force` is False

        Raises:
            DecisionNotFoundError / MissingReferenceError: Input
                could not be assembled; nothing written
            EvaluationError: Engine failure; nothing written
            EvaluationPersistenceError: Computed but not stored;
                `.result` holds the non-durable outcome
            ConcurrentEvaluationError: Row kept changing underneath
        """
        with self.lease(decision_id):
            result, _ = self._run(decision_id, force)
        return result

    def _run(
        self,
        decision_id: str,
        force: bool,
        prepared: Optional[EvaluationInput] = None,
    ) -> Tuple[Optional[EvaluationResult], EvaluationReason]:
        """Evaluate under an already-held lease."""
        evaluation_input = prepared
        attempt = 0

        if evaluation_input is None and not force:
            reason = self.check_staleness(self._load_snapshot(decision_id))
            if not reason.requires_evaluation:
                logger.debug(f"Skipping evaluation: decision={decision_id} | reason={reason.value}")
                return None, reason

        while True:
            if evaluation_input is None:
                evaluation_input = self._load_input(decision_id, self.now())

            snapshot = evaluation_input.decision
            if force:
                reason = EvaluationReason.FORCED
            else:
                reason = self.check_staleness(snapshot, evaluation_input.now)
                if not reason.requires_evaluation:
                    logger.debug(f"Skipping evaluation: decision={decision_id} | reason={reason.value}")
                    return None, reason

            result = self.engine.evaluate(evaluation_input)

            try:
                self._persist(result, snapshot.version, reason)
            except ConcurrentEvaluationError as e:
                if attempt >= self.MAX_CONFLICT_RETRIES:
                    logger.error(
                        f"Evaluation conflict persisted after retry: decision={decision_id} | "
                        f"version={snapshot.version}"
                    )
                    raise ConcurrentEvaluationError(
                        decision_id, snapshot.version, result=result
                    ) from e
                attempt += 1
                logger.warning(
                    f"Evaluation conflict, reloading: decision={decision_id} | "
                    f"version={snapshot.version}"
                )
                evaluation_input = None
                continue
            break

        logger.info(
            f"Decision evaluated: id={decision_id} | reason={reason.value} | "
            f"health {result.previous_health_signal} -> {result.new_health_signal} | "
            f"lifecycle {result.previous_lifecycle.value} -> {result.new_lifecycle.value} | "
            f"changed={result.changes_detected}"
        )

        if result.changes_detected:
            self.event_bus.publish(DecisionEvaluated(
                decision_id=decision_id,
                changes_detected=True,
                new_lifecycle=result.new_lifecycle,
                new_health_signal=result.new_health_signal,
                occurred_at=result.evaluated_at,
            ))

        return result, reason

    def _load_snapshot(self, decision_id: str) -> DecisionSnapshot:
        with transaction_scope(self._session_factory) as session:
            snapshot = DecisionEvaluationRepository(session).get_snapshot(decision_id)
        if snapshot is None:
            raise DecisionNotFoundError(decision_id)
        return snapshot

    def _load_input(self, decision_id: str, now: datetime) -> EvaluationInput:
        with transaction_scope(self._session_factory) as session:
            return DecisionEvaluationRepository(session).load_evaluation_input(decision_id, now)

    def _persist(
        self,
        result: EvaluationResult,
        expected_version: int,
        reason: EvaluationReason,
    ) -> None:
        try:
            with transaction_scope(self._session_factory) as session:
                DecisionEvaluationRepository(session).persist_evaluation(
                    result, expected_version, trigger_reason=reason
                )
        except DatabasePersistenceError as e:
            logger.error(f"Failed to persist evaluation: decision={result.decision_id} | error={e}")
            raise EvaluationPersistenceError(result.decision_id, result=result, cause=e) from e

    def evaluate_batch(
        self,
        decision_ids: Optional[Sequence[str]] = None,
        force: bool = False,
        deadline_seconds: Optional[float] = None,
        max_items: Optional[int] = None,
    ) -> BatchEvaluationResult:
        """
        Evaluate many decisions, isolating per-item failures.

        Args:
            decision_ids: Explicit ids; None resolves candidates
                          with the "needing evaluation" query
            force: Evaluate even fresh decisions
            deadline_seconds: Stop starting new items after this
                              much wall-clock time
            max_items: Attempt at most this many items

        Returns:
            BatchEvaluationResult; items not started because of
            the deadline or cap are listed in `not_attempted`
        """
        started = time.monotonic()
        if deadline_seconds is None:
            deadline_seconds = self.config.default_deadline_seconds

        batch = BatchEvaluationResult()
        now = self.now()

        if decision_ids is None:
            with transaction_scope(self._session_factory) as session:
                candidates = DecisionEvaluationRepository(session).find_decisions_needing_evaluation(
                    now, self.config
                )
            ids = [decision_id for decision_id, _ in candidates]
        else:
            ids = list(dict.fromkeys(decision_ids))

        if max_items is not None and len(ids) > max_items:
            batch.truncated = True
            batch.not_attempted = ids[max_items:]
            ids = ids[:max_items]

        if not ids:
            return batch

        try:
            with transaction_scope(self._session_factory) as session:
                inputs, errors = DecisionEvaluationRepository(session).load_evaluation_inputs(ids, now)
        except DatabasePersistenceError as e:
            logger.error(f"Batch input load failed: count={len(ids)} | error={e}")
            batch.results.extend(
                BatchItemResult(decision_id, BatchItemStatus.FAILED, error=str(e))
                for decision_id in ids
            )
            return batch

        for index, decision_id in enumerate(ids):
            if deadline_seconds is not None and time.monotonic() - started >= deadline_seconds:
                batch.truncated = True
                batch.not_attempted = ids[index:] + batch.not_attempted
                logger.warning(
                    f"Batch deadline reached: attempted={index} | "
                    f"remaining={len(ids) - index} | deadline={deadline_seconds}s"
                )
                break

            batch.results.append(self._run_item(decision_id, force, inputs, errors))

        logger.info(
            f"Batch evaluation completed: total={len(batch.results)} | "
            f"evaluated={batch.evaluated} | skipped={batch.skipped} | "
            f"failed={batch.failed} | truncated={batch.truncated}"
        )
        return batch

    def _run_item(self, decision_id, force, inputs, errors) -> BatchItemResult:
        if decision_id in errors:
            error = errors[decision_id]
            logger.error(f"Failed to evaluate decision: id={decision_id} | error={error}")
            return BatchItemResult(decision_id, BatchItemStatus.FAILED, error=str(error))

        try:
            with self.lease(decision_id):
                result, reason = self._run(decision_id, force, prepared=inputs[decision_id])
        except Exception as e:
            logger.error(f"Failed to evaluate decision: id={decision_id} | error={e}")
            return BatchItemResult(decision_id, BatchItemStatus.FAILED, error=str(e))

        if result is None:
            return BatchItemResult(decision_id, BatchItemStatus.SKIPPED, reason=reason)
        return BatchItemResult(decision_id, BatchItemStatus.EVALUATED, result=result, reason=reason)

    def run_sweep(self, max_items: Optional[int] = None) -> BatchEvaluationResult:
        """Timer entry point: evaluate the current candidate set."""
        logger.info(f"Evaluation sweep started at {self.now().isoformat()}")
        return self.evaluate_batch(None, force=False, max_items=max_items)

    # --------------------------------------------------------
    # CHANGE ENTRY POINTS
    # --------------------------------------------------------

    def add_dependency(self, source_id: str, target_id: str) -> None:
        """
        Record that `source_id` depends on `target_id`.

        Raises:
            DependencyCycleError: The edge would close a cycle
        """
        with transaction_scope(self._session_factory) as session:
            DecisionEvaluationRepository(session).add_dependency(
                source_id, target_id, max_depth=self.config.max_dependency_depth
            )
        self.event_bus.publish(DependencyChanged(
            source_decision_id=source_id,
            target_decision_id=target_id,
            action="added",
            occurred_at=self.now(),
        ))

    def remove_dependency(self, source_id: str, target_id: str) -> bool:
        with transaction_scope(self._session_factory) as session:
            removed = DecisionEvaluationRepository(session).remove_dependency(source_id, target_id)
        if removed:
            self.event_bus.publish(DependencyChanged(
                source_decision_id=source_id,
                target_decision_id=target_id,
                action="removed",
                occurred_at=self.now(),
            ))
        return removed

    def update_assumption_status(self, assumption_id: str, status: AssumptionStatus) -> None:
        now = self.now()
        with transaction_scope(self._session_factory) as session:
            assumption, previous = DecisionEvaluationRepository(session).update_assumption_status(
                assumption_id, status, now
            )
            scope = AssumptionScope(assumption.scope)
        self.event_bus.publish(AssumptionStatusChanged(
            assumption_id=assumption_id,
            new_status=status,
            previous_status=previous,
            scope=scope,
            occurred_at=now,
        ))

    def update_constraint_link(
        self,
        decision_id: str,
        constraint_id: str,
        is_violated: bool,
        violation_reason: Optional[str] = None,
    ) -> None:
        """Store a new verdict from the constraint-evaluation collaborator."""
        now = self.now()
        with transaction_scope(self._session_factory) as session:
            repository = DecisionEvaluationRepository(session)
            if repository.get_decision(decision_id) is None:
                raise DecisionNotFoundError(decision_id)
            repository.link_constraint(decision_id, constraint_id, is_violated, violation_reason, now)
        self.event_bus.publish(ConstraintLinkChanged(
            constraint_id=constraint_id,
            decision_ids=[decision_id],
            occurred_at=now,
        ))
