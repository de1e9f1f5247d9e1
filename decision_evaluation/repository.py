"""
Decision Evaluation - Repository.

============================================================
PURPOSE
============================================================
Repository pattern implementation for the decision store.

Provides clean interface for:
- Assembling evaluation inputs (single and batched)
- Finding decisions that need evaluation
- Version-checked evaluation writes + audit rows
- Dirty-flag bookkeeping
- Dependency edges with cycle rejection

============================================================
TRANSACTIONS
============================================================
The repository never commits. Callers own the transaction
boundary through `transaction_scope`.

============================================================
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, update, or_, and_
from sqlalchemy.orm import Session

from core.clock import ensure_utc
from core.exceptions import (
    ConcurrentEvaluationError,
    DecisionNotFoundError,
    DependencyCycleError,
    InputAssemblyError,
    MissingReferenceError,
)
from database.models import (
    AssumptionModel,
    ConstraintModel,
    DecisionAssumptionLink,
    DecisionConstraintLink,
    DecisionModel,
    DependencyModel,
    EvaluationRecordModel,
)

from .config import SchedulingConfig
from .mapping import (
    assumption_to_input,
    build_evaluation_input,
    constraint_to_input,
    decision_to_snapshot,
    dependency_to_input,
    merge_assumptions,
    trace_to_json,
)
from .staleness import check_staleness
from .types import (
    AssumptionScope,
    AssumptionStatus,
    DecisionLifecycle,
    DecisionSnapshot,
    EvaluationInput,
    EvaluationReason,
    EvaluationResult,
)


logger = logging.getLogger(__name__)


class DecisionEvaluationRepository:
    """
    Repository for decision evaluation persistence operations.

    ============================================================
    METHODS
    ============================================================
    - load_evaluation_input(s): Snapshot assembly
    - find_decisions_needing_evaluation: Candidate sweep
    - persist_evaluation: Conditional write + audit row
    - mark_for_evaluation: Set dirty flag
    - add_dependency: Edge creation with cycle rejection

    ============================================================
    """

    def __init__(self, session: Session):
        self._session = session

    # --------------------------------------------------------
    # READ OPERATIONS
    # --------------------------------------------------------

    def get_decision(self, decision_id: str) -> Optional[DecisionModel]:
        return self._session.get(DecisionModel, decision_id)

    def get_snapshot(self, decision_id: str) -> Optional[DecisionSnapshot]:
        decision = self.get_decision(decision_id)
        return decision_to_snapshot(decision) if decision else None

    def get_assumption(self, assumption_id: str) -> Optional[AssumptionModel]:
        return self._session.get(AssumptionModel, assumption_id)

    def load_evaluation_input(self, decision_id: str, now: datetime) -> EvaluationInput:
        """
        Assemble the input for one decision.

        Raises:
            DecisionNotFoundError: Decision does not exist
            MissingReferenceError: A link points at a missing row
        """
        inputs, errors = self.load_evaluation_inputs([decision_id], now)
        if decision_id in errors:
            raise errors[decision_id]
        return inputs[decision_id]

    def load_evaluation_inputs(
        self,
        decision_ids: Sequence[str],
        now: datetime,
    ) -> Tuple[Dict[str, EvaluationInput], Dict[str, InputAssemblyError]]:
        """
        Assemble inputs for many decisions at once.

        Issues at most seven queries whatever the batch size.
        Decisions that cannot be assembled are returned in the
        error map instead of failing the whole batch.
        """
        ids = list(dict.fromkeys(decision_ids))
        inputs: Dict[str, EvaluationInput] = {}
        errors: Dict[str, InputAssemblyError] = {}
        if not ids:
            return inputs, errors

        session = self._session

        # 1. Decisions
        decisions = {
            d.id: d
            for d in session.scalars(select(DecisionModel).where(DecisionModel.id.in_(ids)))
        }
        for decision_id in ids:
            if decision_id not in decisions:
                errors[decision_id] = DecisionNotFoundError(decision_id)
        found = list(decisions)
        if not found:
            return inputs, errors

        # 2. Assumption links
        assumption_links: Dict[str, List[str]] = defaultdict(list)
        for link in session.scalars(
            select(DecisionAssumptionLink).where(DecisionAssumptionLink.decision_id.in_(found))
        ):
            assumption_links[link.decision_id].append(link.assumption_id)

        # 3. Linked + universal assumptions
        linked_ids = {a for linked in assumption_links.values() for a in linked}
        assumption_rows = session.scalars(
            select(AssumptionModel).where(
                or_(
                    AssumptionModel.id.in_(sorted(linked_ids)),
                    AssumptionModel.scope == AssumptionScope.UNIVERSAL.value,
                )
            )
        ).all()
        assumptions = {a.id: assumption_to_input(a) for a in assumption_rows}
        universal = [a for a in assumptions.values() if a.is_universal]

        # 4. Constraint links
        constraint_links: Dict[str, List[DecisionConstraintLink]] = defaultdict(list)
        for link in session.scalars(
            select(DecisionConstraintLink).where(DecisionConstraintLink.decision_id.in_(found))
        ):
            constraint_links[link.decision_id].append(link)

        # 5. Constraints
        constraint_ids = sorted(
            {link.constraint_id for links in constraint_links.values() for link in links}
        )
        constraints = {}
        if constraint_ids:
            constraints = {
                c.id: c
                for c in session.scalars(
                    select(ConstraintModel).where(ConstraintModel.id.in_(constraint_ids))
                )
            }

        # 6. Dependency edges
        dependency_edges: Dict[str, List[str]] = defaultdict(list)
        for edge in session.scalars(
            select(DependencyModel).where(DependencyModel.source_decision_id.in_(found))
        ):
            if edge.target_decision_id != edge.source_decision_id:
                dependency_edges[edge.source_decision_id].append(edge.target_decision_id)

        # 7. Dependency targets not already loaded
        target_ids = {t for targets in dependency_edges.values() for t in targets}
        targets = {t: decisions[t] for t in target_ids if t in decisions}
        missing_targets = target_ids - set(targets)
        if missing_targets:
            for d in session.scalars(
                select(DecisionModel).where(DecisionModel.id.in_(sorted(missing_targets)))
            ):
                targets[d.id] = d

        for decision_id in found:
            try:
                inputs[decision_id] = self._assemble(
                    decisions[decision_id],
                    now,
                    assumption_links.get(decision_id, []),
                    assumptions,
                    universal,
                    constraint_links.get(decision_id, []),
                    constraints,
                    dependency_edges.get(decision_id, []),
                    targets,
                )
            except InputAssemblyError as e:
                errors[decision_id] = e
            except ValueError as e:
                errors[decision_id] = InputAssemblyError(
                    f"Unreadable stored value: {e}", decision_id=decision_id
                )

        return inputs, errors

    def _assemble(
        self,
        decision: DecisionModel,
        now: datetime,
        linked_assumption_ids: Iterable[str],
        assumptions: Dict,
        universal: List,
        links: Iterable[DecisionConstraintLink],
        constraints: Dict,
        target_ids: Iterable[str],
        targets: Dict,
    ) -> EvaluationInput:
        linked = []
        for assumption_id in linked_assumption_ids:
            if assumption_id not in assumptions:
                raise MissingReferenceError(decision.id, "assumption", assumption_id)
            linked.append(assumptions[assumption_id])

        constraint_inputs = []
        for link in links:
            constraint = constraints.get(link.constraint_id)
            if constraint is None:
                raise MissingReferenceError(decision.id, "constraint", link.constraint_id)
            constraint_inputs.append(constraint_to_input(constraint, link))

        dependency_inputs = []
        for target_id in target_ids:
            target = targets.get(target_id)
            if target is None:
                raise MissingReferenceError(decision.id, "dependency", target_id)
            dependency_inputs.append(dependency_to_input(target))

        return build_evaluation_input(
            decision_to_snapshot(decision),
            now,
            assumptions=merge_assumptions(linked, universal),
            constraints=constraint_inputs,
            dependencies=dependency_inputs,
        )

    def find_decisions_needing_evaluation(
        self,
        now: datetime,
        config: Optional[SchedulingConfig] = None,
        stale_hours: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, EvaluationReason]]:
        """
        Candidate sweep.

        Returns (decision_id, reason) pairs, dirty decisions first,
        then by oldest evaluation. RETIRED decisions never appear.
        """
        cfg = config or SchedulingConfig()
        stale_hours = cfg.stale_hours if stale_hours is None else stale_hours
        limit = limit or cfg.batch_limit
        now = ensure_utc(now)

        stale_cutoff = now - timedelta(hours=stale_hours)
        recheck_cutoff = now - timedelta(hours=cfg.expiry_recheck_hours)
        window = timedelta(days=cfg.expiry_window_days)

        stmt = (
            select(DecisionModel)
            .where(DecisionModel.lifecycle != DecisionLifecycle.RETIRED.value)
            .where(
                or_(
                    DecisionModel.needs_evaluation.is_(True),
                    DecisionModel.last_evaluated_at.is_(None),
                    DecisionModel.last_evaluated_at < stale_cutoff,
                    and_(
                        DecisionModel.expiry_date.is_not(None),
                        DecisionModel.expiry_date >= now - window,
                        DecisionModel.expiry_date <= now + window,
                        DecisionModel.last_evaluated_at < recheck_cutoff,
                    ),
                )
            )
            .order_by(
                DecisionModel.needs_evaluation.desc(),
                DecisionModel.last_evaluated_at.asc().nulls_first(),
                DecisionModel.id,
            )
            .limit(limit)
        )

        candidates = []
        for decision in self._session.scalars(stmt):
            reason = check_staleness(decision_to_snapshot(decision), now, cfg, stale_hours)
            if reason.requires_evaluation:
                candidates.append((decision.id, reason))
        return candidates

    def find_dependents(self, decision_id: str) -> List[str]:
        """Decisions that depend directly on `decision_id`."""
        stmt = (
            select(DependencyModel.source_decision_id)
            .where(DependencyModel.target_decision_id == decision_id)
            .where(DependencyModel.source_decision_id != decision_id)
            .order_by(DependencyModel.source_decision_id)
        )
        return list(self._session.scalars(stmt))

    def find_dependencies(self, decision_id: str) -> List[str]:
        """Decisions `decision_id` depends on directly."""
        stmt = (
            select(DependencyModel.target_decision_id)
            .where(DependencyModel.source_decision_id == decision_id)
            .order_by(DependencyModel.target_decision_id)
        )
        return list(self._session.scalars(stmt))

    def find_decisions_linked_to_assumption(self, assumption_id: str) -> List[str]:
        stmt = (
            select(DecisionAssumptionLink.decision_id)
            .where(DecisionAssumptionLink.assumption_id == assumption_id)
            .order_by(DecisionAssumptionLink.decision_id)
        )
        return list(self._session.scalars(stmt))

    def find_decisions_linked_to_constraint(self, constraint_id: str) -> List[str]:
        stmt = (
            select(DecisionConstraintLink.decision_id)
            .where(DecisionConstraintLink.constraint_id == constraint_id)
            .order_by(DecisionConstraintLink.decision_id)
        )
        return list(self._session.scalars(stmt))

    def get_evaluation_history(
        self,
        decision_id: str,
        limit: int = 50,
    ) -> List[EvaluationRecordModel]:
        """Audit rows for a decision, newest first."""
        stmt = (
            select(EvaluationRecordModel)
            .where(EvaluationRecordModel.decision_id == decision_id)
            .order_by(
                EvaluationRecordModel.evaluated_at.desc(),
                EvaluationRecordModel.created_at.desc(),
            )
            .limit(limit)
        )
        return list(self._session.scalars(stmt))

    # --------------------------------------------------------
    # WRITE OPERATIONS
    # --------------------------------------------------------

    def persist_evaluation(
        self,
        result: EvaluationResult,
        expected_version: int,
        trigger_reason: Optional[EvaluationReason] = None,
    ) -> EvaluationRecordModel:
        """
        Write the engine result and its audit row.

        The decision update only applies if the row is still at
        `expected_version`; the dirty flag is cleared in the same
        statement.

        Raises:
            ConcurrentEvaluationError: Row changed since it was read
        """
        reason = result.invalidated_reason.value if result.invalidated_reason else None

        stmt = (
            update(DecisionModel)
            .where(DecisionModel.id == result.decision_id)
            .where(DecisionModel.version == expected_version)
            .values(
                lifecycle=result.new_lifecycle.value,
                health_signal=result.new_health_signal,
                invalidated_reason=reason,
                last_evaluated_at=result.evaluated_at,
                needs_evaluation=False,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        outcome = self._session.execute(stmt)
        if outcome.rowcount != 1:
            raise ConcurrentEvaluationError(result.decision_id, expected_version)

        record = EvaluationRecordModel(
            decision_id=result.decision_id,
            evaluated_at=result.evaluated_at,
            previous_lifecycle=result.previous_lifecycle.value,
            new_lifecycle=result.new_lifecycle.value,
            previous_health=result.previous_health_signal,
            new_health=result.new_health_signal,
            invalidated_reason=reason,
            changes_detected=result.changes_detected,
            trigger_reason=trigger_reason.value if trigger_reason else None,
            trace=trace_to_json(result.trace),
            engine_version=result.engine_version,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def mark_for_evaluation(self, decision_ids: Sequence[str]) -> int:
        """
        Set the dirty flag on non-RETIRED decisions.

        Bumps the row version so an evaluation that read the row
        before the mark cannot overwrite it.
        """
        ids = list(dict.fromkeys(decision_ids))
        if not ids:
            return 0
        stmt = (
            update(DecisionModel)
            .where(DecisionModel.id.in_(ids))
            .where(DecisionModel.lifecycle != DecisionLifecycle.RETIRED.value)
            .values(needs_evaluation=True, version=DecisionModel.version + 1)
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(stmt).rowcount

    def mark_all_active_for_evaluation(self) -> int:
        stmt = (
            update(DecisionModel)
            .where(DecisionModel.lifecycle != DecisionLifecycle.RETIRED.value)
            .values(needs_evaluation=True, version=DecisionModel.version + 1)
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(stmt).rowcount

    def update_assumption_status(
        self,
        assumption_id: str,
        status: AssumptionStatus,
        now: datetime,
    ) -> Tuple[AssumptionModel, AssumptionStatus]:
        """Return the updated row and its previous status."""
        assumption = self.get_assumption(assumption_id)
        if assumption is None:
            raise InputAssemblyError(f"Assumption not found: {assumption_id}")
        previous = AssumptionStatus.parse(assumption.status)
        assumption.status = status.value
        assumption.updated_at = now
        self._session.flush()
        return assumption, previous

    def add_dependency(
        self,
        source_id: str,
        target_id: str,
        max_depth: int = 50,
    ) -> DependencyModel:
        """
        Create the edge "source depends on target".

        Raises:
            DependencyCycleError: Self-edge, edge closing a cycle,
                or a graph deeper than `max_depth` from target
            DecisionNotFoundError: Either end is missing
        """
        if source_id == target_id:
            raise DependencyCycleError(source_id, target_id, reason="self_dependency")
        for decision_id in (source_id, target_id):
            if self.get_decision(decision_id) is None:
                raise DecisionNotFoundError(decision_id)

        existing = self._session.scalars(
            select(DependencyModel)
            .where(DependencyModel.source_decision_id == source_id)
            .where(DependencyModel.target_decision_id == target_id)
        ).first()
        if existing is not None:
            return existing

        if self._reaches(target_id, source_id, max_depth):
            raise DependencyCycleError(source_id, target_id)

        edge = DependencyModel(source_decision_id=source_id, target_decision_id=target_id)
        self._session.add(edge)
        self._session.flush()
        logger.info(f"Dependency added: {source_id} -> {target_id}")
        return edge

    def remove_dependency(self, source_id: str, target_id: str) -> bool:
        edge = self._session.scalars(
            select(DependencyModel)
            .where(DependencyModel.source_decision_id == source_id)
            .where(DependencyModel.target_decision_id == target_id)
        ).first()
        if edge is None:
            return False
        self._session.delete(edge)
        self._session.flush()
        return True

    def _reaches(self, start_id: str, goal_id: str, max_depth: int) -> bool:
        """
        Breadth-first walk along "depends on" edges.

        Raises DependencyCycleError when the walk needs more than
        `max_depth` levels.
        """
        visited: Set[str] = {start_id}
        frontier = [start_id]
        depth = 0
        while frontier:
            if depth >= max_depth:
                raise DependencyCycleError(goal_id, start_id, reason="depth_exceeded")
            next_ids = self._session.scalars(
                select(DependencyModel.target_decision_id)
                .where(DependencyModel.source_decision_id.in_(frontier))
            ).all()
            frontier = []
            for node in next_ids:
                if node == goal_id:
                    return True
                if node not in visited:
                    visited.add(node)
                    frontier.append(node)
            depth += 1
        return False

    def link_assumption(self, decision_id: str, assumption_id: str) -> DecisionAssumptionLink:
        link = self._session.get(DecisionAssumptionLink, (decision_id, assumption_id))
        if link is None:
            link = DecisionAssumptionLink(decision_id=decision_id, assumption_id=assumption_id)
            self._session.add(link)
            self._session.flush()
        return link

    def link_constraint(
        self,
        decision_id: str,
        constraint_id: str,
        is_violated: bool = False,
        violation_reason: Optional[str] = None,
        checked_at: Optional[datetime] = None,
    ) -> DecisionConstraintLink:
        """Create or update a constraint link and its verdict."""
        link = self._session.get(DecisionConstraintLink, (decision_id, constraint_id))
        if link is None:
            link = DecisionConstraintLink(decision_id=decision_id, constraint_id=constraint_id)
            self._session.add(link)
        link.is_violated = is_violated
        link.violation_reason = violation_reason
        link.checked_at = checked_at
        self._session.flush()
        return link
