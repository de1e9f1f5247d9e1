"""
Tests for the Decision Evaluation Repository.

Tests cover:
- Input assembly (single and batched, missing references)
- Candidate query ordering and filtering
- Version-checked writes and audit rows
- Dirty flags
- Dependency edges and cycle rejection
"""

from datetime import timedelta

import pytest
from sqlalchemy import event

from core.exceptions import (
    ConcurrentEvaluationError,
    DecisionNotFoundError,
    DependencyCycleError,
    MissingReferenceError,
)
from database.engine import transaction_scope
from decision_evaluation.engine import DecisionEvaluationEngine
from decision_evaluation.repository import DecisionEvaluationRepository
from decision_evaluation.types import (
    AssumptionScope,
    AssumptionStatus,
    DecisionLifecycle,
    EvaluationReason,
)

from tests.conftest import NOW


# =============================================================
# TEST: Input assembly
# =============================================================

class TestInputAssembly:

    def test_load_assembles_all_references(self, session_factory, seeder):
        decision = seeder.decision()
        target = seeder.decision(health_signal=55, lifecycle="AT_RISK")
        linked = seeder.assumption(status="SHAKY")
        seeder.assumption(status="HOLDING")  # unlinked, ignored
        global_assumption = seeder.assumption(status="HOLDING", scope="UNIVERSAL")
        constraint = seeder.constraint()

        seeder.link_assumption(decision, linked)
        seeder.link_constraint(decision, constraint, is_violated=True)
        seeder.depend(decision, target)

        with transaction_scope(session_factory) as session:
            evaluation_input = DecisionEvaluationRepository(session).load_evaluation_input(decision, NOW)

        assert evaluation_input.now == NOW
        assert {a.id for a in evaluation_input.assumptions} == {linked, global_assumption}
        assert evaluation_input.constraints[0].violated is True
        assert evaluation_input.constraints[0].name == "Budget cap"
        assert evaluation_input.dependencies[0].decision_id == target
        assert evaluation_input.dependencies[0].health_signal == 55
        assert evaluation_input.dependencies[0].lifecycle == DecisionLifecycle.AT_RISK

    def test_self_dependency_is_ignored(self, session_factory, seeder):
        decision = seeder.decision()
        seeder.depend(decision, decision)

        with transaction_scope(session_factory) as session:
            evaluation_input = DecisionEvaluationRepository(session).load_evaluation_input(decision, NOW)

        assert evaluation_input.dependencies == ()

    def test_legacy_valid_status_reads_as_holding(self, session_factory, seeder):
        decision = seeder.decision()
        legacy = seeder.assumption(status="VALID")
        seeder.link_assumption(decision, legacy)

        with transaction_scope(session_factory) as session:
            evaluation_input = DecisionEvaluationRepository(session).load_evaluation_input(decision, NOW)

        assert evaluation_input.assumptions[0].status == AssumptionStatus.HOLDING

    def test_missing_decision_raises(self, session_factory):
        with transaction_scope(session_factory) as session:
            with pytest.raises(DecisionNotFoundError):
                DecisionEvaluationRepository(session).load_evaluation_input("missing", NOW)

    def test_batch_isolates_missing_references(self, session_factory, seeder):
        good = seeder.decision()
        broken_link = seeder.decision()
        seeder.link_assumption(broken_link, "ghost-assumption")

        with transaction_scope(session_factory) as session:
            inputs, errors = DecisionEvaluationRepository(session).load_evaluation_inputs(
                [good, broken_link, "missing"], NOW
            )

        assert set(inputs) == {good}
        assert isinstance(errors[broken_link], MissingReferenceError)
        assert errors[broken_link].kind == "assumption"
        assert isinstance(errors["missing"], DecisionNotFoundError)

    def test_batch_query_count_is_bounded(self, db_engine, session_factory, seeder):
        ids = []
        for _ in range(5):
            decision = seeder.decision()
            target = seeder.decision()
            assumption = seeder.assumption()
            constraint = seeder.constraint()
            seeder.link_assumption(decision, assumption)
            seeder.link_constraint(decision, constraint)
            seeder.depend(decision, target)
            ids.append(decision)

        statements = []

        def count(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("SELECT"):
                statements.append(statement)

        event.listen(db_engine, "before_cursor_execute", count)
        try:
            with transaction_scope(session_factory) as session:
                inputs, errors = DecisionEvaluationRepository(session).load_evaluation_inputs(ids, NOW)
        finally:
            event.remove(db_engine, "before_cursor_execute", count)

        assert len(inputs) == 5
        assert errors == {}
        assert len(statements) <= 7


# =============================================================
# TEST: Candidate query
# =============================================================

class TestCandidateQuery:

    def test_orders_dirty_then_oldest(self, session_factory, seeder):
        fresh = seeder.decision(last_evaluated_at=NOW - timedelta(hours=1))
        stale = seeder.decision(last_evaluated_at=NOW - timedelta(hours=30))
        never = seeder.decision()
        dirty = seeder.decision(last_evaluated_at=NOW - timedelta(hours=1), needs_evaluation=True)
        seeder.decision(lifecycle="RETIRED", health_signal=0, needs_evaluation=True)

        with transaction_scope(session_factory) as session:
            candidates = DecisionEvaluationRepository(session).find_decisions_needing_evaluation(NOW)

        assert candidates == [
            (dirty, EvaluationReason.EXPLICIT_FLAG),
            (never, EvaluationReason.NEVER_EVALUATED),
            (stale, EvaluationReason.STALE),
        ]
        assert fresh not in [decision_id for decision_id, _ in candidates]

    def test_limit(self, session_factory, seeder):
        for _ in range(4):
            seeder.decision()

        with transaction_scope(session_factory) as session:
            candidates = DecisionEvaluationRepository(session).find_decisions_needing_evaluation(
                NOW, limit=2
            )

        assert len(candidates) == 2


# =============================================================
# TEST: Writes
# =============================================================

class TestEvaluationWrites:

    def _evaluate(self, session_factory, decision_id):
        with transaction_scope(session_factory) as session:
            evaluation_input = DecisionEvaluationRepository(session).load_evaluation_input(decision_id, NOW)
        return evaluation_input, DecisionEvaluationEngine().evaluate(evaluation_input)

    def test_persist_updates_row_and_writes_record(self, session_factory, seeder):
        decision = seeder.decision(needs_evaluation=True)
        constraint = seeder.constraint()
        seeder.link_constraint(decision, constraint, is_violated=True)
        evaluation_input, result = self._evaluate(session_factory, decision)

        with transaction_scope(session_factory) as session:
            DecisionEvaluationRepository(session).persist_evaluation(
                result, evaluation_input.decision.version, EvaluationReason.EXPLICIT_FLAG
            )

        row = seeder.get(decision)
        assert row.lifecycle == "INVALIDATED"
        assert row.health_signal == 0
        assert row.invalidated_reason == "constraint_violation"
        assert row.needs_evaluation is False
        assert row.version == evaluation_input.decision.version + 1

        records = seeder.records(decision)
        assert len(records) == 1
        assert records[0].trigger_reason == "explicit_flag"
        assert len(records[0].trace) == 5

    def test_stale_version_is_rejected(self, session_factory, seeder):
        decision = seeder.decision()
        evaluation_input, result = self._evaluate(session_factory, decision)
        version = evaluation_input.decision.version

        with transaction_scope(session_factory) as session:
            DecisionEvaluationRepository(session).persist_evaluation(result, version)

        with pytest.raises(ConcurrentEvaluationError):
            with transaction_scope(session_factory) as session:
                DecisionEvaluationRepository(session).persist_evaluation(result, version)

        assert len(seeder.records(decision)) == 1

    def test_mark_skips_retired_and_bumps_version(self, session_factory, seeder):
        active = seeder.decision()
        retired = seeder.decision(lifecycle="RETIRED", health_signal=0)
        version = seeder.get(active).version

        with transaction_scope(session_factory) as session:
            count = DecisionEvaluationRepository(session).mark_for_evaluation([active, retired])

        assert count == 1
        assert seeder.get(active).needs_evaluation is True
        assert seeder.get(active).version == version + 1
        assert seeder.get(retired).needs_evaluation is False

    def test_update_assumption_status_returns_previous(self, session_factory, seeder):
        assumption = seeder.assumption(status="HOLDING", scope="UNIVERSAL")

        with transaction_scope(session_factory) as session:
            row, previous = DecisionEvaluationRepository(session).update_assumption_status(
                assumption, AssumptionStatus.BROKEN, NOW
            )
            scope = row.scope

        assert previous == AssumptionStatus.HOLDING
        assert scope == AssumptionScope.UNIVERSAL.value

    def test_history_is_newest_first(self, session_factory, seeder):
        decision = seeder.decision()
        engine = DecisionEvaluationEngine()

        for hours in (0, 1, 2):
            with transaction_scope(session_factory) as session:
                repository = DecisionEvaluationRepository(session)
                evaluation_input = repository.load_evaluation_input(decision, NOW + timedelta(hours=hours))
                repository.persist_evaluation(
                    engine.evaluate(evaluation_input), evaluation_input.decision.version
                )

        with transaction_scope(session_factory) as session:
            history = DecisionEvaluationRepository(session).get_evaluation_history(decision, limit=2)

        assert len(history) == 2
        assert history[0].evaluated_at > history[1].evaluated_at


# =============================================================
# TEST: Dependencies
# =============================================================

class TestDependencies:

    def test_add_and_find(self, session_factory, seeder):
        source = seeder.decision()
        target = seeder.decision()

        with transaction_scope(session_factory) as session:
            repository = DecisionEvaluationRepository(session)
            first = repository.add_dependency(source, target)
            again = repository.add_dependency(source, target)
            assert first.id == again.id

        with transaction_scope(session_factory) as session:
            repository = DecisionEvaluationRepository(session)
            assert repository.find_dependents(target) == [source]
            assert repository.find_dependencies(source) == [target]

    def test_self_dependency_rejected(self, session_factory, seeder):
        decision = seeder.decision()

        with transaction_scope(session_factory) as session:
            with pytest.raises(DependencyCycleError) as exc_info:
                DecisionEvaluationRepository(session).add_dependency(decision, decision)

        assert exc_info.value.context["reason"] == "self_dependency"

    def test_cycle_rejected(self, session_factory, seeder):
        a, b, c = seeder.decision(), seeder.decision(), seeder.decision()
        seeder.depend(a, b)
        seeder.depend(b, c)

        with transaction_scope(session_factory) as session:
            with pytest.raises(DependencyCycleError) as exc_info:
                DecisionEvaluationRepository(session).add_dependency(c, a)

        assert exc_info.value.context["reason"] == "cycle"

    def test_depth_limit(self, session_factory, seeder):
        chain = [seeder.decision() for _ in range(4)]
        for source, target in zip(chain, chain[1:]):
            seeder.depend(source, target)
        newcomer = seeder.decision()

        with transaction_scope(session_factory) as session:
            with pytest.raises(DependencyCycleError) as exc_info:
                DecisionEvaluationRepository(session).add_dependency(newcomer, chain[0], max_depth=2)

        assert exc_info.value.context["reason"] == "depth_exceeded"

    def test_missing_endpoint(self, session_factory, seeder):
        decision = seeder.decision()

        with transaction_scope(session_factory) as session:
            with pytest.raises(DecisionNotFoundError):
                DecisionEvaluationRepository(session).add_dependency(decision, "missing")

    def test_remove(self, session_factory, seeder):
        source, target = seeder.decision(), seeder.decision()
        seeder.depend(source, target)

        with transaction_scope(session_factory) as session:
            repository = DecisionEvaluationRepository(session)
            assert repository.remove_dependency(source, target) is True
            assert repository.remove_dependency(source, target) is False
