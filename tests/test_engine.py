"""
Tests for the Decision Evaluation Engine.

Tests cover:
- Five-step trace and step ordering
- Constraint dominance
- Dependency health floor
- Assumption invalidation and penalties
- Expiry and review decay, expiry retirement
- Terminal state handling
- Determinism and error wrapping
"""

from datetime import timedelta

import pytest

from core.exceptions import EvaluationError
from decision_evaluation.config import EngineConfig, get_strict_config
from decision_evaluation.engine import (
    DecisionEvaluationEngine,
    evaluate_decision,
    format_evaluation_summary,
    lifecycle_from_health,
)
from decision_evaluation.types import (
    AssumptionInput,
    AssumptionScope,
    AssumptionStatus,
    ConstraintInput,
    DecisionLifecycle,
    DecisionSnapshot,
    DependencyInput,
    EvaluationInput,
    EvaluationStep,
    InvalidationReason,
    StepOutcome,
)

from tests.conftest import NOW


# =============================================================
# Helpers
# =============================================================

def make_snapshot(**overrides) -> DecisionSnapshot:
    values = {
        "id": "dec-1",
        "lifecycle": DecisionLifecycle.STABLE,
        "health_signal": 100,
        "created_at": NOW - timedelta(days=5),
    }
    values.update(overrides)
    return DecisionSnapshot(**values)


def make_input(snapshot=None, assumptions=(), constraints=(), dependencies=()) -> EvaluationInput:
    return EvaluationInput(
        decision=snapshot or make_snapshot(),
        now=NOW,
        assumptions=tuple(assumptions),
        constraints=tuple(constraints),
        dependencies=tuple(dependencies),
    )


def specific(assumption_id: str, status: AssumptionStatus) -> AssumptionInput:
    return AssumptionInput(assumption_id, status, AssumptionScope.DECISION_SPECIFIC)


def universal(assumption_id: str, status: AssumptionStatus) -> AssumptionInput:
    return AssumptionInput(assumption_id, status, AssumptionScope.UNIVERSAL)


@pytest.fixture
def engine():
    return DecisionEvaluationEngine()


# =============================================================
# TEST: Trace shape
# =============================================================

class TestTrace:

    def test_healthy_decision_stays_stable(self, engine):
        result = engine.evaluate(make_input())

        assert result.new_health_signal == 100
        assert result.new_lifecycle == DecisionLifecycle.STABLE
        assert result.invalidated_reason is None
        assert result.changes_detected is False

    def test_trace_has_five_steps_in_order(self, engine):
        result = engine.evaluate(make_input())

        assert [entry.step for entry in result.trace] == EvaluationStep.all_steps()
        assert all(entry.outcome == StepOutcome.PASSED for entry in result.trace)

    def test_trace_timestamps_use_input_time(self, engine):
        result = engine.evaluate(make_input())

        assert result.evaluated_at == NOW
        assert all(entry.timestamp == NOW for entry in result.trace)

    def test_same_input_gives_same_result(self, engine):
        evaluation_input = make_input(
            assumptions=[specific("a1", AssumptionStatus.SHAKY), specific("a2", AssumptionStatus.HOLDING)],
            dependencies=[DependencyInput("dec-2", 75)],
        )

        assert engine.evaluate(evaluation_input) == engine.evaluate(evaluation_input)

    def test_get_step(self, engine):
        result = engine.evaluate(make_input(dependencies=[DependencyInput("dec-2", 70)]))

        entry = result.get_step(EvaluationStep.DEPENDENCY_EVALUATION)
        assert entry.health_after == 70


# =============================================================
# TEST: Constraint validation
# =============================================================

class TestConstraintValidation:

    def test_violation_invalidates(self, engine):
        result = engine.evaluate(make_input(
            constraints=[ConstraintInput("c1", True, name="Budget cap")],
        ))

        assert result.new_health_signal == 0
        assert result.new_lifecycle == DecisionLifecycle.INVALIDATED
        assert result.invalidated_reason == InvalidationReason.CONSTRAINT_VIOLATION
        assert result.trace[0].outcome == StepOutcome.FAILED
        assert "Budget cap" in result.trace[0].details

    def test_violation_dominates_other_failures(self, engine):
        result = engine.evaluate(make_input(
            constraints=[ConstraintInput("c1", True)],
            assumptions=[universal("u1", AssumptionStatus.BROKEN)],
            dependencies=[DependencyInput("dec-2", 10)],
        ))

        assert result.invalidated_reason == InvalidationReason.CONSTRAINT_VIOLATION
        outcomes = [entry.outcome for entry in result.trace]
        assert outcomes == [
            StepOutcome.FAILED,
            StepOutcome.SKIPPED,
            StepOutcome.SKIPPED,
            StepOutcome.SKIPPED,
            StepOutcome.SKIPPED,
        ]
        assert "INVALIDATED" in result.trace[4].details

    def test_satisfied_constraints_pass(self, engine):
        result = engine.evaluate(make_input(
            constraints=[ConstraintInput("c1", False), ConstraintInput("c2", False)],
        ))

        assert result.trace[0].outcome == StepOutcome.PASSED
        assert result.new_lifecycle == DecisionLifecycle.STABLE


# =============================================================
# TEST: Dependency evaluation
# =============================================================

class TestDependencyEvaluation:

    def test_weakest_dependency_caps_health(self, engine):
        result = engine.evaluate(make_input(dependencies=[
            DependencyInput("dec-2", 30, DecisionLifecycle.AT_RISK),
            DependencyInput("dec-3", 90),
        ]))

        assert result.new_health_signal == 30
        assert result.new_lifecycle == DecisionLifecycle.AT_RISK
        assert result.invalidated_reason is None
        assert result.trace[1].metadata["weakest_health"] == 30

    def test_invalidated_dependency_does_not_invalidate(self, engine):
        result = engine.evaluate(make_input(dependencies=[
            DependencyInput("dec-2", 0, DecisionLifecycle.INVALIDATED),
        ]))

        assert result.new_health_signal == 0
        assert result.new_lifecycle == DecisionLifecycle.AT_RISK
        assert result.invalidated_reason is None

    def test_healthier_dependency_has_no_effect(self, engine):
        result = engine.evaluate(make_input(dependencies=[DependencyInput("dec-2", 100)]))

        assert result.new_health_signal == 100


# =============================================================
# TEST: Assumption check
# =============================================================

class TestAssumptionCheck:

    def test_broken_universal_invalidates(self, engine):
        result = engine.evaluate(make_input(assumptions=[
            universal("u1", AssumptionStatus.BROKEN),
            specific("a1", AssumptionStatus.HOLDING),
        ]))

        assert result.new_lifecycle == DecisionLifecycle.INVALIDATED
        assert result.invalidated_reason == InvalidationReason.BROKEN_ASSUMPTIONS
        assert result.new_health_signal == 0
        assert result.trace[2].outcome == StepOutcome.FAILED
        assert result.trace[3].outcome == StepOutcome.SKIPPED

    def test_one_of_three_broken_is_penalty_only(self, engine):
        result = engine.evaluate(make_input(assumptions=[
            specific("a1", AssumptionStatus.BROKEN),
            specific("a2", AssumptionStatus.HOLDING),
            specific("a3", AssumptionStatus.HOLDING),
        ]))

        assert result.new_health_signal == 80
        assert result.new_lifecycle == DecisionLifecycle.STABLE
        assert result.trace[2].metadata["health_penalty"] == 20

    def test_two_of_three_broken_is_below_threshold(self, engine):
        result = engine.evaluate(make_input(assumptions=[
            specific("a1", AssumptionStatus.BROKEN),
            specific("a2", AssumptionStatus.BROKEN),
            specific("a3", AssumptionStatus.HOLDING),
        ]))

        assert result.new_health_signal == 60
        assert result.new_lifecycle == DecisionLifecycle.UNDER_REVIEW

    def test_broken_fraction_at_threshold_invalidates(self, engine):
        assumptions = [specific(f"b{i}", AssumptionStatus.BROKEN) for i in range(7)]
        assumptions += [specific(f"h{i}", AssumptionStatus.HOLDING) for i in range(3)]

        result = engine.evaluate(make_input(assumptions=assumptions))

        assert result.new_lifecycle == DecisionLifecycle.INVALIDATED
        assert result.invalidated_reason == InvalidationReason.BROKEN_ASSUMPTIONS

    def test_shaky_counts_half(self, engine):
        result = engine.evaluate(make_input(assumptions=[
            specific("a1", AssumptionStatus.SHAKY),
            specific("a2", AssumptionStatus.HOLDING),
        ]))

        assert result.new_health_signal == 85

    def test_all_shaky_stays_below_default_threshold(self, engine):
        result = engine.evaluate(make_input(
            assumptions=[specific(f"s{i}", AssumptionStatus.SHAKY) for i in range(10)],
        ))

        assert result.new_health_signal == 70
        assert result.new_lifecycle == DecisionLifecycle.UNDER_REVIEW

    def test_shaky_universal_has_no_penalty(self, engine):
        result = engine.evaluate(make_input(assumptions=[universal("u1", AssumptionStatus.SHAKY)]))

        assert result.new_health_signal == 100

    def test_strict_config_weighs_shaky_fully(self):
        engine = DecisionEvaluationEngine(get_strict_config().engine)

        result = engine.evaluate(make_input(assumptions=[
            specific("a1", AssumptionStatus.SHAKY),
            specific("a2", AssumptionStatus.HOLDING),
            specific("a3", AssumptionStatus.HOLDING),
        ]))

        assert result.new_health_signal == 80
        assert result.new_lifecycle == DecisionLifecycle.UNDER_REVIEW

    def test_strict_config_invalidates_all_shaky_like_all_broken(self):
        engine = DecisionEvaluationEngine(get_strict_config().engine)

        shaky = engine.evaluate(make_input(
            assumptions=[specific(f"s{i}", AssumptionStatus.SHAKY) for i in range(3)],
        ))
        broken = engine.evaluate(make_input(
            assumptions=[specific(f"b{i}", AssumptionStatus.BROKEN) for i in range(3)],
        ))

        assert shaky.new_lifecycle == broken.new_lifecycle == DecisionLifecycle.INVALIDATED
        assert shaky.new_health_signal == broken.new_health_signal == 0
        assert shaky.invalidated_reason == InvalidationReason.BROKEN_ASSUMPTIONS

    def test_shaky_weight_counts_toward_threshold(self, engine):
        result = engine.evaluate(make_input(assumptions=[
            specific("a1", AssumptionStatus.BROKEN),
            specific("a2", AssumptionStatus.BROKEN),
            specific("a3", AssumptionStatus.SHAKY),
        ]))

        assert result.new_lifecycle == DecisionLifecycle.INVALIDATED
        assert result.trace[2].metadata["specific_shaky"] == 1


# =============================================================
# TEST: Health decay
# =============================================================

class TestHealthDecay:

    @pytest.mark.parametrize("days_until,expected", [
        (120, 0),
        (90, 0),
        (75, 1),
        (31, 3),
        (30, 4),
        (20, 6),
        (1, 10),
        (0, 12),
        (-10, 22),
    ])
    def test_expiry_decay_schedule(self, engine, days_until, expected):
        assert engine.expiry_decay(days_until) == expected

    def test_expiry_sixty_days_out(self, engine):
        result = engine.evaluate(make_input(make_snapshot(expiry_date=NOW + timedelta(days=60))))

        assert result.new_health_signal == 98
        assert result.new_lifecycle == DecisionLifecycle.STABLE

    def test_thirty_days_past_expiry_is_not_retired(self, engine):
        result = engine.evaluate(make_input(make_snapshot(expiry_date=NOW - timedelta(days=30))))

        assert result.new_lifecycle == DecisionLifecycle.AT_RISK
        assert result.new_health_signal == 58

    def test_more_than_thirty_days_past_expiry_retires(self, engine):
        result = engine.evaluate(make_input(make_snapshot(expiry_date=NOW - timedelta(days=31))))

        assert result.new_lifecycle == DecisionLifecycle.RETIRED
        assert result.invalidated_reason == InvalidationReason.EXPIRED
        assert result.new_health_signal == 0
        assert result.trace[3].outcome == StepOutcome.FAILED
        assert result.trace[4].outcome == StepOutcome.SKIPPED

    def test_review_decay_without_expiry(self, engine):
        result = engine.evaluate(make_input(make_snapshot(created_at=NOW - timedelta(days=95))))

        assert result.new_health_signal == 97

    def test_recent_review_resets_decay(self, engine):
        result = engine.evaluate(make_input(make_snapshot(
            created_at=NOW - timedelta(days=400),
            last_reviewed_at=NOW - timedelta(days=10),
        )))

        assert result.new_health_signal == 100

    def test_decay_applies_after_dependency_floor(self, engine):
        result = engine.evaluate(make_input(
            make_snapshot(created_at=NOW - timedelta(days=65)),
            dependencies=[DependencyInput("dec-2", 70)],
        ))

        assert result.new_health_signal == 68


# =============================================================
# TEST: Terminal states
# =============================================================

class TestTerminalStates:

    def test_retired_is_carried_through(self, engine):
        snapshot = make_snapshot(
            lifecycle=DecisionLifecycle.RETIRED,
            health_signal=0,
            invalidated_reason=InvalidationReason.MANUAL,
        )

        result = engine.evaluate(make_input(snapshot, constraints=[ConstraintInput("c1", True)]))

        assert result.new_lifecycle == DecisionLifecycle.RETIRED
        assert result.new_health_signal == 0
        assert result.invalidated_reason == InvalidationReason.MANUAL
        assert result.changes_detected is False
        assert len(result.trace) == 5
        assert all(entry.outcome == StepOutcome.SKIPPED for entry in result.trace)

    def test_invalidated_recovers_when_cause_is_gone(self, engine):
        snapshot = make_snapshot(
            lifecycle=DecisionLifecycle.INVALIDATED,
            health_signal=0,
            invalidated_reason=InvalidationReason.CONSTRAINT_VIOLATION,
        )

        result = engine.evaluate(make_input(snapshot, constraints=[ConstraintInput("c1", False)]))

        assert result.new_lifecycle == DecisionLifecycle.STABLE
        assert result.new_health_signal == 100
        assert result.invalidated_reason is None
        assert result.changes_detected is True
        assert result.lifecycle_changed is True


# =============================================================
# TEST: Errors and helpers
# =============================================================

class TestErrorsAndHelpers:

    def test_missing_timestamp_raises(self, engine):
        with pytest.raises(EvaluationError):
            engine.evaluate(EvaluationInput(decision=make_snapshot(), now=None))

    def test_malformed_input_is_wrapped(self, engine):
        with pytest.raises(EvaluationError) as exc_info:
            engine.evaluate(object())

        assert exc_info.value.cause is not None

    @pytest.mark.parametrize("health,expected", [
        (100, DecisionLifecycle.STABLE),
        (80, DecisionLifecycle.STABLE),
        (79, DecisionLifecycle.UNDER_REVIEW),
        (60, DecisionLifecycle.UNDER_REVIEW),
        (59, DecisionLifecycle.AT_RISK),
        (0, DecisionLifecycle.AT_RISK),
    ])
    def test_lifecycle_from_health(self, health, expected):
        assert lifecycle_from_health(health) == expected

    def test_evaluate_decision_uses_given_config(self):
        config = EngineConfig(stable_threshold=90, under_review_threshold=70)

        result = evaluate_decision(make_input(dependencies=[DependencyInput("dec-2", 85)]), config)

        assert result.new_lifecycle == DecisionLifecycle.UNDER_REVIEW

    def test_format_summary(self, engine):
        result = engine.evaluate(make_input(constraints=[ConstraintInput("c1", True)]))

        summary = format_evaluation_summary(result)

        assert "DECISION EVALUATION SUMMARY" in summary
        assert "constraint_violation" in summary
        for step in EvaluationStep.all_steps():
            assert step.value in summary

    def test_result_to_dict(self, engine):
        data = engine.evaluate(make_input()).to_dict()

        assert data["new_lifecycle"] == "STABLE"
        assert len(data["trace"]) == 5
        assert data["trace"][0]["step"] == "constraint_validation"
