"""
Tests for the evaluation event bus and handlers.
"""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from decision_evaluation.config import SchedulingConfig
from decision_evaluation.events import (
    AssumptionStatusChanged,
    ConstraintLinkChanged,
    DecisionEvaluated,
    DependencyChanged,
    EvaluationEventBus,
    EvaluationEventHandlers,
    EvaluationEventType,
)
from decision_evaluation.types import AssumptionScope, AssumptionStatus, DecisionLifecycle


# =============================================================
# Fixtures
# =============================================================

@pytest.fixture
def fake_scheduler():
    scheduler = MagicMock()
    scheduler.config = SchedulingConfig()
    scheduler.mark_for_evaluation.side_effect = lambda ids, reason=None: len(ids)
    scheduler.mark_all_for_evaluation.return_value = 7
    return scheduler


@pytest.fixture
def handlers(fake_scheduler):
    return EvaluationEventHandlers(fake_scheduler)


def evaluated(changes_detected=True):
    return DecisionEvaluated(
        decision_id="dec-1",
        changes_detected=changes_detected,
        new_lifecycle=DecisionLifecycle.AT_RISK,
        new_health_signal=40,
    )


# =============================================================
# TEST: Event bus
# =============================================================

class TestEventBus:

    def test_publish_reaches_subscribers(self):
        bus = EvaluationEventBus()
        seen = []
        bus.subscribe(EvaluationEventType.DECISION_EVALUATED, seen.append)

        delivered = bus.publish(evaluated())

        assert delivered == 1
        assert seen[0].decision_id == "dec-1"

    def test_other_event_types_not_delivered(self):
        bus = EvaluationEventBus()
        seen = []
        bus.subscribe(EvaluationEventType.DEPENDENCY_CHANGED, seen.append)

        assert bus.publish(evaluated()) == 0
        assert seen == []

    def test_failing_handler_does_not_stop_others(self):
        bus = EvaluationEventBus()
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(EvaluationEventType.DECISION_EVALUATED, broken)
        bus.subscribe(EvaluationEventType.DECISION_EVALUATED, seen.append)

        assert bus.publish(evaluated()) == 1
        assert len(seen) == 1

    def test_subscribe_is_idempotent_and_unsubscribe(self):
        bus = EvaluationEventBus()
        handler = MagicMock()
        bus.subscribe(EvaluationEventType.DECISION_EVALUATED, handler)
        bus.subscribe(EvaluationEventType.DECISION_EVALUATED, handler)

        assert bus.handler_count(EvaluationEventType.DECISION_EVALUATED) == 1
        assert bus.unsubscribe(EvaluationEventType.DECISION_EVALUATED, handler) is True
        assert bus.unsubscribe(EvaluationEventType.DECISION_EVALUATED, handler) is False

    def test_event_validation(self):
        with pytest.raises(ValidationError):
            DecisionEvaluated(decision_id="dec-1", changes_detected=True, new_lifecycle="BOGUS", new_health_signal=1)


# =============================================================
# TEST: Handlers
# =============================================================

class TestEventHandlers:

    def test_register_subscribes_all_types(self, handlers):
        bus = EvaluationEventBus()
        handlers.register(bus)

        for event_type in EvaluationEventType:
            assert bus.handler_count(event_type) == 1

    def test_specific_assumption_marks_linked(self, handlers, fake_scheduler):
        fake_scheduler.find_linked_decisions.return_value = ["dec-1", "dec-2"]

        count = handlers.on_assumption_status_changed(AssumptionStatusChanged(
            assumption_id="asm-1",
            new_status=AssumptionStatus.BROKEN,
            previous_status=AssumptionStatus.HOLDING,
        ))

        assert count == 2
        fake_scheduler.find_linked_decisions.assert_called_once_with(assumption_id="asm-1")

    def test_explicit_targets_skip_lookup(self, handlers, fake_scheduler):
        count = handlers.on_assumption_status_changed(AssumptionStatusChanged(
            assumption_id="asm-1",
            new_status=AssumptionStatus.SHAKY,
            decision_ids=["dec-9"],
        ))

        assert count == 1
        fake_scheduler.find_linked_decisions.assert_not_called()

    def test_universal_assumption_marks_all(self, handlers, fake_scheduler):
        count = handlers.on_assumption_status_changed(AssumptionStatusChanged(
            assumption_id="asm-1",
            new_status=AssumptionStatus.BROKEN,
            scope=AssumptionScope.UNIVERSAL,
        ))

        assert count == 7
        fake_scheduler.mark_for_evaluation.assert_not_called()

    def test_unchanged_status_is_ignored(self, handlers, fake_scheduler):
        count = handlers.on_assumption_status_changed(AssumptionStatusChanged(
            assumption_id="asm-1",
            new_status=AssumptionStatus.SHAKY,
            previous_status=AssumptionStatus.SHAKY,
        ))

        assert count == 0
        fake_scheduler.mark_for_evaluation.assert_not_called()

    def test_constraint_change(self, handlers, fake_scheduler):
        fake_scheduler.find_linked_decisions.return_value = ["dec-1"]

        assert handlers.on_constraint_link_changed(ConstraintLinkChanged(constraint_id="con-1")) == 1
        fake_scheduler.find_linked_decisions.assert_called_once_with(constraint_id="con-1")

    def test_dependency_change_marks_source(self, handlers, fake_scheduler):
        handlers.on_dependency_changed(DependencyChanged(
            source_decision_id="dec-1", target_decision_id="dec-2",
        ))

        args, _ = fake_scheduler.mark_for_evaluation.call_args
        assert args[0] == ["dec-1"]

    def test_evaluated_with_changes_marks_dependents(self, handlers, fake_scheduler):
        fake_scheduler.find_dependents.return_value = ["dec-5"]

        assert handlers.on_decision_evaluated(evaluated()) == 1

    def test_evaluated_without_changes_is_ignored(self, handlers, fake_scheduler):
        assert handlers.on_decision_evaluated(evaluated(changes_detected=False)) == 0
        fake_scheduler.find_dependents.assert_not_called()

    def test_cascade_disabled(self, handlers, fake_scheduler):
        fake_scheduler.config = SchedulingConfig(cascade_on_change=False)

        assert handlers.on_decision_evaluated(evaluated()) == 0
        fake_scheduler.find_dependents.assert_not_called()
