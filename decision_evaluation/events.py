"""
Decision Evaluation - Event Bus and Handlers.

============================================================
PURPOSE
============================================================
In-process publish/subscribe for changes that make stored
evaluations out of date.

Handlers never evaluate. They only mark the affected
decisions dirty; the next scheduler pass picks them up.

============================================================
EVENTS
============================================================
assumption_status_changed  -> linked decisions (all active
                              decisions for UNIVERSAL scope)
constraint_link_changed    -> decisions linked to the constraint
dependency_changed         -> the source decision
decision_evaluated         -> direct dependents, when the run
                              changed something (one hop)

============================================================
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from core.clock import now_utc

from .types import AssumptionScope, AssumptionStatus, DecisionLifecycle


logger = logging.getLogger(__name__)


# =============================================================
# EVENT SCHEMAS
# =============================================================

class EvaluationEventType(str, Enum):
    ASSUMPTION_STATUS_CHANGED = "assumption_status_changed"
    CONSTRAINT_LINK_CHANGED = "constraint_link_changed"
    DEPENDENCY_CHANGED = "dependency_changed"
    DECISION_EVALUATED = "decision_evaluated"


class EvaluationEvent(BaseModel):
    """Base event payload."""
    event_type: EvaluationEventType
    occurred_at: datetime = Field(default_factory=now_utc)


class AssumptionStatusChanged(EvaluationEvent):
    event_type: EvaluationEventType = EvaluationEventType.ASSUMPTION_STATUS_CHANGED
    assumption_id: str
    new_status: AssumptionStatus
    previous_status: Optional[AssumptionStatus] = None
    scope: AssumptionScope = AssumptionScope.DECISION_SPECIFIC

    # Optional explicit targets; resolved from links when empty
    decision_ids: List[str] = Field(default_factory=list)


class ConstraintLinkChanged(EvaluationEvent):
    event_type: EvaluationEventType = EvaluationEventType.CONSTRAINT_LINK_CHANGED
    constraint_id: str
    decision_ids: List[str] = Field(default_factory=list)


class DependencyChanged(EvaluationEvent):
    event_type: EvaluationEventType = EvaluationEventType.DEPENDENCY_CHANGED
    source_decision_id: str
    target_decision_id: str
    action: str = "added"


class DecisionEvaluated(EvaluationEvent):
    event_type: EvaluationEventType = EvaluationEventType.DECISION_EVALUATED
    decision_id: str
    changes_detected: bool
    new_lifecycle: DecisionLifecycle
    new_health_signal: int


EventHandler = Callable[[EvaluationEvent], object]


# =============================================================
# EVENT BUS
# =============================================================

class EvaluationEventBus:
    """
    Synchronous in-process event bus.

    Handlers run in subscription order on the publisher's
    thread. A failing handler is logged and does not stop the
    others or reach the publisher.
    """

    def __init__(self):
        self._handlers: Dict[EvaluationEventType, List[EventHandler]] = defaultdict(list)
        self._lock = threading.RLock()

    def subscribe(self, event_type: EvaluationEventType, handler: EventHandler) -> None:
        with self._lock:
            if handler not in self._handlers[event_type]:
                self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EvaluationEventType, handler: EventHandler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def handler_count(self, event_type: EvaluationEventType) -> int:
        with self._lock:
            return len(self._handlers.get(event_type, []))

    def publish(self, event: EvaluationEvent) -> int:
        """
        Deliver `event` to every subscriber.

        Returns:
            Number of handlers that completed without raising
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Event handler failed: event={event.event_type.value} | "
                    f"handler={getattr(handler, '__name__', repr(handler))} | error={e}",
                    exc_info=True,
                )
        return delivered


# =============================================================
# HANDLERS
# =============================================================

class EvaluationEventHandlers:
    """
    Event handlers that translate changes into dirty flags.

    `scheduler` is an EvaluationScheduler (or anything exposing
    mark_for_evaluation, mark_all_for_evaluation,
    find_linked_decisions, find_dependents and config).
    """

    def __init__(self, scheduler):
        self.scheduler = scheduler

    def register(self, bus: EvaluationEventBus) -> None:
        bus.subscribe(EvaluationEventType.ASSUMPTION_STATUS_CHANGED, self.on_assumption_status_changed)
        bus.subscribe(EvaluationEventType.CONSTRAINT_LINK_CHANGED, self.on_constraint_link_changed)
        bus.subscribe(EvaluationEventType.DEPENDENCY_CHANGED, self.on_dependency_changed)
        bus.subscribe(EvaluationEventType.DECISION_EVALUATED, self.on_decision_evaluated)

    def on_assumption_status_changed(self, event: AssumptionStatusChanged) -> int:
        if event.previous_status is not None and event.previous_status == event.new_status:
            return 0

        if event.scope == AssumptionScope.UNIVERSAL:
            return self.scheduler.mark_all_for_evaluation(reason=event.event_type.value)

        decision_ids = event.decision_ids or self.scheduler.find_linked_decisions(
            assumption_id=event.assumption_id
        )
        return self.scheduler.mark_for_evaluation(decision_ids, reason=event.event_type.value)

    def on_constraint_link_changed(self, event: ConstraintLinkChanged) -> int:
        decision_ids = event.decision_ids or self.scheduler.find_linked_decisions(
            constraint_id=event.constraint_id
        )
        return self.scheduler.mark_for_evaluation(decision_ids, reason=event.event_type.value)

    def on_dependency_changed(self, event: DependencyChanged) -> int:
        return self.scheduler.mark_for_evaluation(
            [event.source_decision_id], reason=event.event_type.value
        )

    def on_decision_evaluated(self, event: DecisionEvaluated) -> int:
        if not event.changes_detected or not self.scheduler.config.cascade_on_change:
            return 0
        dependents = self.scheduler.find_dependents(event.decision_id)
        if not dependents:
            return 0
        return self.scheduler.mark_for_evaluation(dependents, reason=event.event_type.value)
