"""
Decision Evaluation - Staleness Rules.

Decides whether a decision needs an engine run at `now`.
Shared by the scheduler (single decision) and the repository
(candidate sweep) so both give the same answer.

Priority, first match wins:
    RETIRED                          -> terminal_state
    dirty flag set                   -> explicit_flag
    never evaluated                  -> never_evaluated
    last run older than stale_hours  -> stale
    within +/- expiry_window_days of expiry and last run older
    than expiry_recheck_hours        -> expiry_window
    otherwise                        -> fresh
"""

from datetime import datetime
from typing import Optional

from core.clock import days_between, hours_between

from .config import SchedulingConfig
from .types import DecisionLifecycle, DecisionSnapshot, EvaluationReason


def check_staleness(
    snapshot: DecisionSnapshot,
    now: datetime,
    config: SchedulingConfig,
    stale_hours: Optional[float] = None,
) -> EvaluationReason:
    stale_hours = config.stale_hours if stale_hours is None else stale_hours

    if snapshot.lifecycle == DecisionLifecycle.RETIRED:
        return EvaluationReason.TERMINAL_STATE
    if snapshot.needs_evaluation:
        return EvaluationReason.EXPLICIT_FLAG
    if snapshot.last_evaluated_at is None:
        return EvaluationReason.NEVER_EVALUATED

    hours_since = hours_between(snapshot.last_evaluated_at, now)
    if hours_since > stale_hours:
        return EvaluationReason.STALE

    if snapshot.expiry_date is not None:
        days_to_expiry = days_between(now, snapshot.expiry_date)
        if abs(days_to_expiry) <= config.expiry_window_days and (
            hours_since > config.expiry_recheck_hours
        ):
            return EvaluationReason.EXPIRY_WINDOW

    return EvaluationReason.FRESH
