"""
Decision Evaluation Engine - Main Evaluator.

============================================================
PURPOSE
============================================================
The DecisionEvaluationEngine turns an EvaluationInput into an
EvaluationResult: new health signal, lifecycle, optional
invalidation reason and a five-step trace.

The system does not replace human judgment. It highlights
when judgment is needed.

============================================================
DESIGN PRINCIPLES
============================================================
- Pure: no I/O, no clock reads, no mutation of inputs
- Deterministic: same input and `now` give the same result
- Explainable: every step leaves a trace entry
- Health is a signal; it never invalidates on its own.
  Only violated constraints or broken assumptions do.

============================================================
USAGE
============================================================
    from decision_evaluation import DecisionEvaluationEngine

    engine = DecisionEvaluationEngine()
    result = engine.evaluate(evaluation_input)

    print(f"{result.new_lifecycle.value} ({result.new_health_signal})")

============================================================
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple

from core.clock import days_between, ensure_utc
from core.exceptions import EvaluationError

from .types import (
    AssumptionInput,
    AssumptionStatus,
    DecisionLifecycle,
    EvaluationInput,
    EvaluationResult,
    EvaluationStep,
    InvalidationReason,
    StepOutcome,
    TraceEntry,
)
from .config import EngineConfig


logger = logging.getLogger(__name__)


class DecisionEvaluationEngine:
    """
    Deterministic evaluator for a single decision.

    ============================================================
    STEP ORDER
    ============================================================
    1. Constraint validation (violation = hard fail)
    2. Dependency evaluation (health capped, never invalidates)
    3. Assumption check (universal BROKEN or too many BROKEN
       = hard fail, otherwise proportional penalty)
    4. Health decay (expiry-driven or review-driven; far past
       expiry = retirement)
    5. Lifecycle determination (health thresholds)

    A hard fail stops the run; the remaining steps are traced
    as SKIPPED.

    ============================================================
    TERMINAL STATES
    ============================================================
    RETIRED input is carried through untouched.
    INVALIDATED input is treated as STABLE for the run so it
    can recover when the cause is gone.

    ============================================================
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    @property
    def version(self) -> str:
        return self.config.engine_version

    def evaluate(self, input_data: EvaluationInput) -> EvaluationResult:
        """
        Evaluate one decision.

        Raises:
            EvaluationError: If the input cannot be processed.
                Never raised for a well-formed snapshot.
        """
        try:
            return self._evaluate(input_data)
        except EvaluationError:
            raise
        except Exception as e:
            decision_id = getattr(getattr(input_data, "decision", None), "id", None)
            raise EvaluationError(
                f"Evaluation failed: {e}",
                context={"decision_id": decision_id},
                cause=e,
            ) from e

    # --------------------------------------------------------
    # Orchestration
    # --------------------------------------------------------

    def _evaluate(self, input_data: EvaluationInput) -> EvaluationResult:
        if input_data is None or input_data.decision is None:
            raise EvaluationError("Evaluation input has no decision")
        if input_data.now is None:
            raise EvaluationError(
                "Evaluation input has no timestamp",
                context={"decision_id": input_data.decision.id},
            )

        decision = input_data.decision
        now = ensure_utc(input_data.now)

        if decision.lifecycle == DecisionLifecycle.RETIRED:
            return self._carry_retired(input_data, now)

        cfg = self.config
        trace: List[TraceEntry] = []

        health = cfg.start_health
        lifecycle: Optional[DecisionLifecycle] = None
        reason: Optional[InvalidationReason] = None
        halted_by: Optional[EvaluationStep] = None

        # --------------------------------------------------
        # Step 1: Constraint validation
        # --------------------------------------------------
        violated = [c for c in input_data.constraints if c.violated]
        if violated:
            health, lifecycle = 0, DecisionLifecycle.INVALIDATED
            reason = InvalidationReason.CONSTRAINT_VIOLATION
            halted_by = EvaluationStep.CONSTRAINT_VALIDATION
            names = ", ".join(c.name or c.id for c in violated)
            trace.append(self._entry(
                EvaluationStep.CONSTRAINT_VALIDATION, StepOutcome.FAILED,
                f"{len(violated)} constraint(s) violated: {names}",
                health, now,
                {"violated": [c.id for c in violated]},
            ))
        else:
            trace.append(self._entry(
                EvaluationStep.CONSTRAINT_VALIDATION, StepOutcome.PASSED,
                f"All {len(input_data.constraints)} constraints satisfied",
                health, now,
            ))

        # --------------------------------------------------
        # Step 2: Dependency evaluation
        # --------------------------------------------------
        if halted_by:
            trace.append(self._skipped(EvaluationStep.DEPENDENCY_EVALUATION, halted_by, health, now))
        else:
            health, entry = self._evaluate_dependencies(input_data, health, now)
            trace.append(entry)

        # --------------------------------------------------
        # Step 3: Assumption check
        # --------------------------------------------------
        if halted_by:
            trace.append(self._skipped(EvaluationStep.ASSUMPTION_CHECK, halted_by, health, now))
        else:
            failed, health, entry = self._check_assumptions(input_data.assumptions, health, now)
            trace.append(entry)
            if failed:
                lifecycle = DecisionLifecycle.INVALIDATED
                reason = InvalidationReason.BROKEN_ASSUMPTIONS
                halted_by = EvaluationStep.ASSUMPTION_CHECK

        # --------------------------------------------------
        # Step 4: Health decay / expiry retirement
        # --------------------------------------------------
        if halted_by:
            trace.append(self._skipped(EvaluationStep.HEALTH_DECAY, halted_by, health, now))
        else:
            retired, health, entry = self._apply_decay(input_data, health, now)
            trace.append(entry)
            if retired:
                lifecycle = DecisionLifecycle.RETIRED
                reason = InvalidationReason.EXPIRED
                halted_by = EvaluationStep.HEALTH_DECAY

        # --------------------------------------------------
        # Step 5: Lifecycle determination
        # --------------------------------------------------
        if halted_by:
            trace.append(self._entry(
                EvaluationStep.LIFECYCLE_DETERMINATION, StepOutcome.SKIPPED,
                f"Lifecycle fixed at {lifecycle.value} by {halted_by.value}",
                health, now,
            ))
        else:
            lifecycle = lifecycle_from_health(health, cfg)
            trace.append(self._entry(
                EvaluationStep.LIFECYCLE_DETERMINATION, StepOutcome.PASSED,
                f"Health signal {health} -> {lifecycle.value}",
                health, now,
            ))

        changes_detected = (
            lifecycle != decision.lifecycle or health != decision.health_signal
        )

        result = EvaluationResult(
            decision_id=decision.id,
            previous_lifecycle=decision.lifecycle,
            previous_health_signal=decision.health_signal,
            new_lifecycle=lifecycle,
            new_health_signal=health,
            invalidated_reason=reason,
            trace=tuple(trace),
            changes_detected=changes_detected,
            evaluated_at=now,
            engine_version=cfg.engine_version,
        )

        logger.debug(
            f"Evaluated decision: id={decision.id} | "
            f"{decision.lifecycle.value}/{decision.health_signal} -> "
            f"{lifecycle.value}/{health} | changed={changes_detected}"
        )
        return result

    # --------------------------------------------------------
    # Steps
    # --------------------------------------------------------

    def _evaluate_dependencies(
        self,
        input_data: EvaluationInput,
        health: int,
        now,
    ) -> Tuple[int, TraceEntry]:
        dependencies = input_data.dependencies
        if not dependencies:
            return health, self._entry(
                EvaluationStep.DEPENDENCY_EVALUATION, StepOutcome.PASSED,
                "No dependencies to evaluate", health, now,
            )

        weakest = min(dependencies, key=lambda d: d.health_signal)
        floor = _clamp(weakest.health_signal)
        health = min(health, floor)

        return health, self._entry(
            EvaluationStep.DEPENDENCY_EVALUATION, StepOutcome.PASSED,
            f"Evaluated {len(dependencies)} dependencies. Weakest: "
            f"{weakest.decision_id} at {floor}",
            health, now,
            {"dependency_count": len(dependencies), "weakest_health": floor},
        )

    def _check_assumptions(
        self,
        assumptions: Sequence[AssumptionInput],
        health: int,
        now,
    ) -> Tuple[bool, int, TraceEntry]:
        """Return (hard_fail, health, trace entry)."""
        cfg = self.config
        universal = [a for a in assumptions if a.is_universal]
        specific = [a for a in assumptions if not a.is_universal]

        broken_universal = sum(1 for a in universal if a.status == AssumptionStatus.BROKEN)
        broken_specific = sum(1 for a in specific if a.status == AssumptionStatus.BROKEN)
        shaky_specific = sum(1 for a in specific if a.status == AssumptionStatus.SHAKY)

        metadata = {
            "universal_total": len(universal),
            "universal_broken": broken_universal,
            "specific_total": len(specific),
            "specific_broken": broken_specific,
            "specific_shaky": shaky_specific,
            "health_penalty": 0,
        }

        if broken_universal:
            return True, 0, self._entry(
                EvaluationStep.ASSUMPTION_CHECK, StepOutcome.FAILED,
                f"{broken_universal} universal assumption(s) broken - decision invalidated",
                0, now, metadata,
            )

        if not specific:
            details = (
                f"All {len(universal)} universal assumptions holding"
                if universal else "No assumptions to evaluate"
            )
            return False, health, self._entry(
                EvaluationStep.ASSUMPTION_CHECK, StepOutcome.PASSED, details, health, now, metadata,
            )

        weighted = broken_specific + shaky_specific * cfg.shaky_weight
        broken_fraction = weighted / len(specific)
        if broken_fraction >= cfg.invalidation_fraction:
            return True, 0, self._entry(
                EvaluationStep.ASSUMPTION_CHECK, StepOutcome.FAILED,
                f"{broken_specific} broken, {shaky_specific} shaky of {len(specific)} "
                f"decision-specific assumptions ({round(broken_fraction * 100)}%) - "
                f"exceeds threshold, decision invalidated",
                0, now, metadata,
            )

        penalty = math.floor(weighted * cfg.max_assumption_penalty / len(specific))
        health = max(0, health - penalty)
        metadata["health_penalty"] = penalty

        if weighted == 0:
            details = f"All {len(assumptions)} assumptions holding"
        else:
            details = (
                f"{broken_specific} broken, {shaky_specific} shaky of {len(specific)} "
                f"decision-specific assumptions - health penalty: -{penalty}"
            )
        return False, health, self._entry(
            EvaluationStep.ASSUMPTION_CHECK, StepOutcome.PASSED, details, health, now, metadata,
        )

    def _apply_decay(
        self,
        input_data: EvaluationInput,
        health: int,
        now,
    ) -> Tuple[bool, int, TraceEntry]:
        """Return (retired, health, trace entry)."""
        cfg = self.config
        decision = input_data.decision

        if decision.expiry_date is not None:
            days_until = days_between(now, decision.expiry_date)

            if days_until < -cfg.retirement_grace_days:
                days_past = math.floor(-days_until)
                return True, 0, self._entry(
                    EvaluationStep.HEALTH_DECAY, StepOutcome.FAILED,
                    f"Expired {days_past} days ago. Automatically retired.",
                    0, now, {"days_until_expiry": days_until},
                )

            decay = self.expiry_decay(days_until)
            if days_until > cfg.warning_phase_days:
                phase = "no decay yet"
            elif days_until > cfg.critical_phase_days:
                phase = "warning phase"
            elif days_until > 0:
                phase = "critical phase"
            else:
                phase = "past expiry"
            details = f"{math.floor(days_until)} days until expiry, {phase}: -{decay} health"
            metadata = {"days_until_expiry": days_until, "decay": decay}
        else:
            days_since_review = days_between(decision.review_anchor, now)
            decay = max(0, math.floor(days_since_review / cfg.review_decay_period_days))
            details = f"{math.floor(days_since_review)} days since last review: -{decay} health"
            metadata = {"days_since_review": days_since_review, "decay": decay}

        health = max(0, health - decay)
        return False, health, self._entry(
            EvaluationStep.HEALTH_DECAY, StepOutcome.PASSED, details, health, now, metadata,
        )

    def expiry_decay(self, days_until: float) -> int:
        """
        Decay for a decision `days_until` days from expiry.

        Default schedule: 0 beyond 90 days, one point per 15 days
        from 90 to 30, plus one per 5 days from 30 to 0, then
        12 plus one per day overdue.
        """
        cfg = self.config
        if days_until > cfg.warning_phase_days:
            return 0
        warning = math.floor((cfg.warning_phase_days - days_until) / cfg.warning_step_days)
        if days_until > cfg.critical_phase_days:
            return warning
        if days_until > 0:
            critical = math.floor((cfg.critical_phase_days - days_until) / cfg.critical_step_days)
            return warning + critical
        return cfg.max_pre_expiry_decay + math.floor(-days_until)

    # --------------------------------------------------------
    # Helpers
    # --------------------------------------------------------

    def _carry_retired(self, input_data: EvaluationInput, now) -> EvaluationResult:
        decision = input_data.decision
        trace = tuple(
            self._entry(
                step, StepOutcome.SKIPPED,
                "Decision is RETIRED; not reconsidered",
                decision.health_signal, now,
            )
            for step in EvaluationStep.all_steps()
        )
        return EvaluationResult(
            decision_id=decision.id,
            previous_lifecycle=decision.lifecycle,
            previous_health_signal=decision.health_signal,
            new_lifecycle=DecisionLifecycle.RETIRED,
            new_health_signal=decision.health_signal,
            invalidated_reason=decision.invalidated_reason,
            trace=trace,
            changes_detected=False,
            evaluated_at=now,
            engine_version=self.config.engine_version,
        )

    def _skipped(
        self,
        step: EvaluationStep,
        halted_by: EvaluationStep,
        health: int,
        now,
    ) -> TraceEntry:
        return self._entry(
            step, StepOutcome.SKIPPED, f"Skipped: {halted_by.value} failed", health, now,
        )

    @staticmethod
    def _entry(step, outcome, details, health, now, metadata=None) -> TraceEntry:
        return TraceEntry(
            step=step,
            outcome=outcome,
            details=details,
            health_after=health,
            timestamp=now,
            metadata=metadata or {},
        )


# ============================================================
# CONVENIENCE FUNCTIONS
# ============================================================


def _clamp(value: int) -> int:
    return max(0, min(100, int(value)))


def lifecycle_from_health(
    health_signal: int,
    config: Optional[EngineConfig] = None,
) -> DecisionLifecycle:
    """
    Map a health signal to a non-terminal lifecycle.

    Never returns INVALIDATED: health alone cannot invalidate.
    """
    cfg = config or EngineConfig()
    if health_signal >= cfg.stable_threshold:
        return DecisionLifecycle.STABLE
    if health_signal >= cfg.under_review_threshold:
        return DecisionLifecycle.UNDER_REVIEW
    return DecisionLifecycle.AT_RISK


def evaluate_decision(
    input_data: EvaluationInput,
    config: Optional[EngineConfig] = None,
) -> EvaluationResult:
    """
    Evaluate in one call with a temporary engine.

    For repeated evaluation, prefer a long-lived
    DecisionEvaluationEngine instance.
    """
    return DecisionEvaluationEngine(config=config).evaluate(input_data)


def format_evaluation_summary(result: EvaluationResult) -> str:
    """
    Format a human-readable evaluation summary.

    Useful for logging and review tooling.
    """
    reason = result.invalidated_reason.value if result.invalidated_reason else "-"
    lines = [
        "=" * 50,
        "DECISION EVALUATION SUMMARY",
        "=" * 50,
        f"Decision: {result.decision_id}",
        f"Lifecycle: {result.previous_lifecycle.value} -> {result.new_lifecycle.value}",
        f"Health: {result.previous_health_signal} -> {result.new_health_signal}",
        f"Reason: {reason}",
        f"Changes Detected: {result.changes_detected}",
        f"Evaluated At: {result.evaluated_at.isoformat()}",
        "",
        "Trace:",
    ]
    for index, entry in enumerate(result.trace, start=1):
        lines.append(
            f"  {index}. {entry.step.value:<24} {entry.outcome.value.upper():<8} {entry.details}"
        )
    lines.append("=" * 50)

    return "\n".join(lines)
