"""
Decision Evaluation - Package.

============================================================
PURPOSE
============================================================
Monitors organizational decisions whose validity degrades
silently as the assumptions and constraints behind them
change.

============================================================
WHAT IT IS
============================================================
- A deterministic, explainable evaluation engine
- A scheduling service that decides when to evaluate
- A health signal that asks for human judgment

============================================================
WHAT IT IS NOT
============================================================
- NOT an authority: health alone never invalidates
- NOT a conflict detector between assumptions
- NOT a notification sender

============================================================
LIFECYCLE
============================================================
health >= 80 -> STABLE
health >= 60 -> UNDER_REVIEW
otherwise    -> AT_RISK

INVALIDATED: violated constraint or broken assumptions
RETIRED: more than 30 days past expiry, or manual

============================================================
USAGE
============================================================
    from database import get_session_factory
    from decision_evaluation import EvaluationScheduler, format_evaluation_summary

    scheduler = EvaluationScheduler(get_session_factory())

    result = scheduler.evaluate_if_needed(decision_id, force=True)
    print(format_evaluation_summary(result))

    summary = scheduler.run_sweep()
    print(f"{summary.evaluated} evaluated, {summary.failed} failed")

============================================================
"""

# Types
from .types import (
    # Enums
    DecisionLifecycle,
    InvalidationReason,
    AssumptionStatus,
    AssumptionScope,
    ConstraintType,
    EvaluationStep,
    StepOutcome,
    EvaluationReason,
    BatchItemStatus,

    # Input types
    DecisionSnapshot,
    AssumptionInput,
    ConstraintInput,
    DependencyInput,
    EvaluationInput,

    # Output types
    TraceEntry,
    EvaluationResult,
    EvaluationCheck,
    BatchItemResult,
    BatchEvaluationResult,
)

# Configuration
from .config import (
    EngineConfig,
    SchedulingConfig,
    DecisionEvaluationConfig,
    get_default_config,
    get_strict_config,
    get_lenient_config,
)

# Engine
from .engine import (
    DecisionEvaluationEngine,
    evaluate_decision,
    lifecycle_from_health,
    format_evaluation_summary,
)

# Scheduling
from .staleness import check_staleness
from .leases import DecisionLeaseManager
from .events import (
    EvaluationEventType,
    EvaluationEvent,
    AssumptionStatusChanged,
    ConstraintLinkChanged,
    DependencyChanged,
    DecisionEvaluated,
    EvaluationEventBus,
    EvaluationEventHandlers,
)
from .scheduler import EvaluationScheduler

# Persistence
from .repository import DecisionEvaluationRepository


__all__ = [
    # Enums
    "DecisionLifecycle",
    "InvalidationReason",
    "AssumptionStatus",
    "AssumptionScope",
    "ConstraintType",
    "EvaluationStep",
    "StepOutcome",
    "EvaluationReason",
    "BatchItemStatus",

    # Input types
    "DecisionSnapshot",
    "AssumptionInput",
    "ConstraintInput",
    "DependencyInput",
    "EvaluationInput",

    # Output types
    "TraceEntry",
    "EvaluationResult",
    "EvaluationCheck",
    "BatchItemResult",
    "BatchEvaluationResult",

    # Configuration
    "EngineConfig",
    "SchedulingConfig",
    "DecisionEvaluationConfig",
    "get_default_config",
    "get_strict_config",
    "get_lenient_config",

    # Engine
    "DecisionEvaluationEngine",
    "evaluate_decision",
    "lifecycle_from_health",
    "format_evaluation_summary",

    # Scheduling
    "check_staleness",
    "DecisionLeaseManager",
    "EvaluationEventType",
    "EvaluationEvent",
    "AssumptionStatusChanged",
    "ConstraintLinkChanged",
    "DependencyChanged",
    "DecisionEvaluated",
    "EvaluationEventBus",
    "EvaluationEventHandlers",
    "EvaluationScheduler",

    # Persistence
    "DecisionEvaluationRepository",
]


__version__ = "1.0.0"
