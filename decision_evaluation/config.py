"""
Decision Evaluation - Configuration.

============================================================
PURPOSE
============================================================
Thresholds for the Decision Evaluation Engine and timing for
the Evaluation Scheduling Service.

============================================================
DESIGN PRINCIPLES
============================================================
- Immutable configurations
- Every value validated at construction
- Environment overrides via from_env()
- Engine behaviour must be reproducible from to_dict()

============================================================
ENVIRONMENT
============================================================
DECISION_ENGINE_*     -> EngineConfig
DECISION_SCHEDULER_*  -> SchedulingConfig

============================================================
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv

from core.exceptions import InvalidConfigError


load_dotenv()

logger = logging.getLogger(__name__)


ENGINE_ENV_PREFIX = "DECISION_ENGINE_"
SCHEDULER_ENV_PREFIX = "DECISION_SCHEDULER_"


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _read_env(prefix: str, fields: Dict[str, Callable[[str], Any]]) -> Dict[str, Any]:
    """Collect `prefix + NAME` overrides for the given fields."""
    overrides: Dict[str, Any] = {}
    for name, parse in fields.items():
        raw = os.getenv(f"{prefix}{name.upper()}")
        if raw is None or raw == "":
            continue
        try:
            overrides[name] = parse(raw)
        except ValueError as e:
            raise InvalidConfigError(f"{prefix}{name.upper()}", raw, f"cannot parse: {e}") from e
    return overrides


# ============================================================
# ENGINE CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuration for the Decision Evaluation Engine.

    ============================================================
    ASSUMPTIONS
    ============================================================
    - Any BROKEN universal assumption invalidates
    - a SHAKY assumption weighs shaky_weight of a BROKEN one
    - weighted broken fraction >= invalidation_fraction invalidates
    - otherwise health -= floor(weighted fraction * max_assumption_penalty)

    ============================================================
    DECAY
    ============================================================
    With an expiry date (d = days until expiry):
    - d > warning_phase_days: no decay
    - critical_phase_days < d <= warning_phase_days:
        1 point per warning_step_days
    - 0 < d <= critical_phase_days:
        warning decay + 1 point per critical_step_days
    - d <= 0: full pre-expiry decay + 1 point per day overdue
    - more than retirement_grace_days overdue: RETIRED

    Without one: 1 point per review_decay_period_days since the
    last review.

    ============================================================
    """

    engine_version: str = "1.0.0"

    # Working health at the start of each run
    start_health: int = 100

    # Assumption check
    invalidation_fraction: float = 0.70
    max_assumption_penalty: int = 60
    shaky_weight: float = 0.5

    # Lifecycle thresholds
    stable_threshold: int = 80
    under_review_threshold: int = 60

    # Expiry
    retirement_grace_days: int = 30
    warning_phase_days: int = 90
    warning_step_days: int = 15
    critical_phase_days: int = 30
    critical_step_days: int = 5

    # Review-based decay
    review_decay_period_days: int = 30

    def __post_init__(self) -> None:
        if not 0 <= self.start_health <= 100:
            raise InvalidConfigError("start_health", self.start_health, "must be within 0-100")
        if not 0.0 < self.invalidation_fraction <= 1.0:
            raise InvalidConfigError(
                "invalidation_fraction", self.invalidation_fraction, "must be within (0, 1]"
            )
        if not 0 <= self.max_assumption_penalty <= 100:
            raise InvalidConfigError(
                "max_assumption_penalty", self.max_assumption_penalty, "must be within 0-100"
            )
        if not 0.0 <= self.shaky_weight <= 1.0:
            raise InvalidConfigError("shaky_weight", self.shaky_weight, "must be within [0, 1]")
        if not 0 <= self.under_review_threshold <= self.stable_threshold <= 100:
            raise InvalidConfigError(
                "stable_threshold",
                self.stable_threshold,
                "thresholds must satisfy 0 <= under_review <= stable <= 100",
            )
        if self.retirement_grace_days < 0:
            raise InvalidConfigError(
                "retirement_grace_days", self.retirement_grace_days, "must be non-negative"
            )
        if not 0 < self.critical_phase_days < self.warning_phase_days:
            raise InvalidConfigError(
                "critical_phase_days",
                self.critical_phase_days,
                "must be positive and below warning_phase_days",
            )
        for name in ("warning_step_days", "critical_step_days", "review_decay_period_days"):
            if getattr(self, name) <= 0:
                raise InvalidConfigError(name, getattr(self, name), "must be positive")

    @property
    def max_pre_expiry_decay(self) -> int:
        """Decay accumulated by the moment of expiry."""
        return (
            self.warning_phase_days // self.warning_step_days
            + self.critical_phase_days // self.critical_step_days
        )

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration with DECISION_ENGINE_* overrides."""
        overrides = _read_env(ENGINE_ENV_PREFIX, {
            "start_health": int,
            "invalidation_fraction": float,
            "max_assumption_penalty": int,
            "shaky_weight": float,
            "stable_threshold": int,
            "under_review_threshold": int,
            "retirement_grace_days": int,
            "warning_phase_days": int,
            "warning_step_days": int,
            "critical_phase_days": int,
            "critical_step_days": int,
            "review_decay_period_days": int,
        })
        if overrides:
            logger.info(f"Engine config overrides from environment: {sorted(overrides)}")
        return cls(**overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine_version": self.engine_version,
            "start_health": self.start_health,
            "invalidation_fraction": self.invalidation_fraction,
            "max_assumption_penalty": self.max_assumption_penalty,
            "shaky_weight": self.shaky_weight,
            "stable_threshold": self.stable_threshold,
            "under_review_threshold": self.under_review_threshold,
            "retirement_grace_days": self.retirement_grace_days,
            "warning_phase_days": self.warning_phase_days,
            "warning_step_days": self.warning_step_days,
            "critical_phase_days": self.critical_phase_days,
            "critical_step_days": self.critical_step_days,
            "review_decay_period_days": self.review_decay_period_days,
        }


# ============================================================
# SCHEDULING CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class SchedulingConfig:
    """
    Configuration for the Evaluation Scheduling Service.

    stale_hours: re-evaluate when the last run is older than this
    expiry_window_days / expiry_recheck_hours: inside +/- window
        around the expiry date, re-evaluate at least this often
    batch_limit: candidates resolved per sweep
    default_deadline_seconds: wall-clock budget per batch (None = no limit)
    cascade_on_change: mark direct dependents dirty after a
        run that changed something
    max_dependency_depth: bound of the cycle-detection walk
    lease_timeout_seconds: wait for a busy decision (None = wait forever)
    """

    stale_hours: float = 24.0
    expiry_window_days: int = 30
    expiry_recheck_hours: float = 24.0
    batch_limit: int = 100
    default_deadline_seconds: Optional[float] = None
    cascade_on_change: bool = True
    max_dependency_depth: int = 50
    lease_timeout_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if self.stale_hours <= 0:
            raise InvalidConfigError("stale_hours", self.stale_hours, "must be positive")
        if self.expiry_window_days < 0:
            raise InvalidConfigError(
                "expiry_window_days", self.expiry_window_days, "must be non-negative"
            )
        if self.expiry_recheck_hours <= 0:
            raise InvalidConfigError(
                "expiry_recheck_hours", self.expiry_recheck_hours, "must be positive"
            )
        if self.batch_limit <= 0:
            raise InvalidConfigError("batch_limit", self.batch_limit, "must be positive")
        if self.default_deadline_seconds is not None and self.default_deadline_seconds <= 0:
            raise InvalidConfigError(
                "default_deadline_seconds", self.default_deadline_seconds, "must be positive"
            )
        if self.max_dependency_depth <= 0:
            raise InvalidConfigError(
                "max_dependency_depth", self.max_dependency_depth, "must be positive"
            )
        if self.lease_timeout_seconds is not None and self.lease_timeout_seconds <= 0:
            raise InvalidConfigError(
                "lease_timeout_seconds", self.lease_timeout_seconds, "must be positive"
            )

    @classmethod
    def from_env(cls) -> "SchedulingConfig":
        """Load configuration with DECISION_SCHEDULER_* overrides."""
        overrides = _read_env(SCHEDULER_ENV_PREFIX, {
            "stale_hours": float,
            "expiry_window_days": int,
            "expiry_recheck_hours": float,
            "batch_limit": int,
            "default_deadline_seconds": float,
            "cascade_on_change": _parse_bool,
            "max_dependency_depth": int,
            "lease_timeout_seconds": float,
        })
        if overrides:
            logger.info(f"Scheduler config overrides from environment: {sorted(overrides)}")
        return cls(**overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stale_hours": self.stale_hours,
            "expiry_window_days": self.expiry_window_days,
            "expiry_recheck_hours": self.expiry_recheck_hours,
            "batch_limit": self.batch_limit,
            "default_deadline_seconds": self.default_deadline_seconds,
            "cascade_on_change": self.cascade_on_change,
            "max_dependency_depth": self.max_dependency_depth,
            "lease_timeout_seconds": self.lease_timeout_seconds,
        }


# ============================================================
# MASTER CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class DecisionEvaluationConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)

    @classmethod
    def from_env(cls) -> "DecisionEvaluationConfig":
        return cls(engine=EngineConfig.from_env(), scheduling=SchedulingConfig.from_env())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine": self.engine.to_dict(),
            "scheduling": self.scheduling.to_dict(),
        }


# ============================================================
# PRESETS
# ============================================================


def get_default_config() -> DecisionEvaluationConfig:
    """Return the default configuration."""
    return DecisionEvaluationConfig()


def get_strict_config() -> DecisionEvaluationConfig:
    """
    Earlier warnings and more frequent re-evaluation.

    SHAKY counts as fully BROKEN.
    """
    return DecisionEvaluationConfig(
        engine=EngineConfig(
            invalidation_fraction=0.5,
            shaky_weight=1.0,
            stable_threshold=85,
            under_review_threshold=65,
        ),
        scheduling=SchedulingConfig(
            stale_hours=6.0,
            expiry_recheck_hours=6.0,
        ),
    )


def get_lenient_config() -> DecisionEvaluationConfig:
    """SHAKY assumptions ignored, daily-or-slower sweeps."""
    return DecisionEvaluationConfig(
        engine=EngineConfig(shaky_weight=0.0),
        scheduling=SchedulingConfig(stale_hours=72.0),
    )
