"""
Pydantic Schemas for the Decision Evaluation API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================
# EVALUATION SCHEMAS
# =============================================================

class TraceEntrySchema(BaseModel):
    """One engine step."""
    step: str
    outcome: str
    details: str
    health_after: int
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EvaluationResultSchema(BaseModel):
    """Engine output as returned to API clients."""
    decision_id: str
    previous_lifecycle: str
    previous_health_signal: int
    new_lifecycle: str
    new_health_signal: int
    invalidated_reason: Optional[str] = None
    changes_detected: bool
    evaluated_at: datetime
    engine_version: str
    trace: List[TraceEntrySchema]


class EvaluateResponse(BaseModel):
    decision_id: str
    evaluated: bool
    result: Optional[EvaluationResultSchema] = None


class NeedsEvaluationResponse(BaseModel):
    decision_id: str
    needs_evaluation: bool
    reason: str


# =============================================================
# BATCH SCHEMAS
# =============================================================

class BatchEvaluateRequest(BaseModel):
    """Omit `decision_ids` to evaluate the current candidate set."""
    decision_ids: Optional[List[str]] = None
    force: bool = False
    deadline_seconds: Optional[float] = Field(None, gt=0)
    max_items: Optional[int] = Field(None, ge=1)


class BatchItemSchema(BaseModel):
    decision_id: str
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None
    result: Optional[EvaluationResultSchema] = None


class BatchEvaluateResponse(BaseModel):
    evaluated: int
    skipped: int
    failed: int
    truncated: bool
    not_attempted: List[str] = Field(default_factory=list)
    results: List[BatchItemSchema]


# =============================================================
# HISTORY SCHEMAS
# =============================================================

class EvaluationRecordResponse(BaseModel):
    """Immutable audit row."""
    id: str
    decision_id: str
    evaluated_at: datetime
    previous_lifecycle: str
    new_lifecycle: str
    previous_health: int
    new_health: int
    invalidated_reason: Optional[str] = None
    changes_detected: bool
    trigger_reason: Optional[str] = None
    engine_version: str
    trace: List[Dict[str, Any]]

    class Config:
        from_attributes = True


# =============================================================
# REVIEW ACTION SCHEMAS
# =============================================================

class ReviewActionRequest(BaseModel):
    """Optional attribution for mark-reviewed / retire."""
    reviewer: Optional[str] = None
    comment: Optional[str] = Field(None, max_length=2000)


class DecisionStateResponse(BaseModel):
    id: str
    title: str
    lifecycle: str
    health_signal: int
    invalidated_reason: Optional[str] = None
    created_at: datetime
    last_reviewed_at: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None
    needs_evaluation: bool
    version: int


class ReviewActionResponse(BaseModel):
    decision: DecisionStateResponse
    evaluation: Optional[EvaluationResultSchema] = None
    dependents_marked: int = 0
