"""
FastAPI Router for Decision Evaluation Endpoints.

Provides REST API for:
- Evaluating one decision or a batch
- Checking whether a decision needs evaluation
- Reading the evaluation audit trail
- Human review actions (mark reviewed, retire)
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from core.exceptions import (
    ConcurrentEvaluationError,
    DecisionMonitorException,
    DecisionNotFoundError,
    DependencyCycleError,
    EvaluationLeaseTimeout,
    InputAssemblyError,
    LifecycleTransitionError,
    PersistenceError,
)
from database.engine import get_session_factory
from decision_evaluation.scheduler import EvaluationScheduler
from decision_evaluation.types import DecisionSnapshot, EvaluationReason, EvaluationResult
from decision_review.schemas import (
    BatchEvaluateRequest,
    BatchEvaluateResponse,
    BatchItemSchema,
    DecisionStateResponse,
    EvaluateResponse,
    EvaluationRecordResponse,
    EvaluationResultSchema,
    NeedsEvaluationResponse,
    ReviewActionRequest,
    ReviewActionResponse,
)
from decision_review.service import DecisionReviewService, ReviewOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/decisions", tags=["Decision Evaluation"])

_scheduler: Optional[EvaluationScheduler] = None


# =============================================================
# HELPER: Service instances
# =============================================================

def get_scheduler() -> EvaluationScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = EvaluationScheduler(get_session_factory())
    return _scheduler


def get_review_service(scheduler: EvaluationScheduler = Depends(get_scheduler)) -> DecisionReviewService:
    return DecisionReviewService(scheduler)


# =============================================================
# HELPER: Error mapping
# =============================================================

def to_http_exception(error: DecisionMonitorException) -> HTTPException:
    """Map a monitor exception to an HTTP status."""
    if isinstance(error, DecisionNotFoundError):
        status_code = 404
    elif isinstance(error, (LifecycleTransitionError, ConcurrentEvaluationError, EvaluationLeaseTimeout)):
        status_code = 409
    elif isinstance(error, (InputAssemblyError, DependencyCycleError)):
        status_code = 422
    elif isinstance(error, PersistenceError):
        status_code = 503
    else:
        status_code = 500

    if status_code >= 500:
        logger.error(error.to_log_format())
    return HTTPException(status_code=status_code, detail=error.message)


def _result_schema(result: Optional[EvaluationResult]) -> Optional[EvaluationResultSchema]:
    if result is None:
        return None
    return EvaluationResultSchema.model_validate(result.to_dict())


def _state_schema(snapshot: DecisionSnapshot) -> DecisionStateResponse:
    return DecisionStateResponse(
        id=snapshot.id,
        title=snapshot.title,
        lifecycle=snapshot.lifecycle.value,
        health_signal=snapshot.health_signal,
        invalidated_reason=snapshot.invalidated_reason.value if snapshot.invalidated_reason else None,
        created_at=snapshot.created_at,
        last_reviewed_at=snapshot.last_reviewed_at,
        expiry_date=snapshot.expiry_date,
        last_evaluated_at=snapshot.last_evaluated_at,
        needs_evaluation=snapshot.needs_evaluation,
        version=snapshot.version,
    )


def _review_response(outcome: ReviewOutcome) -> ReviewActionResponse:
    return ReviewActionResponse(
        decision=_state_schema(outcome.decision),
        evaluation=_result_schema(outcome.evaluation),
        dependents_marked=outcome.dependents_marked,
    )


# =============================================================
# EVALUATION ENDPOINTS
# =============================================================

@router.post("/evaluate-batch", response_model=BatchEvaluateResponse)
def evaluate_batch(
    request: BatchEvaluateRequest,
    scheduler: EvaluationScheduler = Depends(get_scheduler),
):
    """
    Evaluate several decisions.

    Per-item failures are reported in the response, not raised.
    Without `decision_ids` the current candidate set is used.
    """
    try:
        batch = scheduler.evaluate_batch(
            decision_ids=request.decision_ids,
            force=request.force,
            deadline_seconds=request.deadline_seconds,
            max_items=request.max_items,
        )
    except DecisionMonitorException as e:
        raise to_http_exception(e)

    return BatchEvaluateResponse(
        evaluated=batch.evaluated,
        skipped=batch.skipped,
        failed=batch.failed,
        truncated=batch.truncated,
        not_attempted=batch.not_attempted,
        results=[
            BatchItemSchema(
                decision_id=item.decision_id,
                status=item.status.value,
                reason=item.reason.value if item.reason else None,
                error=item.error,
                result=_result_schema(item.result),
            )
            for item in batch.results
        ],
    )


@router.post("/{decision_id}/evaluate", response_model=EvaluateResponse)
def evaluate_decision(
    decision_id: str,
    force: bool = Query(False, description="Evaluate even when fresh"),
    scheduler: EvaluationScheduler = Depends(get_scheduler),
):
    """Evaluate one decision if it needs it (or always, with `force`)."""
    try:
        result = scheduler.evaluate_if_needed(decision_id, force=force)
    except DecisionMonitorException as e:
        raise to_http_exception(e)

    return EvaluateResponse(
        decision_id=decision_id,
        evaluated=result is not None,
        result=_result_schema(result),
    )


@router.get("/{decision_id}/needs-evaluation", response_model=NeedsEvaluationResponse)
def needs_evaluation(
    decision_id: str,
    stale_hours: Optional[float] = Query(None, gt=0),
    scheduler: EvaluationScheduler = Depends(get_scheduler),
):
    try:
        check = scheduler.needs_evaluation(decision_id, stale_hours=stale_hours)
    except DecisionMonitorException as e:
        raise to_http_exception(e)
    if check.reason == EvaluationReason.DECISION_NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Decision not found: {decision_id}")
    return NeedsEvaluationResponse(**check.to_dict())


@router.get("/{decision_id}/evaluations", response_model=List[EvaluationRecordResponse])
def get_evaluation_history(
    decision_id: str,
    limit: int = Query(50, ge=1, le=500),
    service: DecisionReviewService = Depends(get_review_service),
):
    """Audit trail for a decision, newest first."""
    try:
        records = service.get_evaluation_history(decision_id, limit=limit)
    except DecisionMonitorException as e:
        raise to_http_exception(e)
    return [EvaluationRecordResponse.model_validate(record) for record in records]


@router.get("/{decision_id}", response_model=DecisionStateResponse)
def get_decision_state(
    decision_id: str,
    service: DecisionReviewService = Depends(get_review_service),
):
    try:
        return _state_schema(service.get_decision_state(decision_id))
    except DecisionMonitorException as e:
        raise to_http_exception(e)


# =============================================================
# REVIEW ACTION ENDPOINTS
# =============================================================

@router.put("/{decision_id}/mark-reviewed", response_model=ReviewActionResponse)
def mark_reviewed(
    decision_id: str,
    request: Optional[ReviewActionRequest] = Body(None),
    service: DecisionReviewService = Depends(get_review_service),
):
    """
    Record a human review.

    Resets review decay and re-evaluates immediately. Rejected
    with 409 for RETIRED decisions and those past the retirement
    grace period.
    """
    request = request or ReviewActionRequest()
    try:
        outcome = service.mark_reviewed(decision_id, reviewer=request.reviewer, comment=request.comment)
    except DecisionMonitorException as e:
        raise to_http_exception(e)
    return _review_response(outcome)


@router.put("/{decision_id}/retire", response_model=ReviewActionResponse)
def retire_decision(
    decision_id: str,
    request: Optional[ReviewActionRequest] = Body(None),
    service: DecisionReviewService = Depends(get_review_service),
):
    request = request or ReviewActionRequest()
    try:
        outcome = service.retire(decision_id, reviewer=request.reviewer, comment=request.comment)
    except DecisionMonitorException as e:
        raise to_http_exception(e)
    return _review_response(outcome)
