"""
Decision Review - Package.

HTTP surface and human actions for the decision monitor:
- /decisions router (evaluate, batch, needs-evaluation, history)
- mark-reviewed and retire
"""

from .schemas import (
    TraceEntrySchema,
    EvaluationResultSchema,
    EvaluateResponse,
    NeedsEvaluationResponse,
    BatchEvaluateRequest,
    BatchItemSchema,
    BatchEvaluateResponse,
    EvaluationRecordResponse,
    ReviewActionRequest,
    DecisionStateResponse,
    ReviewActionResponse,
)
from .service import DecisionReviewService, ReviewOutcome
from .router import router, get_scheduler, get_review_service


__all__ = [
    # Schemas
    "TraceEntrySchema",
    "EvaluationResultSchema",
    "EvaluateResponse",
    "NeedsEvaluationResponse",
    "BatchEvaluateRequest",
    "BatchItemSchema",
    "BatchEvaluateResponse",
    "EvaluationRecordResponse",
    "ReviewActionRequest",
    "DecisionStateResponse",
    "ReviewActionResponse",

    # Service
    "DecisionReviewService",
    "ReviewOutcome",

    # Router
    "router",
    "get_scheduler",
    "get_review_service",
]
