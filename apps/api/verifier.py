from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query
from pydantic import AliasChoices, BaseModel, Field

from services.verification.models import ReviewDecision, ReviewPriority, ReviewStatus
from services.verification.review_queue import ReviewQueue


class VerifierBody(BaseModel):
    verifier_id: str = Field(min_length=1, validation_alias=AliasChoices("verifierId", "verifier_id"))


class DecisionBody(VerifierBody):
    decision: ReviewDecision
    comments: Optional[str] = None
    confidence_override: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, validation_alias=AliasChoices("confidenceOverride", "confidence_override")
    )


def create_verifier_router(*, review_queue: ReviewQueue) -> APIRouter:
    router = APIRouter(prefix="/verifier")

    @router.get("/queue")
    def get_queue(
        status: Optional[ReviewStatus] = Query(None),
        priority: Optional[ReviewPriority] = Query(None),
        assigned_to: Optional[str] = Query(None, alias="assignedTo"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
    ):
        items, total = review_queue.list(
            status=status, priority=priority, assigned_to=assigned_to, page=page, limit=limit
        )
        return {
            "reviews": [r.to_dict() for r in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        }

    @router.post("/next")
    def next_review(body: VerifierBody):
        review = review_queue.next_review(body.verifier_id)
        return {"review": review.to_dict() if review else None}

    @router.get("/reviews/{review_id}")
    def get_review(review_id: str):
        return review_queue.get(review_id).to_dict()

    @router.post("/reviews/{review_id}/assign")
    def assign_review(review_id: str, body: VerifierBody):
        return review_queue.assign(review_id, body.verifier_id).to_dict()

    @router.post("/reviews/{review_id}/start")
    def start_review(review_id: str, body: VerifierBody):
        return review_queue.start_review(review_id, body.verifier_id).to_dict()

    @router.post("/reviews/{review_id}/submit")
    def submit_review(review_id: str, body: DecisionBody):
        review = review_queue.submit_decision(
            review_id,
            body.verifier_id,
            body.decision,
            comments=body.comments,
            confidence_override=body.confidence_override,
        )
        return review.to_dict()

    return router
