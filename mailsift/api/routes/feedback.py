"""
Feedback API endpoints

POST /api/feedback/{email_id} - Record a user correction
GET /api/feedback/accuracy/{user_id} - Accuracy by category
GET /api/feedback/rules/{user_id} - Learned rule suggestions
"""
from uuid import UUID

from fastapi import APIRouter, Depends

from mailsift.api.auth import verify_api_key
from mailsift.api.deps import get_pipeline
from mailsift.api.schemas import FeedbackRequest, FeedbackResponse
from mailsift.core.pipeline import MailPipeline

router = APIRouter(prefix="/api/feedback", tags=["feedback"], dependencies=[Depends(verify_api_key)])


@router.get("/accuracy/{user_id}")
def get_accuracy(user_id: str, pipeline: MailPipeline = Depends(get_pipeline)):
    categories = pipeline.accuracy(user_id)
    return {
        'user_id': user_id,
        'total_feedback': sum(s['total'] - s['correct'] for s in categories.values()),
        'categories': categories,
    }


@router.get("/rules/{user_id}")
def get_learned_rules(user_id: str, pipeline: MailPipeline = Depends(get_pipeline)):
    return pipeline.learned_rules(user_id).to_dict()


@router.post("/{email_id}", response_model=FeedbackResponse)
def submit_feedback(
    email_id: UUID,
    request: FeedbackRequest,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    """
    Correct the category of an email.

    Only acts when the category actually changes; a correction into or
    out of spam also moves the sender's trust flag.
    """
    outcome = pipeline.submit_feedback(
        email_id,
        request.corrected_category.value,
        request.original_category.value if request.original_category else None,
    )
    return outcome.to_dict()
