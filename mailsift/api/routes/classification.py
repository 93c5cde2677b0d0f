"""
Classification API endpoints
"""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from mailsift.api.auth import verify_api_key
from mailsift.api.deps import get_pipeline
from mailsift.api.schemas import BatchClassifyRequest, BatchClassifyResponse
from mailsift.core.ai.schemas import ClassificationResult
from mailsift.core.pipeline import MailPipeline

router = APIRouter(prefix="/api/classify", tags=["classification"], dependencies=[Depends(verify_api_key)])


# Declared before /{email_id} so "batch" is not parsed as an id
@router.post("/batch", response_model=BatchClassifyResponse)
async def classify_batch(
    request: BatchClassifyRequest,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    """Classify a list of emails, or a user's newest unclassified emails."""
    if request.email_ids:
        result = await pipeline.classify_batch(request.email_ids)
    elif request.user_id:
        result = await pipeline.classify_unclassified(request.user_id, request.limit)
    else:
        raise HTTPException(status_code=400, detail="Provide email_ids or user_id")
    return result.to_dict()


@router.post("/{email_id}", response_model=ClassificationResult)
async def classify_email(
    email_id: UUID,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    """Classify (or re-classify) one email and return the stored result."""
    return await pipeline.classify(email_id)
