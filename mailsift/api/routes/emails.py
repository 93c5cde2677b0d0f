"""
Email API endpoints
"""
from uuid import UUID

from fastapi import APIRouter, Depends

from mailsift.api.auth import verify_api_key
from mailsift.api.deps import get_pipeline
from mailsift.api.schemas import EmailBodyResponse
from mailsift.core.pipeline import MailPipeline

router = APIRouter(prefix="/api/emails", tags=["emails"], dependencies=[Depends(verify_api_key)])


@router.get("/{email_id}/body", response_model=EmailBodyResponse)
async def get_email_body(email_id: UUID, pipeline: MailPipeline = Depends(get_pipeline)):
    """Body of an email, fetched from the provider on first access."""
    body = await pipeline.get_body(email_id)
    return EmailBodyResponse(email_id=email_id, text=body.text, html=body.html)
