"""
Reputation API endpoints

Sender/domain trust lookup, behavior events from the tracker, admin
domain lists and the resumable rebuild.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from mailsift.api.auth import verify_api_key
from mailsift.api.deps import get_pipeline
from mailsift.api.schemas import (
    DomainListRequest,
    RebuildRequest,
    RebuildResponse,
    ReputationEventRequest,
    ReputationResponse,
)
from mailsift.core.pipeline import MailPipeline

router = APIRouter(prefix="/api/reputation", tags=["reputation"], dependencies=[Depends(verify_api_key)])


@router.post("/{user_id}/events", response_model=ReputationResponse)
def record_event(
    user_id: str,
    request: ReputationEventRequest,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    snapshot = pipeline.record_event(
        user_id,
        str(request.sender),
        request.event,
        category=request.category.value if request.category else None,
    )
    return snapshot.to_dict()


@router.post("/{user_id}/rebuild", response_model=RebuildResponse)
def rebuild(
    user_id: str,
    request: Optional[RebuildRequest] = None,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    """Recompute derived reputation; call again with resume_after until complete."""
    resume_after = request.resume_after if request else None
    return pipeline.rebuild_reputation(user_id, resume_after=resume_after).to_dict()


@router.post("/{user_id}/domains/{domain}", response_model=ReputationResponse)
def set_domain_list(
    user_id: str,
    domain: str,
    request: DomainListRequest,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    return pipeline.set_domain_list(user_id, domain, request.flag).to_dict()


@router.get("/{user_id}/{key}", response_model=ReputationResponse)
def get_reputation(
    user_id: str,
    key: str,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    """Reputation of a sender address or a domain (unknown keys are neutral)."""
    return pipeline.get_reputation(user_id, key).to_dict()
