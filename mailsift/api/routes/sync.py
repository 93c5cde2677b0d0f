"""
Sync API endpoints

Externally triggered sync runs (cron, UI refresh button). Newly stored
mail is classified right after the run.
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends

from mailsift.api.auth import verify_api_key
from mailsift.api.deps import get_pipeline
from mailsift.api.schemas import SyncRequest
from mailsift.core.pipeline import MailPipeline

router = APIRouter(prefix="/api/sync", tags=["sync"], dependencies=[Depends(verify_api_key)])


@router.post("/accounts/{account_id}")
async def sync_account(
    account_id: UUID,
    request: Optional[SyncRequest] = None,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    """
    Sync one account.

    Returns synced count, state (idle/backoff/disabled), truncated errors
    and the persisted cursor.
    """
    request = request or SyncRequest()
    outcome = await pipeline.trigger_sync(account_id, limit=request.limit, full_sync=request.full_sync)
    return outcome.to_dict()


@router.post("/users/{user_id}")
async def sync_user(
    user_id: str,
    request: Optional[SyncRequest] = None,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    """Sync every active account of a user within the run budget."""
    request = request or SyncRequest()
    outcome = await pipeline.trigger_sync_all(user_id, limit=request.limit, full_sync=request.full_sync)
    return outcome.to_dict()
