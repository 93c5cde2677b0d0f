"""
Source account API endpoints
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from mailsift.api.auth import verify_api_key
from mailsift.api.deps import get_pipeline
from mailsift.api.schemas import AccountCreate, AccountReactivate, AccountResponse
from mailsift.core.pipeline import MailPipeline
from mailsift.core.sync import AccountView

router = APIRouter(prefix="/api/accounts", tags=["accounts"], dependencies=[Depends(verify_api_key)])


def _response(account: AccountView) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        user_id=account.user_id,
        email_address=account.email_address,
        provider=account.provider,
        auth_type=account.auth_type,
        folder=account.folder,
        is_active=account.is_active,
    )


@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def link_account(request: AccountCreate, pipeline: MailPipeline = Depends(get_pipeline)):
    if request.provider == "imap" and not request.imap_host:
        raise HTTPException(status_code=400, detail="imap_host is required for IMAP accounts")
    account = pipeline.link_account(
        request.user_id,
        str(request.email_address),
        request.provider,
        request.credentials,
        auth_type="oauth2" if request.provider == "gmail" else request.auth_type,
        imap_host=request.imap_host,
        imap_port=request.imap_port,
        imap_use_ssl=request.imap_use_ssl,
        folder=request.folder,
    )
    return _response(account)


@router.post("/{account_id}/reactivate", response_model=AccountResponse)
def reactivate_account(
    account_id: UUID,
    request: Optional[AccountReactivate] = None,
    pipeline: MailPipeline = Depends(get_pipeline),
):
    """Re-enable an account disabled after an authentication failure."""
    credentials = request.credentials if request else None
    return _response(pipeline.reactivate_account(account_id, credentials))
