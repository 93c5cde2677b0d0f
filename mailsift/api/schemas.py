"""
Pydantic request/response models for the API.
"""
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from mailsift.core.ai.schemas import Category


class SyncRequest(BaseModel):
    """Options for a sync run"""
    limit: Optional[int] = Field(None, ge=1, description="Messages per account (clamped to the configured maximum)")
    full_sync: bool = Field(False, description="Ignore the cursor and the recent-sync guard")


class BatchClassifyRequest(BaseModel):
    """Classify the given emails, or the newest unclassified emails of a user"""
    email_ids: List[UUID] = Field(default_factory=list)
    user_id: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1)


class BatchClassifyResponse(BaseModel):
    classified: int
    failed: int
    errors: List[str]
    remaining: int


class FeedbackRequest(BaseModel):
    corrected_category: Category
    original_category: Optional[Category] = Field(None, description="Defaults to the stored category")


class FeedbackResponse(BaseModel):
    recorded: bool
    original_category: Optional[str] = None
    corrected_category: Optional[str] = None
    trust_change: Optional[str] = None


class ReputationEventRequest(BaseModel):
    sender: EmailStr
    event: Literal["received", "opened", "replied", "archived", "deleted", "spam"]
    category: Optional[Category] = None


class DomainListRequest(BaseModel):
    flag: Literal["whitelist", "blacklist", "clear"]


class RebuildRequest(BaseModel):
    resume_after: Optional[str] = Field(None, description="Token returned by an incomplete rebuild")


class ReputationResponse(BaseModel):
    kind: str
    key: str
    trust_level: str
    confidence: float
    score: int
    counters: Dict[str, int]
    primary_category: Optional[str] = None
    override: Optional[str] = None
    is_whitelisted: bool = False
    is_blacklisted: bool = False
    known: bool = False


class RebuildResponse(BaseModel):
    processed: int
    updated: int
    errors: List[str]
    resume_after: Optional[str] = None
    complete: bool


class AccountCreate(BaseModel):
    """Link a mailbox. Credentials are encrypted before they are stored."""
    user_id: str = Field(..., min_length=1)
    email_address: EmailStr
    provider: Literal["imap", "gmail"]
    auth_type: Literal["password", "oauth2"] = "password"
    imap_host: Optional[str] = None
    imap_port: int = 993
    imap_use_ssl: bool = True
    folder: str = "INBOX"
    credentials: Dict[str, Any] = Field(..., description="{username, password} or {access_token, refresh_token, expires_at}")


class AccountReactivate(BaseModel):
    credentials: Optional[Dict[str, Any]] = None


class AccountResponse(BaseModel):
    id: UUID
    user_id: str
    email_address: str
    provider: str
    auth_type: str
    folder: str
    is_active: bool


class EmailBodyResponse(BaseModel):
    email_id: UUID
    text: Optional[str] = None
    html: Optional[str] = None
