"""
SQLAlchemy Database Models

Stores:
- Source accounts (encrypted credential blob, sync status)
- Sync cursors (per-account position, monotone)
- Emails (headers, lazily fetched bodies, classification fields)
- Sender and domain reputation (atomic counters, derived confidence)
- Classification feedback (append-only correction log)

Credentials are encrypted by the CredentialVault before they reach the
`credentials` column; the database never sees plaintext secrets.
Models are dialect-agnostic: PostgreSQL in production, SQLite in tests.
"""
from sqlalchemy import (
    Column, String, Integer, BigInteger, Float, Boolean, DateTime, Text, JSON, ForeignKey, Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store UTC without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SourceAccount(Base):
    """
    One linked external mailbox.

    Deactivated (is_active=False) on unrecoverable auth failure, never
    hard-deleted while emails reference it.
    """
    __tablename__ = "source_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(100), nullable=False, index=True)
    email_address = Column(String(500), nullable=False)
    display_name = Column(String(200))

    # Protocol: "imap" (stateful session) or "gmail" (token REST)
    provider = Column(String(20), nullable=False, default="imap")
    # "password" or "oauth2" (XOAUTH2 for IMAP, bearer token for Gmail)
    auth_type = Column(String(20), nullable=False, default="password")

    # IMAP connection (unused for Gmail)
    imap_host = Column(String(300))
    imap_port = Column(Integer, default=993)
    imap_use_ssl = Column(Boolean, default=True)
    folder = Column(String(200), nullable=False, default="INBOX")

    # Vault ciphertext (JSON dict of secrets)
    credentials = Column(Text, nullable=False)

    # Status
    is_active = Column(Boolean, nullable=False, default=True)
    last_error = Column(Text)
    last_sync_at = Column(DateTime)
    total_emails_synced = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    cursor = relationship("SyncCursor", back_populates="account", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_source_accounts_user_address', 'user_id', 'email_address', unique=True),
    )

    @property
    def domain(self) -> str:
        return self.email_address.lower().rsplit('@', 1)[-1] if '@' in (self.email_address or '') else ''


class SyncCursor(Base):
    """
    Per-account sync position.

    position is the highest IMAP UID seen, or the newest Gmail
    internalDate (ms). It never decreases and is only advanced after the
    corresponding batch is durably persisted.
    """
    __tablename__ = "sync_cursors"

    account_id = Column(UUID(as_uuid=True), ForeignKey('source_accounts.id'), primary_key=True)
    position = Column(BigInteger, nullable=False, default=0)
    uid_validity = Column(BigInteger)  # IMAP UIDVALIDITY last seen
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("SourceAccount", back_populates="cursor")


class Email(Base):
    """
    One ingested message.

    Uniqueness: (account_id, provider_message_id) - re-sync never creates
    a duplicate row.
    """
    __tablename__ = "emails"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(100), nullable=False, index=True)
    account_id = Column(UUID(as_uuid=True), ForeignKey('source_accounts.id'), nullable=False)

    # Provider identity
    provider_message_id = Column(String(500), nullable=False)  # Message-ID header or Gmail message id
    provider_uid = Column(String(100))  # IMAP UID / Gmail id, used for body fetch and flag changes
    thread_id = Column(String(500))
    direction = Column(String(10), nullable=False, default="inbound")  # inbound/outbound

    # Headers
    from_address = Column(String(500), nullable=False, default="", index=True)
    from_name = Column(String(500))
    to_address = Column(Text)
    subject = Column(Text)
    snippet = Column(Text)
    received_at = Column(DateTime, index=True)
    list_unsubscribe = Column(Text)
    has_attachments = Column(Boolean, default=False)
    labels = Column(JSON, default=list)

    # Body (lazily materialized)
    body_fetched = Column(Boolean, nullable=False, default=False)
    body_text = Column(Text)
    body_html = Column(Text)

    # Flags
    is_read = Column(Boolean, default=False)
    is_starred = Column(Boolean, default=False)
    is_archived = Column(Boolean, default=False)
    is_deleted = Column(Boolean, default=False)

    # Classification (written only by the classification engine and feedback corrections)
    priority = Column(Integer)  # 1-5
    category = Column(String(30), index=True)
    confidence = Column(Float)
    summary = Column(Text)
    deadline = Column(DateTime)
    needs_reply = Column(Boolean, default=False)
    suggested_action = Column(String(20))
    classification_source = Column(String(20))  # model/prefilter/reputation/fallback/user
    ai_suggestions = Column(JSON)  # list of feature-tagged suggestion payloads
    classified_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_emails_account_message_id', 'account_id', 'provider_message_id', unique=True),
        Index('ix_emails_user_category', 'user_id', 'category'),
    )

    @property
    def sender_domain(self) -> str:
        address = (self.from_address or '').lower()
        return address.rsplit('@', 1)[-1] if '@' in address else ''


class SenderReputation(Base):
    """
    Per (user, sender) engagement counters and derived confidence.
    Counters only change through atomic increments.
    """
    __tablename__ = "sender_reputation"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), nullable=False)
    sender_email = Column(String(500), nullable=False)
    sender_domain = Column(String(300), index=True)

    received_count = Column(Integer, nullable=False, default=0)
    opened_count = Column(Integer, nullable=False, default=0)
    replied_count = Column(Integer, nullable=False, default=0)
    archived_count = Column(Integer, nullable=False, default=0)
    deleted_count = Column(Integer, nullable=False, default=0)
    spam_count = Column(Integer, nullable=False, default=0)
    # Emails seen by the classifier or corrected by the user
    observed_count = Column(Integer, nullable=False, default=0)
    user_overrides = Column(Integer, nullable=False, default=0)

    # Manual override set by feedback: "trusted" / "untrusted" / None
    override = Column(String(20))

    # Derived (recomputed from counters, last write wins)
    confidence = Column(Float, nullable=False, default=0.0)
    primary_category = Column(String(30))

    last_seen_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_sender_reputation_user_sender', 'user_id', 'sender_email', unique=True),
    )


class SenderCategoryScore(Base):
    """Category evidence for one sender (model classifications weigh 1, corrections more)."""
    __tablename__ = "sender_category_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), nullable=False)
    sender_email = Column(String(500), nullable=False)
    category = Column(String(30), nullable=False)
    score = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index('ix_sender_category_scores_key', 'user_id', 'sender_email', 'category', unique=True),
    )


class DomainReputation(Base):
    """
    Per (user, domain) counters; used when sender-level history is thin.
    reputation_score is 0-100 (whitelist pins 90, blacklist pins 0).
    """
    __tablename__ = "domain_reputation"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), nullable=False)
    domain = Column(String(300), nullable=False)

    received_count = Column(Integer, nullable=False, default=0)
    opened_count = Column(Integer, nullable=False, default=0)
    replied_count = Column(Integer, nullable=False, default=0)
    archived_count = Column(Integer, nullable=False, default=0)
    deleted_count = Column(Integer, nullable=False, default=0)
    spam_count = Column(Integer, nullable=False, default=0)
    observed_count = Column(Integer, nullable=False, default=0)

    reputation_score = Column(Integer, nullable=False, default=50)
    is_whitelisted = Column(Boolean, nullable=False, default=False)
    is_blacklisted = Column(Boolean, nullable=False, default=False)

    confidence = Column(Float, nullable=False, default=0.0)
    primary_category = Column(String(30))

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_domain_reputation_user_domain', 'user_id', 'domain', unique=True),
    )


class ClassificationFeedback(Base):
    """Immutable log of user corrections. Rows are appended, never updated."""
    __tablename__ = "classification_feedback"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(100), nullable=False, index=True)
    email_id = Column(UUID(as_uuid=True), ForeignKey('emails.id'), nullable=False)
    sender_email = Column(String(500))
    sender_domain = Column(String(300))
    subject = Column(Text)
    original_category = Column(String(30), nullable=False)
    corrected_category = Column(String(30), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_feedback_user_original', 'user_id', 'original_category'),
    )
