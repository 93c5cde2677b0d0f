"""
Database Repository - High-level database operations for the pipeline.

Repositories wrap one SQLAlchemy session; the caller owns the transaction
(see Store.session()).
"""
from typing import Dict, List, Optional
import uuid
import logging

from sqlalchemy import select, update, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailsift.core.errors import AccountNotFoundError, EmailNotFoundError
from mailsift.core.providers.base import BodyContent, RawMessage
from .models import Email, SourceAccount, SyncCursor, utcnow

logger = logging.getLogger(__name__)


def sanitize_for_postgres(text: Optional[str], field_name: str = "text", max_length: Optional[int] = None) -> Optional[str]:
    """
    Remove NUL bytes and surrogate characters; optionally truncate.

    PostgreSQL text fields cannot contain NUL (0x00) characters and some
    mail (corrupted or binary content) carries them.
    """
    if text is None:
        return None

    if '\x00' in text:
        logger.debug(f"Sanitized {text.count(chr(0))} NUL byte(s) from {field_name}")
    sanitized = text.replace('\x00', '')

    try:
        sanitized.encode('utf-8', errors='strict')
    except UnicodeEncodeError:
        sanitized = sanitized.encode('utf-8', errors='replace').decode('utf-8', errors='replace')
        logger.debug(f"Removed surrogate characters from {field_name}")

    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized


def insert_ignore(db: Session, table):
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect (None if unsupported)."""
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        return postgresql.insert(table).on_conflict_do_nothing()
    if dialect == 'sqlite':
        return sqlite.insert(table).on_conflict_do_nothing()
    return None


def ensure_row(db: Session, model, values: Dict, keys: Dict):
    """Insert values unless a row matching keys exists (concurrency safe)."""
    statement = insert_ignore(db, model.__table__)
    if statement is not None:
        db.execute(statement.values(**values))
        return

    if db.execute(select(model.__table__).filter_by(**keys).limit(1)).first() is not None:
        return
    try:
        with db.begin_nested():
            db.execute(model.__table__.insert().values(**values))
    except IntegrityError:
        logger.debug(f"{model.__tablename__} row {keys} created concurrently")


class AccountRepository:
    """Source accounts and their sync cursors."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, account_id) -> SourceAccount:
        account = self.db.get(SourceAccount, _as_uuid(account_id))
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def list_for_user(self, user_id: str, active_only: bool = True) -> List[SourceAccount]:
        query = select(SourceAccount).where(SourceAccount.user_id == user_id)
        if active_only:
            query = query.where(SourceAccount.is_active.is_(True))
        return list(self.db.scalars(query.order_by(SourceAccount.created_at)))

    def create(self, user_id: str, email_address: str, provider: str, credentials_blob: str,
               **fields) -> SourceAccount:
        account = SourceAccount(
            user_id=user_id,
            email_address=email_address.lower().strip(),
            provider=provider,
            credentials=credentials_blob,
            **fields,
        )
        self.db.add(account)
        self.db.flush()
        self.db.add(SyncCursor(account_id=account.id, position=0))
        self.db.flush()
        logger.info(f"Linked {provider} account {account.id} for user {user_id}")
        return account

    def get_cursor(self, account_id) -> SyncCursor:
        account_id = _as_uuid(account_id)
        cursor = self.db.get(SyncCursor, account_id)
        if cursor is None:
            cursor = SyncCursor(account_id=account_id, position=0)
            self.db.add(cursor)
            self.db.flush()
        return cursor

    def advance_cursor(self, account_id, position: int, uid_validity: Optional[int] = None) -> int:
        """
        Move the cursor forward to position; never moves it backwards.

        Returns:
            The persisted position after the update
        """
        cursor = self.get_cursor(account_id)
        self.db.execute(
            update(SyncCursor)
            .where(SyncCursor.account_id == cursor.account_id, SyncCursor.position < position)
            .values(position=position, updated_at=utcnow())
        )
        if uid_validity is not None:
            self.db.execute(
                update(SyncCursor)
                .where(SyncCursor.account_id == cursor.account_id)
                .values(uid_validity=uid_validity)
            )
        self.db.flush()
        self.db.refresh(cursor)
        return cursor.position

    def record_success(self, account_id, synced: int):
        self.db.execute(
            update(SourceAccount)
            .where(SourceAccount.id == _as_uuid(account_id))
            .values(
                last_sync_at=utcnow(),
                last_error=None,
                total_emails_synced=SourceAccount.total_emails_synced + synced,
            )
        )

    def record_error(self, account_id, message: str):
        self.db.execute(
            update(SourceAccount)
            .where(SourceAccount.id == _as_uuid(account_id))
            .values(last_error=message[:1000])
        )

    def disable(self, account_id, message: str):
        self.db.execute(
            update(SourceAccount)
            .where(SourceAccount.id == _as_uuid(account_id))
            .values(is_active=False, last_error=message[:1000])
        )
        logger.error(f"Account {account_id} disabled: {message}")

    def reactivate(self, account_id, credentials_blob: Optional[str] = None):
        values = {'is_active': True, 'last_error': None}
        if credentials_blob:
            values['credentials'] = credentials_blob
        self.db.execute(
            update(SourceAccount).where(SourceAccount.id == _as_uuid(account_id)).values(**values)
        )

    def update_credentials(self, account_id, credentials_blob: str):
        self.db.execute(
            update(SourceAccount)
            .where(SourceAccount.id == _as_uuid(account_id))
            .values(credentials=credentials_blob)
        )


class EmailRepository:
    """
    Repository pattern for email rows.
    Insertion is idempotent on (account_id, provider_message_id).
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, email_id) -> Email:
        email = self.db.get(Email, _as_uuid(email_id))
        if email is None:
            raise EmailNotFoundError(f"Email {email_id} not found")
        return email

    def _row_for(self, user_id: str, account_id, message: RawMessage) -> Dict:
        return {
            'id': uuid.uuid4(),
            'user_id': user_id,
            'account_id': _as_uuid(account_id),
            'provider_message_id': sanitize_for_postgres(message.provider_message_id, 'message_id', 500),
            'provider_uid': message.provider_uid,
            'thread_id': message.thread_id,
            'direction': message.direction,
            'from_address': sanitize_for_postgres(message.from_address or '', 'from_address', 500),
            'from_name': sanitize_for_postgres(message.from_name, 'from_name', 500),
            'to_address': sanitize_for_postgres(message.to_address, 'to_address'),
            'subject': sanitize_for_postgres(message.subject, 'subject'),
            'snippet': sanitize_for_postgres(message.snippet, 'snippet'),
            'received_at': message.received_at,
            'list_unsubscribe': sanitize_for_postgres(message.list_unsubscribe, 'list_unsubscribe'),
            'has_attachments': message.has_attachments,
            'labels': list(message.labels or []),
            'body_fetched': message.body_fetched,
            'body_text': sanitize_for_postgres(message.body_text, 'body_text'),
            'body_html': sanitize_for_postgres(message.body_html, 'body_html'),
            'is_read': message.is_read,
            'is_starred': message.is_starred,
            'is_archived': False,
            'is_deleted': False,
            'needs_reply': False,
            'created_at': utcnow(),
            'updated_at': utcnow(),
        }

    def insert_new(self, user_id: str, account_id, messages: List[RawMessage]) -> List[uuid.UUID]:
        """
        Insert messages that are not stored yet.

        Returns:
            Ids of the rows actually inserted (duplicates are skipped)
        """
        if not messages:
            return []

        rows = [self._row_for(user_id, account_id, m) for m in messages]
        statement = insert_ignore(self.db, Email.__table__)
        if statement is not None:
            self.db.execute(statement, rows)
            candidate_ids = [row['id'] for row in rows]
            inserted = set(self.db.scalars(select(Email.id).where(Email.id.in_(candidate_ids))))
            return [row['id'] for row in rows if row['id'] in inserted]

        # Generic dialects: one savepoint per row
        inserted_ids = []
        for row in rows:
            try:
                with self.db.begin_nested():
                    self.db.execute(Email.__table__.insert().values(**row))
                inserted_ids.append(row['id'])
            except IntegrityError:
                logger.debug(f"Skipping duplicate message {row['provider_message_id']}")
        return inserted_ids

    def count_for_account(self, account_id) -> int:
        return self.db.scalar(
            select(func.count()).select_from(Email).where(Email.account_id == _as_uuid(account_id))
        ) or 0

    def store_body(self, email_id, body: BodyContent):
        self.db.execute(
            update(Email)
            .where(Email.id == _as_uuid(email_id))
            .values(
                body_text=sanitize_for_postgres(body.text, 'body_text'),
                body_html=sanitize_for_postgres(body.html, 'body_html'),
                body_fetched=True,
            )
        )

    def apply_classification(self, email_id, fields: Dict):
        """Overwrite classification fields (re-classifying replaces, never appends)."""
        self.db.execute(
            update(Email)
            .where(Email.id == _as_uuid(email_id))
            .values(classified_at=utcnow(), **fields)
        )

    def list_unclassified(self, user_id: str, limit: int) -> List[uuid.UUID]:
        query = (
            select(Email.id)
            .where(
                Email.user_id == user_id,
                Email.category.is_(None),
                Email.is_deleted.is_(False),
            )
            .order_by(Email.received_at.desc())
            .limit(limit)
        )
        return list(self.db.scalars(query))

    def count_unclassified(self, user_id: str) -> int:
        return self.db.scalar(
            select(func.count()).select_from(Email).where(
                Email.user_id == user_id,
                Email.category.is_(None),
                Email.is_deleted.is_(False),
            )
        ) or 0


def _as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise AccountNotFoundError(f"Invalid id: {value}") from e
