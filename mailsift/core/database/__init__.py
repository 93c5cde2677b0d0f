"""Database models, the Store handle and repositories"""
from .models import (
    Base, SourceAccount, SyncCursor, Email, SenderReputation, SenderCategoryScore,
    DomainReputation, ClassificationFeedback, utcnow,
)
from .connection import Store, with_db_retry
from .repository import AccountRepository, EmailRepository, ensure_row, insert_ignore, sanitize_for_postgres

__all__ = [
    'Base',
    'SourceAccount',
    'SyncCursor',
    'Email',
    'SenderReputation',
    'SenderCategoryScore',
    'DomainReputation',
    'ClassificationFeedback',
    'utcnow',
    'Store',
    'with_db_retry',
    'AccountRepository',
    'EmailRepository',
    'ensure_row',
    'insert_ignore',
    'sanitize_for_postgres',
]
