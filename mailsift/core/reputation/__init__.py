"""Sender and domain reputation"""
from .scoring import (
    ReputationWeights,
    compute_confidence,
    primary_category,
    engagement_score,
    domain_score,
    trust_level_for_score,
    sender_trust_level,
)
from .store import (
    ReputationStore,
    ReputationSnapshot,
    ReputationContext,
    RebuildResult,
    EVENT_KINDS,
    DOMAIN_FLAGS,
)

__all__ = [
    'ReputationWeights',
    'compute_confidence',
    'primary_category',
    'engagement_score',
    'domain_score',
    'trust_level_for_score',
    'sender_trust_level',
    'ReputationStore',
    'ReputationSnapshot',
    'ReputationContext',
    'RebuildResult',
    'EVENT_KINDS',
    'DOMAIN_FLAGS',
]
