"""
AI classification.

The engine lives in mailsift.core.ai.classifier; this package only
re-exports the result schemas.
"""
from .schemas import (
    Category,
    CATEGORY_VALUES,
    SuggestedAction,
    ClassificationSource,
    KeyEntities,
    ClassificationResult,
    LabelSuggestion,
    ActionSuggestion,
    EntitySuggestion,
    HintSuggestion,
)

__all__ = [
    'Category',
    'CATEGORY_VALUES',
    'SuggestedAction',
    'ClassificationSource',
    'KeyEntities',
    'ClassificationResult',
    'LabelSuggestion',
    'ActionSuggestion',
    'EntitySuggestion',
    'HintSuggestion',
]
