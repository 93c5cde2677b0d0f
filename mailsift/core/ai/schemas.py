"""
Classification data structures.

ClassificationResult is the validated contract with the external model;
the AI suggestions stored on an email are a list of feature-tagged
payloads (discriminated by `feature`) instead of a free-form dict.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class Category(str, Enum):
    WORK = "work"
    PERSONAL = "personal"
    NEWSLETTER = "newsletter"
    PROMOTION = "promotion"
    TRANSACTION = "transaction"
    SOCIAL = "social"
    SPAM = "spam"
    UNCATEGORIZED = "uncategorized"


CATEGORY_VALUES = [c.value for c in Category]


class SuggestedAction(str, Enum):
    REPLY = "reply"
    ARCHIVE = "archive"
    DELETE = "delete"
    READ_LATER = "read_later"
    NONE = "none"


class ClassificationSource(str, Enum):
    MODEL = "model"
    PREFILTER = "prefilter"
    REPUTATION = "reputation"
    FALLBACK = "fallback"
    USER = "user"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _stringify_items(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    return value


class KeyEntities(BaseModel):
    """Entities the model pulled out of the message."""
    people: List[str] = Field(default_factory=list)
    dates: List[str] = Field(default_factory=list)
    amounts: List[str] = Field(default_factory=list)
    tasks: List[str] = Field(default_factory=list)

    @field_validator('people', 'dates', 'amounts', 'tasks', mode='before')
    @classmethod
    def _as_strings(cls, value):
        return _stringify_items(value)


class ClassificationResult(BaseModel):
    """
    Structured output of one classification attempt.

    Out-of-range values are rejected, never clamped: the engine turns a
    validation failure into the fallback result.
    """
    model_config = ConfigDict(extra='ignore')

    priority: int = Field(ge=1, le=5, description="1 = very low, 5 = urgent")
    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    summary: str = ""
    needs_reply: bool = False
    deadline: Optional[datetime] = None
    suggested_action: SuggestedAction = SuggestedAction.NONE
    key_entities: KeyEntities = Field(default_factory=KeyEntities)
    suggested_labels: List[str] = Field(default_factory=list)
    source: ClassificationSource = ClassificationSource.MODEL

    @field_validator('summary', mode='before')
    @classmethod
    def _summary_text(cls, value):
        return "" if value is None else value

    @field_validator('deadline', mode='before')
    @classmethod
    def _parse_deadline(cls, value):
        # Free-text deadlines ("next Friday") are dropped rather than failing the result
        if value in (None, "", "null"):
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
            except ValueError:
                return None
        return None

    @field_validator('suggested_labels', mode='before')
    @classmethod
    def _labels(cls, value):
        return _stringify_items(value)

    @field_validator('key_entities', mode='before')
    @classmethod
    def _entities(cls, value):
        return {} if value is None else value

    @classmethod
    def fallback(cls, summary: str = "") -> "ClassificationResult":
        """Safe result used whenever the model cannot be trusted."""
        return cls(
            priority=3,
            category=Category.UNCATEGORIZED,
            confidence=0.0,
            summary=summary,
            needs_reply=False,
            suggested_action=SuggestedAction.NONE,
            source=ClassificationSource.FALLBACK,
        )

    def email_fields(self) -> dict:
        """Column values written onto the Email row."""
        return {
            'priority': self.priority,
            'category': self.category.value,
            'confidence': self.confidence,
            'summary': self.summary,
            'deadline': _naive_utc(self.deadline),
            'needs_reply': self.needs_reply,
            'suggested_action': self.suggested_action.value,
            'classification_source': self.source.value,
        }


# ---------------------------------------------------------------------------
# AI suggestions (tagged union)
# ---------------------------------------------------------------------------

class LabelSuggestion(BaseModel):
    feature: Literal["labels"] = "labels"
    labels: List[str] = Field(default_factory=list)


class ActionSuggestion(BaseModel):
    feature: Literal["action"] = "action"
    action: SuggestedAction = SuggestedAction.NONE


class EntitySuggestion(BaseModel):
    feature: Literal["entities"] = "entities"
    people: List[str] = Field(default_factory=list)
    dates: List[str] = Field(default_factory=list)
    amounts: List[str] = Field(default_factory=list)
    tasks: List[str] = Field(default_factory=list)


class HintSuggestion(BaseModel):
    feature: Literal["prefilter_hints"] = "prefilter_hints"
    hints: List[str] = Field(default_factory=list)


Suggestion = Annotated[
    Union[LabelSuggestion, ActionSuggestion, EntitySuggestion, HintSuggestion],
    Field(discriminator="feature"),
]

_suggestions_adapter = TypeAdapter(List[Suggestion])


def build_suggestions(result: ClassificationResult, hints: Optional[List[str]] = None) -> List[BaseModel]:
    suggestions: List[BaseModel] = [ActionSuggestion(action=result.suggested_action)]
    if result.suggested_labels:
        suggestions.append(LabelSuggestion(labels=result.suggested_labels))
    entities = result.key_entities
    if entities.people or entities.dates or entities.amounts or entities.tasks:
        suggestions.append(EntitySuggestion(**entities.model_dump()))
    if hints:
        suggestions.append(HintSuggestion(hints=list(hints)))
    return suggestions


def dump_suggestions(suggestions: List[BaseModel]) -> list:
    return _suggestions_adapter.dump_python(suggestions, mode='json')


def load_suggestions(data: Optional[list]) -> List[BaseModel]:
    return _suggestions_adapter.validate_python(data or [])
