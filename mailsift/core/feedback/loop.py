"""
Feedback Loop

Consumes user corrections:
- Overwrites the corrected email's category (source "user")
- Appends an immutable ClassificationFeedback row
- Feeds weighted category evidence and an override count into the
  sender's reputation
- Moves the sender's trust flag when a correction goes into or out of spam

Accuracy and learned rules are derived from the log on query.
"""
from dataclasses import dataclass
from typing import Dict, Optional
import logging

from sqlalchemy import func, or_, select

from mailsift.core.ai.schemas import Category, ClassificationSource
from mailsift.core.database import ClassificationFeedback, Email, EmailRepository, Store, with_db_retry
from mailsift.core.email.signals import domain_of
from mailsift.core.reputation import ReputationStore
from mailsift.core.reputation.scoring import OVERRIDE_TRUSTED, OVERRIDE_UNTRUSTED
from .learner import CorrectionEntry, LearnedRules, derive_rules

logger = logging.getLogger(__name__)

LEARNING_WINDOW = 200


@dataclass
class FeedbackOutcome:
    recorded: bool
    original_category: Optional[str] = None
    corrected_category: Optional[str] = None
    trust_change: Optional[str] = None  # "trusted" | "untrusted" | None

    def to_dict(self) -> Dict:
        return {
            'recorded': self.recorded,
            'original_category': self.original_category,
            'corrected_category': self.corrected_category,
            'trust_change': self.trust_change,
        }


def trust_change_for(original: str, corrected: str) -> Optional[str]:
    """Spam -> anything else trusts the sender; anything else -> spam untrusts it."""
    spam = Category.SPAM.value
    if original == spam and corrected != spam:
        return OVERRIDE_TRUSTED
    if corrected == spam and original != spam:
        return OVERRIDE_UNTRUSTED
    return None


class FeedbackLoop:
    """The only writer of reputation in response to classification outcomes."""

    def __init__(self, store: Store, reputation: ReputationStore, feedback_weight: int = 3):
        self.store = store
        self.reputation = reputation
        self.feedback_weight = feedback_weight

    @classmethod
    def from_settings(cls, settings, store: Store, reputation: ReputationStore) -> "FeedbackLoop":
        return cls(store, reputation, feedback_weight=settings.reputation_feedback_weight)

    def record_correction(self, email_id, original: Optional[str], corrected: str) -> FeedbackOutcome:
        """
        Apply a user correction.

        Args:
            email_id: Corrected email
            original: Category the user saw (None = the stored category)
            corrected: Category chosen by the user

        Returns:
            FeedbackOutcome; recorded is False when the categories are equal

        Raises:
            ValueError: corrected is not a known category
            EmailNotFoundError: Unknown email
        """
        corrected = Category(corrected).value

        with self.store.session() as db:
            emails = EmailRepository(db)
            email = emails.get(email_id)
            original = original or email.category or Category.UNCATEGORIZED.value
            if original == corrected:
                return FeedbackOutcome(recorded=False, original_category=original, corrected_category=corrected)

            user_id = email.user_id
            sender = (email.from_address or "").lower()
            # Model classifications were already counted by observe_classification
            already_observed = email.classification_source == ClassificationSource.MODEL.value
            emails.apply_classification(email.id, {
                'category': corrected,
                'classification_source': ClassificationSource.USER.value,
            })
            db.add(ClassificationFeedback(
                user_id=user_id,
                email_id=email.id,
                sender_email=sender,
                sender_domain=domain_of(sender),
                subject=email.subject,
                original_category=original,
                corrected_category=corrected,
            ))

            trust_change = trust_change_for(original, corrected)
            if sender:
                if not already_observed:
                    self.reputation.count_observed(user_id, sender, db=db, update_domain=False)
                self.reputation.add_category_score(user_id, sender, corrected, self.feedback_weight,
                                                   db=db, update_domain=False)
                self.reputation.increment_overrides(user_id, sender, db=db)
                if trust_change:
                    self.reputation.set_sender_override(user_id, sender, trust_change, db=db)

        logger.info(f"User {user_id} corrected {email_id}: {original} -> {corrected}"
                    + (f" (sender {trust_change})" if trust_change else ""))
        return FeedbackOutcome(recorded=True, original_category=original,
                               corrected_category=corrected, trust_change=trust_change)

    def observe_classification(self, user_id: str, sender: str, category: str):
        """Count the email and add weight-1 category evidence, in one transaction."""
        if not sender or category == Category.UNCATEGORIZED.value:
            return
        with self.store.session() as db:
            self.reputation.count_observed(user_id, sender, db=db)
            self.reputation.add_category_score(user_id, sender, category, weight=1, db=db)

    @with_db_retry
    def accuracy_by_category(self, user_id: str) -> Dict[str, Dict]:
        """
        Per original category: {correct, total, accuracy}.

        total = emails still carrying a machine classification of that
        category plus corrections away from it; correct = total - corrections.
        """
        with self.store.session() as db:
            machine = dict(db.execute(
                select(Email.category, func.count())
                .where(Email.user_id == user_id,
                       Email.category.is_not(None),
                       or_(Email.classification_source.is_(None),
                           Email.classification_source != ClassificationSource.USER.value))
                .group_by(Email.category)
            ).all())
            corrections = dict(db.execute(
                select(ClassificationFeedback.original_category,
                       func.count(func.distinct(ClassificationFeedback.email_id)))
                .where(ClassificationFeedback.user_id == user_id)
                .group_by(ClassificationFeedback.original_category)
            ).all())

        stats = {}
        for category in sorted(set(machine) | set(corrections)):
            correct = int(machine.get(category, 0))
            total = correct + int(corrections.get(category, 0))
            stats[category] = {
                'correct': correct,
                'total': total,
                'accuracy': round(correct / total, 4) if total else None,
            }
        return stats

    @with_db_retry
    def learned_rule_suggestions(self, user_id: str) -> LearnedRules:
        """Sender/domain rule suggestions from the most recent corrections."""
        with self.store.session() as db:
            rows = db.execute(
                select(ClassificationFeedback.sender_email, ClassificationFeedback.sender_domain,
                       ClassificationFeedback.subject, ClassificationFeedback.corrected_category)
                .where(ClassificationFeedback.user_id == user_id)
                .order_by(ClassificationFeedback.created_at.desc(), ClassificationFeedback.id.desc())
                .limit(LEARNING_WINDOW)
            ).all()
        return derive_rules(
            CorrectionEntry(sender_email=s or "", sender_domain=d or "", subject=subj or "", corrected_category=c)
            for s, d, subj, c in rows
        )
