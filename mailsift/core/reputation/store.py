"""
Reputation Store

Per-(user, sender) and per-(user, domain) engagement counters with a
derived, bounded confidence.

Counters are only changed with `UPDATE ... SET col = col + n`, so
concurrent events for the same sender never lose updates. Derived fields
(confidence, primary category, domain score) are recomputed from fresh
counters after each change; last write wins for those.
"""
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Iterator, List, Optional
import logging
import time

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailsift.core.database import (
    DomainReputation,
    SenderCategoryScore,
    SenderReputation,
    Store,
    ensure_row,
    utcnow,
)
from mailsift.core.email.signals import domain_of
from .scoring import (
    ReputationWeights,
    compute_confidence,
    domain_score,
    engagement_score,
    primary_category,
    sender_trust_level,
    trust_level_for_score,
    TRUST_NEUTRAL,
)

logger = logging.getLogger(__name__)

EVENT_KINDS = ("received", "opened", "replied", "archived", "deleted", "spam")
DOMAIN_FLAGS = ("whitelist", "blacklist", "clear")

# Below this many received emails the domain speaks for the sender
THIN_HISTORY = 3


@dataclass
class ReputationSnapshot:
    kind: str  # "sender" or "domain"
    key: str
    trust_level: str = TRUST_NEUTRAL
    confidence: float = 0.0
    score: int = 50
    counters: Dict[str, int] = field(default_factory=dict)
    primary_category: Optional[str] = None
    override: Optional[str] = None
    is_whitelisted: bool = False
    is_blacklisted: bool = False
    known: bool = False

    @property
    def total(self) -> int:
        """Emails known for this key, from the tracker or from classification."""
        return max(self.counters.get('received', 0), self.counters.get('observed', 0))

    def to_dict(self) -> Dict:
        return asdict(self)

    def prompt_view(self) -> Dict:
        """Flattened view handed to the classifier prompt."""
        view = {
            'trust_level': self.trust_level,
            'confidence': self.confidence,
            'primary_category': self.primary_category,
        }
        view.update(self.counters)
        return view


@dataclass
class ReputationContext:
    """Reputation handed to the classification engine (read-only)."""
    sender: ReputationSnapshot
    domain: ReputationSnapshot

    @property
    def effective(self) -> ReputationSnapshot:
        if self.sender.override or self.sender.total >= THIN_HISTORY or not self.domain.known:
            return self.sender
        return self.domain

    @property
    def domain_list(self) -> Optional[str]:
        if self.domain.is_blacklisted:
            return "blacklist"
        if self.domain.is_whitelisted:
            return "whitelist"
        return None


@dataclass
class RebuildResult:
    processed: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)
    resume_after: Optional[str] = None
    complete: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


def _counters(row) -> Dict[str, int]:
    counters = {kind: getattr(row, f"{kind}_count") or 0 for kind in EVENT_KINDS}
    counters['observed'] = row.observed_count or 0
    return counters


def _volume(row) -> int:
    return max(row.received_count or 0, row.observed_count or 0)


class ReputationStore:
    """Reads and atomically updates sender/domain reputation."""

    def __init__(self,
                 store: Store,
                 weights: Optional[ReputationWeights] = None,
                 rebuild_batch_size: int = 100,
                 rebuild_budget_seconds: float = 50.0,
                 rebuild_epsilon: float = 0.01,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.weights = weights or ReputationWeights()
        self.rebuild_batch_size = rebuild_batch_size
        self.rebuild_budget_seconds = rebuild_budget_seconds
        self.rebuild_epsilon = rebuild_epsilon
        self.clock = clock

    @classmethod
    def from_settings(cls, settings, store: Store) -> "ReputationStore":
        return cls(
            store,
            weights=ReputationWeights.from_settings(settings),
            rebuild_batch_size=settings.reputation_rebuild_batch_size,
            rebuild_budget_seconds=settings.reputation_rebuild_budget_seconds,
            rebuild_epsilon=settings.reputation_rebuild_epsilon,
        )

    @contextmanager
    def _session(self, db: Optional[Session]) -> Iterator[Session]:
        """Join the caller's transaction, or open one."""
        if db is not None:
            yield db
        else:
            with self.store.session() as own:
                yield own

    # ------------------------------------------------------------------
    # Row creation and atomic increments
    # ------------------------------------------------------------------

    def _ensure_sender(self, db: Session, user_id: str, sender: str):
        ensure_row(db, SenderReputation,
                   values={'user_id': user_id, 'sender_email': sender, 'sender_domain': domain_of(sender)},
                   keys={'user_id': user_id, 'sender_email': sender})

    def _ensure_domain(self, db: Session, user_id: str, domain: str):
        ensure_row(db, DomainReputation,
                   values={'user_id': user_id, 'domain': domain},
                   keys={'user_id': user_id, 'domain': domain})

    def _category_scores(self, db: Session, user_id: str, sender: str) -> Dict[str, int]:
        rows = db.execute(
            select(SenderCategoryScore.category, SenderCategoryScore.score)
            .where(SenderCategoryScore.user_id == user_id, SenderCategoryScore.sender_email == sender)
        ).all()
        return {category: score for category, score in rows}

    def _domain_category_scores(self, db: Session, user_id: str, domain: str) -> Dict[str, int]:
        rows = db.execute(
            select(SenderCategoryScore.category, func.sum(SenderCategoryScore.score))
            .join(SenderReputation, and_(SenderReputation.user_id == SenderCategoryScore.user_id,
                                         SenderReputation.sender_email == SenderCategoryScore.sender_email))
            .where(SenderCategoryScore.user_id == user_id, SenderReputation.sender_domain == domain)
            .group_by(SenderCategoryScore.category)
        ).all()
        return {category: int(score or 0) for category, score in rows}

    def add_category_score(self, user_id: str, sender: str, category: str, weight: int = 1,
                           db: Optional[Session] = None, update_domain: bool = True):
        """
        Add category evidence for a sender and refresh its derived fields.

        With update_domain=False the domain row is neither created nor
        recomputed (user corrections are scoped to the sender).
        """
        sender = sender.lower()
        with self._session(db) as session:
            self._ensure_sender(session, user_id, sender)
            ensure_row(session, SenderCategoryScore,
                       values={'user_id': user_id, 'sender_email': sender, 'category': category, 'score': 0},
                       keys={'user_id': user_id, 'sender_email': sender, 'category': category})
            session.execute(
                update(SenderCategoryScore)
                .where(SenderCategoryScore.user_id == user_id,
                       SenderCategoryScore.sender_email == sender,
                       SenderCategoryScore.category == category)
                .values(score=SenderCategoryScore.score + weight)
            )
            self._recompute_sender(session, user_id, sender)
            domain = domain_of(sender)
            if domain and update_domain:
                self._ensure_domain(session, user_id, domain)
                self._recompute_domain(session, user_id, domain)

    def count_observed(self, user_id: str, sender: str, db: Optional[Session] = None,
                       update_domain: bool = True):
        """Count one email seen by the pipeline towards the volume term."""
        sender = sender.lower()
        with self._session(db) as session:
            self._ensure_sender(session, user_id, sender)
            session.execute(
                update(SenderReputation)
                .where(SenderReputation.user_id == user_id, SenderReputation.sender_email == sender)
                .values(observed_count=SenderReputation.observed_count + 1,
                        last_seen_at=utcnow(), updated_at=utcnow())
            )
            self._recompute_sender(session, user_id, sender)
            domain = domain_of(sender)
            if domain and update_domain:
                self._ensure_domain(session, user_id, domain)
                session.execute(
                    update(DomainReputation)
                    .where(DomainReputation.user_id == user_id, DomainReputation.domain == domain)
                    .values(observed_count=DomainReputation.observed_count + 1, updated_at=utcnow())
                )
                self._recompute_domain(session, user_id, domain)

    def increment_overrides(self, user_id: str, sender: str, db: Optional[Session] = None):
        sender = sender.lower()
        with self._session(db) as session:
            self._ensure_sender(session, user_id, sender)
            session.execute(
                update(SenderReputation)
                .where(SenderReputation.user_id == user_id, SenderReputation.sender_email == sender)
                .values(user_overrides=SenderReputation.user_overrides + 1, updated_at=utcnow())
            )
            self._recompute_sender(session, user_id, sender)

    def set_sender_override(self, user_id: str, sender: str, override: Optional[str],
                            db: Optional[Session] = None):
        """Set the manual trust flag ("trusted" / "untrusted" / None)."""
        sender = sender.lower()
        with self._session(db) as session:
            self._ensure_sender(session, user_id, sender)
            session.execute(
                update(SenderReputation)
                .where(SenderReputation.user_id == user_id, SenderReputation.sender_email == sender)
                .values(override=override, updated_at=utcnow())
            )
        logger.info(f"Sender {sender} override set to {override} for user {user_id}")

    def record_event(self, user_id: str, sender: str, event: str,
                     category: Optional[str] = None, weight: int = 1) -> ReputationSnapshot:
        """
        Count one behavior event for a sender and its domain.

        Args:
            user_id: Owner of the reputation rows
            sender: Sender address
            event: One of received/opened/replied/archived/deleted/spam
            category: Optional category evidence to add
            weight: Increment size

        Returns:
            Fresh sender snapshot

        Raises:
            ValueError: Unknown event kind
        """
        if event not in EVENT_KINDS:
            raise ValueError(f"Unknown event '{event}'. Use one of: {', '.join(EVENT_KINDS)}")
        sender = sender.lower().strip()
        domain = domain_of(sender)
        column = f"{event}_count"

        with self.store.session() as db:
            self._ensure_sender(db, user_id, sender)
            sender_column = getattr(SenderReputation, column)
            db.execute(
                update(SenderReputation)
                .where(SenderReputation.user_id == user_id, SenderReputation.sender_email == sender)
                .values({sender_column: sender_column + weight,
                         SenderReputation.last_seen_at: utcnow(),
                         SenderReputation.updated_at: utcnow()})
            )
            if domain:
                self._ensure_domain(db, user_id, domain)
                domain_column = getattr(DomainReputation, column)
                db.execute(
                    update(DomainReputation)
                    .where(DomainReputation.user_id == user_id, DomainReputation.domain == domain)
                    .values({domain_column: domain_column + weight,
                             DomainReputation.updated_at: utcnow()})
                )

            if category:
                self.add_category_score(user_id, sender, category, weight, db=db)
            else:
                self._recompute_sender(db, user_id, sender)
                if domain:
                    self._recompute_domain(db, user_id, domain)

            return self._sender_snapshot(db, user_id, sender)

    # ------------------------------------------------------------------
    # Derived fields
    # ------------------------------------------------------------------

    def _sender_derived(self, db: Session, row: SenderReputation):
        scores = self._category_scores(db, row.user_id, row.sender_email)
        return (compute_confidence(_volume(row), row.user_overrides or 0, scores, self.weights),
                primary_category(scores))

    def _domain_derived(self, db: Session, row: DomainReputation):
        scores = self._domain_category_scores(db, row.user_id, row.domain)
        confidence = compute_confidence(_volume(row), 0, scores, self.weights)
        score = domain_score(row.opened_count or 0, row.deleted_count or 0,
                             row.is_whitelisted, row.is_blacklisted)
        return confidence, primary_category(scores), score

    def _recompute_sender(self, db: Session, user_id: str, sender: str):
        row = db.execute(
            select(SenderReputation)
            .where(SenderReputation.user_id == user_id, SenderReputation.sender_email == sender)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            return
        confidence, category = self._sender_derived(db, row)
        db.execute(
            update(SenderReputation)
            .where(SenderReputation.id == row.id)
            .values(confidence=confidence, primary_category=category)
        )

    def _recompute_domain(self, db: Session, user_id: str, domain: str):
        row = db.execute(
            select(DomainReputation)
            .where(DomainReputation.user_id == user_id, DomainReputation.domain == domain)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            return
        confidence, category, score = self._domain_derived(db, row)
        db.execute(
            update(DomainReputation)
            .where(DomainReputation.id == row.id)
            .values(confidence=confidence, primary_category=category, reputation_score=score)
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _sender_snapshot(self, db: Session, user_id: str, sender: str) -> ReputationSnapshot:
        row = db.execute(
            select(SenderReputation)
            .where(SenderReputation.user_id == user_id, SenderReputation.sender_email == sender)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            return ReputationSnapshot(kind="sender", key=sender)
        counters = _counters(row)
        score = engagement_score(counters['opened'], counters['replied'], counters['deleted'], counters['spam'])
        return ReputationSnapshot(
            kind="sender",
            key=sender,
            trust_level=sender_trust_level(row.override, score),
            confidence=row.confidence or 0.0,
            score=score,
            counters=counters,
            primary_category=row.primary_category,
            override=row.override,
            known=True,
        )

    def _domain_snapshot(self, db: Session, user_id: str, domain: str) -> ReputationSnapshot:
        row = db.execute(
            select(DomainReputation)
            .where(DomainReputation.user_id == user_id, DomainReputation.domain == domain)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            return ReputationSnapshot(kind="domain", key=domain)
        score = row.reputation_score if row.reputation_score is not None else 50
        return ReputationSnapshot(
            kind="domain",
            key=domain,
            trust_level=trust_level_for_score(score),
            confidence=row.confidence or 0.0,
            score=score,
            counters=_counters(row),
            primary_category=row.primary_category,
            is_whitelisted=bool(row.is_whitelisted),
            is_blacklisted=bool(row.is_blacklisted),
            known=True,
        )

    def get_reputation(self, user_id: str, key: str) -> ReputationSnapshot:
        """
        Snapshot for a sender address (contains '@') or a domain.
        Unknown keys are neutral with confidence 0.
        """
        key = key.lower().strip()
        with self.store.session() as db:
            if '@' in key:
                return self._sender_snapshot(db, user_id, key)
            return self._domain_snapshot(db, user_id, key)

    def context_for(self, user_id: str, sender: str) -> ReputationContext:
        sender = (sender or "").lower().strip()
        with self.store.session() as db:
            return ReputationContext(
                sender=self._sender_snapshot(db, user_id, sender),
                domain=self._domain_snapshot(db, user_id, domain_of(sender)),
            )

    # ------------------------------------------------------------------
    # Admin domain lists
    # ------------------------------------------------------------------

    def set_domain_list_flag(self, user_id: str, domain: str, flag: str) -> ReputationSnapshot:
        """
        Put a domain on the whitelist or blacklist, or clear it.

        Raises:
            ValueError: Unknown flag
        """
        if flag not in DOMAIN_FLAGS:
            raise ValueError(f"Unknown flag '{flag}'. Use one of: {', '.join(DOMAIN_FLAGS)}")
        domain = domain.lower().strip()
        with self.store.session() as db:
            self._ensure_domain(db, user_id, domain)
            db.execute(
                update(DomainReputation)
                .where(DomainReputation.user_id == user_id, DomainReputation.domain == domain)
                .values(is_whitelisted=(flag == "whitelist"),
                        is_blacklisted=(flag == "blacklist"),
                        updated_at=utcnow())
            )
            self._recompute_domain(db, user_id, domain)
            snapshot = self._domain_snapshot(db, user_id, domain)
        logger.info(f"Domain {domain} {flag} for user {user_id} (score {snapshot.score})")
        return snapshot

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def _rebuild_batch(self, db: Session, model, user_id: str, after_id: int) -> List[int]:
        """Recompute one batch; returns [processed, updated, last_id]."""
        rows = list(db.scalars(
            select(model)
            .where(model.user_id == user_id, model.id > after_id)
            .order_by(model.id)
            .limit(self.rebuild_batch_size)
        ))
        updated = 0
        for row in rows:
            if model is SenderReputation:
                confidence, category = self._sender_derived(db, row)
                values = {'confidence': confidence, 'primary_category': category}
                changed = (abs(confidence - (row.confidence or 0.0)) > self.rebuild_epsilon
                           or category != row.primary_category)
            else:
                confidence, category, score = self._domain_derived(db, row)
                values = {'confidence': confidence, 'primary_category': category, 'reputation_score': score}
                changed = (abs(confidence - (row.confidence or 0.0)) > self.rebuild_epsilon
                           or category != row.primary_category
                           or score != row.reputation_score)
            if changed:
                db.execute(update(model).where(model.id == row.id).values(**values))
                updated += 1
        return [len(rows), updated, rows[-1].id if rows else after_id]

    def rebuild(self, user_id: str, resume_after: Optional[str] = None) -> RebuildResult:
        """
        Recompute derived fields for every sender, then every domain.

        Counters are never touched, so the job can stop anywhere and be
        resumed with the returned `resume_after` token ("sender:<id>" or
        "domain:<id>").
        """
        result = RebuildResult()
        started = self.clock()

        phase, after_id = "sender", 0
        if resume_after:
            phase, _, raw_id = resume_after.partition(':')
            if phase not in ("sender", "domain") or not raw_id.isdigit():
                raise ValueError(f"Invalid resume token: {resume_after}")
            after_id = int(raw_id)

        phases = [("sender", SenderReputation), ("domain", DomainReputation)]
        if phase == "domain":
            phases = phases[1:]

        for name, model in phases:
            while True:
                if self.clock() - started >= self.rebuild_budget_seconds:
                    result.resume_after = f"{name}:{after_id}"
                    logger.info(f"Reputation rebuild for {user_id} paused at {result.resume_after} "
                                f"({result.processed} processed, {result.updated} updated)")
                    return result
                try:
                    with self.store.session() as db:
                        processed, updated, last_id = self._rebuild_batch(db, model, user_id, after_id)
                except SQLAlchemyError as e:
                    result.errors.append(f"{name} batch after id {after_id}: {type(e).__name__}")
                    logger.error(f"Reputation rebuild batch failed ({name} after {after_id}): {e}")
                    break
                result.processed += processed
                result.updated += updated
                if processed < self.rebuild_batch_size:
                    break
                after_id = last_id
            after_id = 0

        result.complete = not result.errors
        logger.info(f"Reputation rebuild for {user_id}: {result.processed} processed, "
                    f"{result.updated} updated")
        return result
