"""
Unit tests for reputation scoring and the reputation store.
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from mailsift.core.database import Store
from mailsift.core.reputation import (
    ReputationStore,
    ReputationWeights,
    compute_confidence,
    domain_score,
    engagement_score,
    primary_category,
    sender_trust_level,
)


@pytest.fixture
def reputation(store):
    return ReputationStore(store)


class TestScoring:
    """Test pure scoring functions"""

    def test_confidence_bounded(self):
        """Test confidence stays within [0, 1] for extreme counters"""
        assert compute_confidence(0, 0, {}) == 0.0
        assert compute_confidence(10_000, 500, {'work': 10_000}) == 1.0
        assert compute_confidence(-5, -5, {'work': -3}) == 0.0

    def test_confidence_monotone_in_volume_and_overrides(self):
        """Test more evidence never lowers confidence"""
        scores = {'work': 3, 'personal': 1}
        values = [compute_confidence(total, 0, scores) for total in range(0, 40, 5)]
        assert values == sorted(values)
        assert compute_confidence(5, 2, scores) >= compute_confidence(5, 1, scores)

    def test_concentration(self):
        """Test consistent senders score higher than mixed ones"""
        assert compute_confidence(10, 0, {'work': 10}) > compute_confidence(10, 0, {'work': 5, 'spam': 5})

    def test_custom_weights(self):
        """Test weights come from configuration"""
        weights = ReputationWeights(volume_saturation=10, volume_weight=1.0, concentration_weight=0.0)
        assert compute_confidence(5, 0, {}, weights) == 0.5

    def test_primary_category_tie_break(self):
        """Test ties resolve by name"""
        assert primary_category({'work': 2, 'personal': 2, 'spam': 1}) == 'personal'
        assert primary_category({'work': 0}) is None

    def test_scores_clamped(self):
        """Test engagement and domain scores stay in 0-100"""
        assert engagement_score(opened=1000, replied=1000) == 90
        assert engagement_score(spam=100, deleted=100) == 0
        assert domain_score(is_blacklisted=True, opened=50) == 0
        assert domain_score(is_whitelisted=True) == 90

    def test_override_wins(self):
        """Test manual overrides beat counter-based trust"""
        assert sender_trust_level("trusted", 0) == "trusted"
        assert sender_trust_level("untrusted", 100) == "untrusted"
        assert sender_trust_level(None, 95) == "verified"


class TestReputationStore:
    """Test counters, snapshots and domain flags"""

    def test_unknown_sender_is_neutral(self, reputation):
        """Test unknown keys return a neutral snapshot"""
        snapshot = reputation.get_reputation("user-1", "stranger@nowhere.io")
        assert snapshot.known is False
        assert snapshot.trust_level == "neutral"
        assert snapshot.confidence == 0.0

        domain = reputation.get_reputation("user-1", "nowhere.io")
        assert domain.kind == "domain"
        assert domain.known is False

    def test_record_event_counts_sender_and_domain(self, reputation):
        """Test events update both sender and domain counters"""
        reputation.record_event("user-1", "Alice@Example.com", "received")
        reputation.record_event("user-1", "alice@example.com", "opened")
        snapshot = reputation.record_event("user-1", "bob@example.com", "received")

        alice = reputation.get_reputation("user-1", "alice@example.com")
        domain = reputation.get_reputation("user-1", "example.com")
        assert alice.counters['received'] == 1
        assert alice.counters['opened'] == 1
        assert snapshot.key == "bob@example.com"
        assert domain.counters['received'] == 2
        assert domain.counters['opened'] == 1

    def test_concurrent_events_lose_no_increments(self, tmp_path):
        """Test parallel writers for one sender each land their increment"""
        store = Store.from_url(f"sqlite:///{tmp_path / 'reputation.db'}")
        store.create_all()
        reputation = ReputationStore(store)

        def record(_):
            reputation.record_event("user-1", "busy@corp.com", "received")
            reputation.record_event("user-1", "busy@corp.com", "opened")

        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                list(pool.map(record, range(40)))

            sender = reputation.get_reputation("user-1", "busy@corp.com")
            domain = reputation.get_reputation("user-1", "corp.com")
        finally:
            store.dispose()

        assert sender.counters['received'] == 40
        assert sender.counters['opened'] == 40
        assert domain.counters['received'] == 40

    def test_unknown_event_rejected(self, reputation):
        """Test unknown event kinds raise ValueError"""
        with pytest.raises(ValueError):
            reputation.record_event("user-1", "a@b.com", "forwarded")

    def test_reputation_is_per_user(self, reputation):
        """Test one user's events never affect another"""
        reputation.record_event("user-1", "a@b.com", "received")
        assert reputation.get_reputation("user-2", "a@b.com").known is False

    def test_confidence_stays_bounded_under_many_events(self, reputation):
        """Test repeated evidence never pushes confidence past 1"""
        for _ in range(30):
            reputation.record_event("user-1", "news@daily.com", "received", category="newsletter")
        for _ in range(5):
            reputation.increment_overrides("user-1", "news@daily.com")

        snapshot = reputation.get_reputation("user-1", "news@daily.com")
        assert 0.0 <= snapshot.confidence <= 1.0
        assert snapshot.primary_category == "newsletter"

    def test_domain_flags(self, reputation):
        """Test whitelist, blacklist and clear"""
        black = reputation.set_domain_list_flag("user-1", "Spammy.biz", "blacklist")
        assert black.is_blacklisted and not black.is_whitelisted
        assert black.score == 0
        assert reputation.context_for("user-1", "x@spammy.biz").domain_list == "blacklist"

        white = reputation.set_domain_list_flag("user-1", "spammy.biz", "whitelist")
        assert white.is_whitelisted and not white.is_blacklisted
        assert reputation.context_for("user-1", "x@spammy.biz").domain_list == "whitelist"

        cleared = reputation.set_domain_list_flag("user-1", "spammy.biz", "clear")
        assert not cleared.is_whitelisted and not cleared.is_blacklisted
        assert reputation.context_for("user-1", "x@spammy.biz").domain_list is None

    def test_invalid_flag(self, reputation):
        """Test unknown flags raise ValueError"""
        with pytest.raises(ValueError):
            reputation.set_domain_list_flag("user-1", "a.com", "greylist")

    def test_thin_history_uses_domain(self, reputation):
        """Test a new sender is judged by its domain"""
        for i in range(5):
            reputation.record_event("user-1", f"person{i}@corp.com", "received", category="work")
        reputation.record_event("user-1", "newcomer@corp.com", "received")

        context = reputation.context_for("user-1", "newcomer@corp.com")

        assert context.effective.kind == "domain"
        assert context.effective.primary_category == "work"

    def test_domain_category_only_counts_its_senders(self, reputation):
        """Test domains with lookalike names keep separate category evidence"""
        for _ in range(4):
            reputation.record_event("user-1", "news@axb.com", "received", category="newsletter")
        reputation.record_event("user-1", "team@a_b.com", "received", category="work")

        assert reputation.get_reputation("user-1", "a_b.com").primary_category == "work"
        assert reputation.get_reputation("user-1", "axb.com").primary_category == "newsletter"

    def test_override_keeps_sender_view(self, reputation):
        """Test an overridden sender is judged on its own"""
        reputation.record_event("user-1", "colleague@corp.com", "received", category="work")
        reputation.set_sender_override("user-1", "boss@corp.com", "trusted")

        context = reputation.context_for("user-1", "boss@corp.com")

        assert context.effective.kind == "sender"
        assert context.effective.trust_level == "trusted"


class TestRebuild:
    """Test resumable recomputation of derived fields"""

    def test_rebuild_is_idempotent(self, reputation):
        """Test a rebuild over consistent data changes nothing"""
        for i in range(4):
            reputation.record_event("user-1", f"s{i}@example.com", "received", category="work")

        result = reputation.rebuild("user-1")

        assert result.complete
        assert result.processed == 5  # 4 senders + 1 domain
        assert result.updated == 0

    def test_rebuild_pauses_and_resumes(self, store):
        """Test an exhausted budget returns a resume token"""
        ticks = iter([0, 0, 0, 100, 100, 100, 100, 100, 100])
        reputation = ReputationStore(store, rebuild_batch_size=2, rebuild_budget_seconds=50,
                                     clock=lambda: next(ticks))
        for i in range(5):
            reputation.record_event("user-1", f"s{i}@example.com", "received")

        paused = reputation.rebuild("user-1")

        assert not paused.complete
        assert paused.resume_after.startswith("sender:")

        resumed = ReputationStore(store, rebuild_batch_size=2).rebuild("user-1", resume_after=paused.resume_after)
        assert resumed.complete
        assert paused.processed + resumed.processed == 6  # 5 senders + 1 domain

    def test_invalid_resume_token(self, reputation):
        """Test malformed tokens raise ValueError"""
        with pytest.raises(ValueError):
            reputation.rebuild("user-1", resume_after="bogus")
