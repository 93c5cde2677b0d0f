"""
Unit tests for the rule-based pre-filter, signals and priority rules.
"""
import pytest

from mailsift.core.ai.schemas import Category, ClassificationSource, SuggestedAction
from mailsift.core.email import (
    PrefilterInput,
    PrefilterRule,
    RuleCondition,
    RulePrefilter,
    determine_priority,
    extract_email_signals,
    is_same_domain,
    needs_reply_heuristic,
    suggest_action,
)
from mailsift.core.email.prefilter import (
    HINT_BLACKLISTED,
    HINT_BULK_MAIL,
    HINT_NO_REPLY,
    HINT_SAME_DOMAIN,
    HINT_TRANSACTIONAL,
)
from mailsift.core.paths import get_config_path


@pytest.fixture
def bank_rule():
    return PrefilterRule(
        name="banks",
        hint=HINT_TRANSACTIONAL,
        category="transaction",
        conditions=[RuleCondition(field='domain', match_type='domain', values=('hsbc.com',))],
    )


class TestRuleCondition:
    """Test individual condition matching"""

    def test_contains_is_case_insensitive(self):
        """Test contains ignores case by default"""
        condition = RuleCondition(field='subject', pattern='INVOICE')
        assert condition.evaluate(PrefilterInput(from_address="a@b.com", subject="Your invoice #12"))

    def test_domain_matches_subdomains(self):
        """Test domain match covers subdomains but not lookalikes"""
        condition = RuleCondition(field='domain', match_type='domain', values=('paypal.com',))
        assert condition.evaluate(PrefilterInput(from_address="service@mail.paypal.com"))
        assert not condition.evaluate(PrefilterInput(from_address="service@notpaypal.com"))

    def test_regex_and_negate(self):
        """Test regex with negation"""
        condition = RuleCondition(field='from_local', match_type='regex', pattern='^newsletter', negate=True)
        assert condition.evaluate(PrefilterInput(from_address="alice@example.com"))
        assert not condition.evaluate(PrefilterInput(from_address="newsletter@example.com"))

    def test_invalid_regex_does_not_match(self):
        """Test a broken pattern evaluates to False"""
        condition = RuleCondition(field='subject', match_type='regex', pattern='([unclosed')
        assert not condition.evaluate(PrefilterInput(from_address="a@b.com", subject="anything"))

    def test_present(self):
        """Test present checks for a non-empty field"""
        condition = RuleCondition(field='list_unsubscribe', match_type='present')
        assert condition.evaluate(PrefilterInput(from_address="a@b.com", list_unsubscribe="<mailto:x@b.com>"))
        assert not condition.evaluate(PrefilterInput(from_address="a@b.com"))


class TestRulePrefilter:
    """Test hints and short-circuit decisions"""

    def test_blacklist_short_circuits_to_spam(self):
        """Test blacklisted domains are spam without the model"""
        result = RulePrefilter().evaluate(
            PrefilterInput(from_address="deals@spammy.biz", subject="WIN NOW"), domain_list="blacklist")

        assert result.has(HINT_BLACKLISTED)
        verdict = result.short_circuit
        assert verdict.category == Category.SPAM
        assert verdict.priority == 1
        assert verdict.suggested_action == SuggestedAction.DELETE
        assert verdict.source == ClassificationSource.PREFILTER

    def test_whitelisted_transactional_short_circuits(self, bank_rule):
        """Test whitelisted domain plus transactional rule yields a transaction"""
        result = RulePrefilter([bank_rule]).evaluate(
            PrefilterInput(from_address="alerts@hsbc.com", subject="Security alert on your card"),
            domain_list="whitelist")

        verdict = result.short_circuit
        assert verdict.category == Category.TRANSACTION
        assert verdict.confidence == 0.95
        assert verdict.priority == 5
        assert result.matched_rules == ["banks"]

    def test_transactional_without_whitelist_is_a_hint(self, bank_rule):
        """Test rule matches alone never classify"""
        result = RulePrefilter([bank_rule]).evaluate(PrefilterInput(from_address="alerts@hsbc.com"))

        assert result.has(HINT_TRANSACTIONAL)
        assert result.short_circuit is None

    def test_whitelist_without_rule_is_a_hint(self):
        """Test a whitelisted domain alone passes to the classifier"""
        result = RulePrefilter().evaluate(PrefilterInput(from_address="bob@partner.com"), domain_list="whitelist")
        assert result.short_circuit is None

    def test_builtin_hints(self):
        """Test same-domain, bulk and no-reply hints"""
        prefilter = RulePrefilter()
        colleague = prefilter.evaluate(PrefilterInput(from_address="boss@company.com"),
                                       user_email="me@company.com")
        bulk = prefilter.evaluate(PrefilterInput(from_address="noreply@shop.com",
                                                 list_unsubscribe="<https://shop.com/u>"))

        assert colleague.has(HINT_SAME_DOMAIN)
        assert bulk.has(HINT_BULK_MAIL)
        assert bulk.has(HINT_NO_REPLY)

    def test_shipped_example_rules_load(self):
        """Test the example YAML parses into rules"""
        path = get_config_path("prefilter_rules.example.yaml")
        prefilter = RulePrefilter.from_yaml(path)
        names = [rule.name for rule in prefilter.rules]
        assert "banks" in names
        result = prefilter.evaluate(PrefilterInput(from_address="receipts@paypal.com"))
        assert result.has(HINT_TRANSACTIONAL)

    def test_from_yaml(self, tmp_path):
        """Test rules load from a custom file"""
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text(
            "rules:\n"
            "  - name: invoices\n"
            "    hint: transactional_sender\n"
            "    conditions:\n"
            "      - field: subject\n"
            "        pattern: invoice\n"
            "      - field: domain\n"
            "        match_type: domain\n"
            "        values: [stripe.com]\n"
        )
        prefilter = RulePrefilter.from_yaml(rules_file)

        assert prefilter.evaluate(PrefilterInput(from_address="a@stripe.com", subject="Invoice 7")).matched_rules == ["invoices"]
        assert prefilter.evaluate(PrefilterInput(from_address="a@stripe.com", subject="Hello")).matched_rules == []


class TestSignals:
    """Test deterministic message signals"""

    def test_free_mail_is_not_same_domain(self):
        """Test shared free-mail domains are not colleagues"""
        assert not is_same_domain("me@gmail.com", "you@gmail.com")
        assert is_same_domain("me@company.com", "you@Company.com")

    def test_spam_shape(self):
        """Test promo, caps and punctuation signals"""
        signals = extract_email_signals("promo@store.com", "HUGE SALE TODAY ONLY!!!",
                                        "Get 50% off now https://x.io https://y.io")
        assert signals.is_marketing
        assert signals.has_promo_words
        assert signals.has_excessive_caps
        assert signals.has_excessive_punctuation
        assert signals.link_count == 2


class TestPriorityRules:
    """Test rule-based priority, needs-reply and action"""

    @pytest.mark.parametrize("category,subject,expected", [
        ("spam", "anything", 1),
        ("transaction", "Your OTP code", 5),
        ("transaction", "Payment due tomorrow", 4),
        ("work", "URGENT: server down", 5),
        ("work", "Re: roadmap", 4),
        ("work", "Weekly notes", 3),
        ("newsletter", "Issue 42", 2),
        ("promotion", "Big sale", 1),
    ])
    def test_determine_priority(self, category, subject, expected):
        """Test priority by category and subject"""
        assert determine_priority(category, subject) == expected

    def test_trusted_promotion_priority(self):
        """Test trusted promotions rank above untrusted"""
        assert determine_priority("promotion", "Sale", trust_level="trusted") == 2

    def test_no_reply_never_needs_reply(self):
        """Test no-reply senders never need a reply"""
        assert not needs_reply_heuristic("work", "Can you review?", "", "no-reply@company.com")
        assert needs_reply_heuristic("work", "Can you review?", "", "boss@company.com")

    def test_suggest_action(self):
        """Test action mapping"""
        assert suggest_action("work", 4, True) == "reply"
        assert suggest_action("spam", 1, False) == "delete"
        assert suggest_action("newsletter", 2, False) == "read_later"
        assert suggest_action("personal", 3, False) == "none"
