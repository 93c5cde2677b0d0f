"""
Rule-based pre-filter.
Runs before the classifier to attach cheap, deterministic hints.

Rules are loaded from YAML (config/prefilter_rules.yaml) and match on:
- Sender address, local part or domain
- Subject / body text
- List-Unsubscribe header presence

All conditions of a rule must match (AND). A matching rule emits its hint.

A short-circuit classification is only produced for the explicit domain
blacklist, or a whitelisted domain that also hits a transactional rule.
Everything else passes through to the classifier.
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union
import logging

import yaml

from mailsift.core.ai.schemas import (
    Category,
    ClassificationResult,
    ClassificationSource,
    SuggestedAction,
)
from mailsift.core.paths import get_config_path
from .priority_rules import determine_priority, needs_reply_heuristic, suggest_action
from .signals import EmailSignals, domain_of, extract_email_signals, is_same_domain

logger = logging.getLogger(__name__)

# Hint names
HINT_SAME_DOMAIN = "same_domain"
HINT_TRANSACTIONAL = "transactional_sender"
HINT_BULK_MAIL = "bulk_mail"
HINT_NO_REPLY = "no_reply_sender"
HINT_WHITELISTED = "domain_whitelisted"
HINT_BLACKLISTED = "domain_blacklisted"

DOMAIN_WHITELIST = "whitelist"
DOMAIN_BLACKLIST = "blacklist"


@dataclass
class PrefilterInput:
    """The message fields rules can see."""
    from_address: str
    subject: str = ""
    body_text: str = ""
    to_address: str = ""
    list_unsubscribe: Optional[str] = None

    @classmethod
    def from_email(cls, email) -> "PrefilterInput":
        """Build from an Email row or a RawMessage."""
        return cls(
            from_address=(email.from_address or "").lower(),
            subject=email.subject or "",
            body_text=getattr(email, 'body_text', None) or getattr(email, 'snippet', None) or "",
            to_address=email.to_address or "",
            list_unsubscribe=email.list_unsubscribe,
        )

    @property
    def sender_domain(self) -> str:
        return domain_of(self.from_address)

    @property
    def local_part(self) -> str:
        return self.from_address.split('@', 1)[0] if '@' in self.from_address else self.from_address


@dataclass
class RuleCondition:
    """A single condition in a rule"""
    field: str  # 'from', 'from_local', 'domain', 'to', 'subject', 'body', 'list_unsubscribe'
    pattern: str = ""
    match_type: str = 'contains'  # 'contains', 'regex', 'exact', 'domain', 'present'
    values: Sequence[str] = ()  # for match_type 'domain'
    case_sensitive: bool = False
    negate: bool = False

    def _value(self, message: PrefilterInput) -> Optional[str]:
        if self.field == 'from':
            return message.from_address
        if self.field == 'from_local':
            return message.local_part
        if self.field == 'domain':
            return message.sender_domain
        if self.field == 'to':
            return message.to_address
        if self.field == 'subject':
            return message.subject
        if self.field == 'body':
            return message.body_text
        if self.field == 'list_unsubscribe':
            return message.list_unsubscribe or ""
        logger.warning(f"Unknown field: {self.field}")
        return None

    def evaluate(self, message: PrefilterInput) -> bool:
        value = self._value(message)
        if value is None:
            return False

        pattern = self.pattern
        if not self.case_sensitive:
            value = value.lower()
            pattern = pattern.lower()

        try:
            if self.match_type == 'present':
                result = bool(value.strip())
            elif self.match_type == 'exact':
                result = value == pattern
            elif self.match_type == 'contains':
                result = pattern in value
            elif self.match_type == 'regex':
                result = bool(re.search(pattern, value))
            elif self.match_type == 'domain':
                # Exact domain or any subdomain of it
                domains = [d.lower() for d in (self.values or [pattern]) if d]
                result = any(value == d or value.endswith('.' + d) for d in domains)
            else:
                logger.warning(f"Unknown match_type: {self.match_type}")
                return False
        except re.error as e:
            logger.error(f"Invalid regex pattern '{pattern}': {e}")
            return False

        return not result if self.negate else result


@dataclass
class PrefilterRule:
    """
    A named rule emitting one hint.
    All conditions must match (AND operation).
    """
    name: str
    hint: str
    conditions: List[RuleCondition]
    category: Optional[str] = None  # used only by the whitelist short-circuit

    def matches(self, message: PrefilterInput) -> bool:
        if not self.conditions:
            return False
        return all(condition.evaluate(message) for condition in self.conditions)


@dataclass
class PrefilterResult:
    hints: List[str] = field(default_factory=list)
    matched_rules: List[str] = field(default_factory=list)
    signals: Optional[EmailSignals] = None
    short_circuit: Optional[ClassificationResult] = None

    def has(self, hint: str) -> bool:
        return hint in self.hints


class RulePrefilter:
    """Evaluates pre-filter rules and built-in signals for one message."""

    def __init__(self, rules: Optional[List[PrefilterRule]] = None):
        self.rules = list(rules or [])
        logger.info(f"Initialized RulePrefilter with {len(self.rules)} rules")

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "RulePrefilter":
        """
        Load rules from YAML configuration file.

        Expected shape:
            rules:
              - name: known_banks
                hint: transactional_sender
                category: transaction
                conditions:
                  - field: domain
                    match_type: domain
                    values: [hsbc.com, ...]
        """
        with open(yaml_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}

        rules = []
        for rule_config in config.get('rules', []) or []:
            conditions = [
                RuleCondition(
                    field=cond['field'],
                    pattern=str(cond.get('pattern', '')),
                    match_type=cond.get('match_type', 'contains'),
                    values=tuple(cond.get('values', []) or []),
                    case_sensitive=cond.get('case_sensitive', False),
                    negate=cond.get('negate', False),
                )
                for cond in rule_config.get('conditions', []) or []
            ]
            rules.append(PrefilterRule(
                name=rule_config['name'],
                hint=rule_config['hint'],
                conditions=conditions,
                category=rule_config.get('category'),
            ))

        logger.info(f"Loaded {len(rules)} pre-filter rules from {yaml_path}")
        return cls(rules)

    @classmethod
    def from_config(cls) -> "RulePrefilter":
        """Load config/prefilter_rules.yaml (or the shipped example); no file means no rules."""
        path = get_config_path("prefilter_rules.yaml")
        return cls.from_yaml(path) if path else cls()

    def evaluate(self,
                 message: PrefilterInput,
                 user_email: str = "",
                 domain_list: Optional[str] = None) -> PrefilterResult:
        """
        Args:
            message: Message view
            user_email: Address of the receiving account (same-domain check)
            domain_list: "whitelist", "blacklist" or None for the sender domain

        Returns:
            PrefilterResult with hints and an optional short-circuit classification
        """
        result = PrefilterResult()
        signals = extract_email_signals(message.from_address, message.subject,
                                        message.body_text, message.list_unsubscribe)
        result.signals = signals

        def add(hint: str):
            if hint not in result.hints:
                result.hints.append(hint)

        if user_email and is_same_domain(user_email, message.from_address):
            add(HINT_SAME_DOMAIN)
        if signals.has_unsubscribe:
            add(HINT_BULK_MAIL)
        if signals.is_no_reply:
            add(HINT_NO_REPLY)
        if domain_list == DOMAIN_WHITELIST:
            add(HINT_WHITELISTED)
        elif domain_list == DOMAIN_BLACKLIST:
            add(HINT_BLACKLISTED)

        transactional_category = None
        for rule in self.rules:
            if rule.matches(message):
                result.matched_rules.append(rule.name)
                add(rule.hint)
                if rule.hint == HINT_TRANSACTIONAL and transactional_category is None:
                    transactional_category = rule.category or Category.TRANSACTION.value

        if domain_list == DOMAIN_BLACKLIST:
            result.short_circuit = ClassificationResult(
                priority=1,
                category=Category.SPAM,
                confidence=1.0,
                summary=message.subject[:200],
                needs_reply=False,
                suggested_action=SuggestedAction.DELETE,
                source=ClassificationSource.PREFILTER,
            )
        elif domain_list == DOMAIN_WHITELIST and transactional_category:
            category = Category(transactional_category)
            priority = determine_priority(category.value, message.subject, message.body_text, trust_level='trusted')
            needs_reply = needs_reply_heuristic(category.value, message.subject, message.body_text,
                                                message.from_address)
            result.short_circuit = ClassificationResult(
                priority=priority,
                category=category,
                confidence=0.95,
                summary=message.subject[:200],
                needs_reply=needs_reply,
                suggested_action=SuggestedAction(suggest_action(category.value, priority, needs_reply)),
                source=ClassificationSource.PREFILTER,
            )

        if result.short_circuit:
            logger.debug(f"Pre-filter short-circuit for {message.from_address}: "
                         f"{result.short_circuit.category.value}")
        return result
