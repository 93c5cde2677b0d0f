"""Message-level processing: lazy bodies, signals, priority rules, pre-filter"""
from .signals import EmailSignals, extract_email_signals, is_same_domain, is_no_reply, domain_of
from .priority_rules import determine_priority, needs_reply_heuristic, suggest_action
from .prefilter import (
    PrefilterInput,
    PrefilterResult,
    PrefilterRule,
    RuleCondition,
    RulePrefilter,
)

__all__ = [
    'EmailSignals',
    'extract_email_signals',
    'is_same_domain',
    'is_no_reply',
    'domain_of',
    'determine_priority',
    'needs_reply_heuristic',
    'suggest_action',
    'PrefilterInput',
    'PrefilterResult',
    'PrefilterRule',
    'RuleCondition',
    'RulePrefilter',
]
