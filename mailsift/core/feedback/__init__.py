"""User corrections, accuracy and learned rule suggestions"""
from .loop import FeedbackLoop, FeedbackOutcome, trust_change_for
from .learner import CorrectionEntry, LearnedRule, LearnedRules, derive_rules, extract_keywords

__all__ = [
    'FeedbackLoop',
    'FeedbackOutcome',
    'trust_change_for',
    'CorrectionEntry',
    'LearnedRule',
    'LearnedRules',
    'derive_rules',
    'extract_keywords',
]
