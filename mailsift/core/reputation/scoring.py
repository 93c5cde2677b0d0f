"""
Reputation scoring.

Pure functions over raw counters. Every derived value (confidence,
primary category, trust level) can be recomputed from the counters
alone, which is what makes `rebuild` safe to interrupt.

Confidence:
    min(total / saturation, 1) * volume_weight
  + min(overrides * override_step, override_cap)
  + (top category score / sum of category scores) * concentration_weight
clamped to [0, 1].
"""
from dataclasses import dataclass
from typing import Dict, Optional

TRUST_VERIFIED = "verified"
TRUST_TRUSTED = "trusted"
TRUST_NEUTRAL = "neutral"
TRUST_LOW = "low"
TRUST_UNTRUSTED = "untrusted"

OVERRIDE_TRUSTED = "trusted"
OVERRIDE_UNTRUSTED = "untrusted"

NEUTRAL_SCORE = 50
WHITELIST_SCORE = 90
BLACKLIST_SCORE = 0


@dataclass
class ReputationWeights:
    volume_saturation: int = 20
    volume_weight: float = 0.5
    override_step: float = 0.15
    override_cap: float = 0.3
    concentration_weight: float = 0.2

    @classmethod
    def from_settings(cls, settings) -> "ReputationWeights":
        return cls(
            volume_saturation=settings.reputation_volume_saturation,
            volume_weight=settings.reputation_volume_weight,
            override_step=settings.reputation_override_step,
            override_cap=settings.reputation_override_cap,
            concentration_weight=settings.reputation_concentration_weight,
        )


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def compute_confidence(total: int,
                       overrides: int,
                       category_scores: Optional[Dict[str, int]],
                       weights: Optional[ReputationWeights] = None) -> float:
    """Monotone in total and overrides; higher for senders classified consistently."""
    weights = weights or ReputationWeights()
    saturation = max(1, weights.volume_saturation)

    volume = min(max(total, 0) / saturation, 1.0) * weights.volume_weight
    override = min(max(overrides, 0) * weights.override_step, weights.override_cap)

    concentration = 0.0
    positive = [s for s in (category_scores or {}).values() if s > 0]
    if positive:
        concentration = (max(positive) / sum(positive)) * weights.concentration_weight

    return round(clamp(volume + override + concentration), 4)


def primary_category(category_scores: Optional[Dict[str, int]]) -> Optional[str]:
    """Highest-scoring category (ties broken by name for stability)."""
    positive = {c: s for c, s in (category_scores or {}).items() if s > 0}
    if not positive:
        return None
    return sorted(positive.items(), key=lambda item: (-item[1], item[0]))[0][0]


def engagement_score(opened: int = 0, replied: int = 0, deleted: int = 0, spam: int = 0) -> int:
    """0-100 engagement score for a sender (50 = no signal)."""
    score = (NEUTRAL_SCORE
             + min(20, opened * 2)
             + min(20, replied * 5)
             - min(20, deleted * 2)
             - min(40, spam * 10))
    return int(clamp(score, 0, 100))


def domain_score(opened: int = 0, deleted: int = 0,
                 is_whitelisted: bool = False, is_blacklisted: bool = False) -> int:
    """0-100 domain reputation; admin list flags pin the score."""
    if is_blacklisted:
        return BLACKLIST_SCORE
    if is_whitelisted:
        return WHITELIST_SCORE
    return int(clamp(NEUTRAL_SCORE + min(20, opened * 2) - min(20, deleted * 2), 0, 100))


def trust_level_for_score(score: int) -> str:
    if score >= 90:
        return TRUST_VERIFIED
    if score >= 70:
        return TRUST_TRUSTED
    if score >= 40:
        return TRUST_NEUTRAL
    if score >= 20:
        return TRUST_LOW
    return TRUST_UNTRUSTED


def sender_trust_level(override: Optional[str], score: int) -> str:
    """A user override always wins over the counters."""
    if override == OVERRIDE_TRUSTED:
        return TRUST_TRUSTED
    if override == OVERRIDE_UNTRUSTED:
        return TRUST_UNTRUSTED
    return trust_level_for_score(score)
