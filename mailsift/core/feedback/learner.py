"""
Learned rule suggestions from the correction log.

A sender (or domain) that the user keeps moving to the same category is a
candidate for a deterministic rule. Suggestions are derived on query and
never applied automatically.
"""
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List
import re

MIN_FEEDBACK = 3
MIN_AGREEING = 2
MIN_AGREEMENT = 0.7
SENDER_RULE_CONFIDENCE = 0.9
DOMAIN_RULE_CONFIDENCE = 0.8
MAX_KEYWORDS = 10

STOPWORDS = frozenset([
    'the', 'a', 'an', 'is', 'are', 'was', 'were', 'be', 'been',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would',
    'could', 'should', 'may', 'might', 'must', 'shall',
    'for', 'and', 'nor', 'but', 'or', 'yet', 'so',
    'in', 'on', 'at', 'to', 'from', 'by', 'with', 'about',
    'your', 'you', 'our', 'this', 'that', 'new',
    'của', 'và', 'hoặc', 'trong', 'với', 'cho', 'từ',
    'là', 'được', 'có', 'này', 'đó', 'các', 'những',
    're', 'fw', 'fwd',
])

_NON_WORD = re.compile(r'[^\w\s]+')


def extract_keywords(subject: str, limit: int = MAX_KEYWORDS) -> List[str]:
    """Significant lower-cased words of a subject line (stopwords and short words removed)."""
    words = _NON_WORD.sub(' ', (subject or '').lower()).split()
    keywords = []
    for word in words:
        if len(word) > 2 and word not in STOPWORDS and not word.isdigit() and word not in keywords:
            keywords.append(word)
    return keywords[:limit]


@dataclass
class CorrectionEntry:
    sender_email: str
    sender_domain: str
    subject: str
    corrected_category: str


@dataclass
class LearnedRule:
    kind: str  # 'sender' | 'domain'
    key: str
    category: str
    confidence: float
    support: int


@dataclass
class LearnedRules:
    sender_rules: List[LearnedRule] = field(default_factory=list)
    domain_rules: List[LearnedRule] = field(default_factory=list)
    keywords: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'sender_rules': [asdict(r) for r in self.sender_rules],
            'domain_rules': [asdict(r) for r in self.domain_rules],
            'keywords': dict(self.keywords),
        }


def _rules_for(groups: Dict[str, List[str]], kind: str, confidence: float) -> List[LearnedRule]:
    rules = []
    for key, categories in groups.items():
        if not key or len(categories) < MIN_AGREEING:
            continue
        category, count = Counter(categories).most_common(1)[0]
        if count >= MIN_AGREEING and count / len(categories) >= MIN_AGREEMENT:
            rules.append(LearnedRule(kind=kind, key=key, category=category,
                                     confidence=confidence, support=count))
    return sorted(rules, key=lambda r: (-r.support, r.key))


def derive_rules(entries: Iterable[CorrectionEntry]) -> LearnedRules:
    """
    Build rule suggestions from corrections (newest first).

    A rule is suggested when at least two corrections for the same sender
    or domain agree on one category and that category holds at least 70%
    of them. Sender rules are the stronger signal.
    """
    entries = list(entries)
    if len(entries) < MIN_FEEDBACK:
        return LearnedRules()

    by_sender: Dict[str, List[str]] = defaultdict(list)
    by_domain: Dict[str, List[str]] = defaultdict(list)
    keyword_counts: Dict[str, Counter] = defaultdict(Counter)
    for entry in entries:
        by_sender[entry.sender_email].append(entry.corrected_category)
        by_domain[entry.sender_domain].append(entry.corrected_category)
        keyword_counts[entry.corrected_category].update(extract_keywords(entry.subject))

    keywords = {
        category: [word for word, count in counts.most_common(MAX_KEYWORDS) if count >= MIN_AGREEING]
        for category, counts in keyword_counts.items()
    }
    return LearnedRules(
        sender_rules=_rules_for(by_sender, 'sender', SENDER_RULE_CONFIDENCE),
        domain_rules=_rules_for(by_domain, 'domain', DOMAIN_RULE_CONFIDENCE),
        keywords={category: words for category, words in keywords.items() if words},
    )
