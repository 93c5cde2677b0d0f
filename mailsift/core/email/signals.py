"""
Cheap deterministic signals extracted from a message.

Used as pre-filter hints and passed to the classifier as context.
"""
import re
from dataclasses import asdict, dataclass
from typing import Dict, Optional

# Free-mail providers: sharing one says nothing about being colleagues
COMMON_PROVIDERS = {'gmail.com', 'yahoo.com', 'outlook.com', 'hotmail.com', 'icloud.com'}

NO_REPLY_PATTERN = re.compile(r'noreply|no-reply|donotreply|do-not-reply|mailer-daemon|bounce', re.IGNORECASE)
MARKETING_PATTERN = re.compile(r'marketing|promo|newsletter|campaign|bulk|notify|notification', re.IGNORECASE)
SUPPORT_PATTERN = re.compile(r'support|info|help|service|contact', re.IGNORECASE)
UNSUBSCRIBE_PATTERN = re.compile(r'unsubscribe|opt.out|hủy đăng ký|ngừng nhận', re.IGNORECASE)
PROMO_PATTERN = re.compile(
    r'\b(sale|discount|free|limited|exclusive|deal|giảm giá|khuyến mãi|miễn phí|ưu đãi)\b|%\s*off',
    re.IGNORECASE,
)
URGENT_PATTERN = re.compile(r'\b(urgent|asap|immediately|important|gấp|khẩn|quan trọng)\b', re.IGNORECASE)
LINK_PATTERN = re.compile(r'https?://')
CAPS_WORD_PATTERN = re.compile(r'[A-Z]{3,}')
PUNCTUATION_PATTERN = re.compile(r'[!?]{2,}')
CURRENCY_PATTERN = re.compile(r'[$€£¥₫]\s*\d')
GREETING_PATTERN = re.compile(r'^(hi|hello|hey|dear|chào)\s', re.IGNORECASE)


def domain_of(address: Optional[str]) -> str:
    address = (address or '').strip().lower()
    return address.rsplit('@', 1)[-1] if '@' in address else ''


def is_same_domain(user_email: str, sender_email: str) -> bool:
    """True when both addresses share a non free-mail domain."""
    user_domain = domain_of(user_email)
    sender_domain = domain_of(sender_email)
    if not user_domain or not sender_domain:
        return False
    if user_domain in COMMON_PROVIDERS or sender_domain in COMMON_PROVIDERS:
        return False
    return user_domain == sender_domain


def is_no_reply(address: Optional[str]) -> bool:
    return bool(NO_REPLY_PATTERN.search(address or ''))


@dataclass
class EmailSignals:
    is_no_reply: bool = False
    is_marketing: bool = False
    is_support_or_info: bool = False
    has_personal_greeting: bool = False
    has_unsubscribe: bool = False
    has_promo_words: bool = False
    has_urgent_words: bool = False
    has_excessive_caps: bool = False
    has_excessive_punctuation: bool = False
    has_currency: bool = False
    link_count: int = 0
    body_length: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


def extract_email_signals(from_address: str,
                          subject: Optional[str] = None,
                          body_text: Optional[str] = None,
                          list_unsubscribe: Optional[str] = None) -> EmailSignals:
    """Extract sender, content and spam-shape signals."""
    sender = (from_address or '').lower()
    subject = subject or ''
    body = body_text or ''

    return EmailSignals(
        is_no_reply=is_no_reply(sender),
        is_marketing=bool(MARKETING_PATTERN.search(sender)),
        is_support_or_info=bool(SUPPORT_PATTERN.search(sender)),
        has_personal_greeting=bool(GREETING_PATTERN.match(body.strip())),
        has_unsubscribe=bool(list_unsubscribe) or bool(UNSUBSCRIBE_PATTERN.search(body)),
        has_promo_words=bool(PROMO_PATTERN.search(f"{subject} {body}")),
        has_urgent_words=bool(URGENT_PATTERN.search(subject)),
        has_excessive_caps=len(CAPS_WORD_PATTERN.findall(subject)) > 2,
        has_excessive_punctuation=bool(PUNCTUATION_PATTERN.search(subject)),
        has_currency=bool(CURRENCY_PATTERN.search(f"{subject} {body}")),
        link_count=len(LINK_PATTERN.findall(body)),
        body_length=len(body),
    )
