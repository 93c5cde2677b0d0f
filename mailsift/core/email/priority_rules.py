"""
Deterministic priority, needs-reply and action rules.

Priority scale:
    5 = urgent, 4 = high, 3 = normal, 2 = low, 1 = very low (promotions, spam)

Used whenever a classification is made without the model (pre-filter or
reputation shortcut).
"""
import re
from typing import Optional

from .signals import is_no_reply

OTP_PATTERN = re.compile(r'otp|verification|security code|mã xác nhận|xác thực', re.IGNORECASE)
ALERT_PATTERN = re.compile(r'alert|security alert|fraud|unusual activity|cảnh báo|biến động', re.IGNORECASE)
PAYMENT_DUE_PATTERN = re.compile(r'payment due|invoice due|hạn thanh toán|hóa đơn', re.IGNORECASE)
WORK_URGENT_PATTERN = re.compile(r'urgent|asap|deadline today|\beod\b|immediately|critical|gấp|khẩn', re.IGNORECASE)
MEETING_TODAY_PATTERN = re.compile(r'meeting.*today', re.IGNORECASE)
DEADLINE_PATTERN = re.compile(r'deadline|due date|hạn chót', re.IGNORECASE)
REVIEW_PATTERN = re.compile(r'review|approval|phê duyệt', re.IGNORECASE)
SOCIAL_MESSAGE_PATTERN = re.compile(r'message|\bdm\b|direct|tin nhắn', re.IGNORECASE)
REPLY_SUBJECT_PATTERN = re.compile(r'^\s*(re|aw|sv)\s*:', re.IGNORECASE)

QUESTION_PATTERN = re.compile(r'\?|please (advise|confirm|let me know)')
REVIEW_REQUEST_PATTERN = re.compile(r'for your (review|approval)|review needed')
ACTION_REQUIRED_PATTERN = re.compile(r'action required')
TRANSACTION_ACTION_PATTERN = re.compile(r'please (confirm|verify|respond)')


def is_reply_thread(subject: Optional[str]) -> bool:
    return bool(REPLY_SUBJECT_PATTERN.match(subject or ''))


def determine_priority(category: str,
                       subject: Optional[str] = None,
                       body_text: Optional[str] = None,
                       trust_level: Optional[str] = None,
                       replied_thread: bool = False) -> int:
    """Priority 1-5 from category and subject/body keywords."""
    subject = subject or ''
    text = f"{subject} {body_text or ''}"

    if category == 'spam' or trust_level == 'blocked':
        return 1

    if category == 'transaction':
        if OTP_PATTERN.search(subject) or ALERT_PATTERN.search(subject):
            return 5
        if PAYMENT_DUE_PATTERN.search(subject):
            return 4
        return 3

    if category == 'work':
        if WORK_URGENT_PATTERN.search(subject) or MEETING_TODAY_PATTERN.search(text):
            return 5
        if DEADLINE_PATTERN.search(subject) or REVIEW_PATTERN.search(subject):
            return 4
        if replied_thread or is_reply_thread(subject):
            return 4
        return 3

    if category == 'personal':
        return 3

    if category == 'social':
        return 3 if SOCIAL_MESSAGE_PATTERN.search(subject) else 2

    if category == 'newsletter':
        return 2

    if category == 'promotion':
        return 2 if trust_level in ('trusted', 'verified') else 1

    return 3


def needs_reply_heuristic(category: str,
                          subject: Optional[str],
                          body_text: Optional[str],
                          from_address: Optional[str]) -> bool:
    """No-reply senders and bulk categories never need a reply."""
    if category in ('spam', 'newsletter', 'promotion', 'social'):
        return False
    if is_no_reply(from_address):
        return False

    text = f"{subject or ''} {body_text or ''}".lower()
    if category == 'transaction':
        return bool(TRANSACTION_ACTION_PATTERN.search(text))
    if category == 'work':
        return bool(QUESTION_PATTERN.search(text) or REVIEW_REQUEST_PATTERN.search(text)
                    or ACTION_REQUIRED_PATTERN.search(text))
    if category == 'personal':
        return '?' in text
    return False


def suggest_action(category: str, priority: int, needs_reply: bool) -> str:
    if needs_reply and priority >= 4:
        return 'reply'
    if category == 'spam':
        return 'delete'
    if category == 'promotion' and priority <= 1:
        return 'archive'
    if category == 'newsletter':
        return 'read_later'
    if category == 'transaction':
        return 'archive'
    if needs_reply:
        return 'reply'
    return 'none'
