"""
Email Classification Prompt

The model sees a bounded context: header, body excerpt, pre-filter hints
and the sender's reputation snapshot. It must answer with one JSON object
matching ClassificationResult.
"""
from typing import Dict, List, Optional

PROMPT_VERSION = "v1.0"

SYSTEM_PROMPT = "You are an email triage assistant. You answer with a single JSON object and nothing else."


def format_header(from_address: str, from_name: Optional[str], subject: Optional[str],
                  to_address: Optional[str] = None, received_at: Optional[str] = None) -> str:
    lines = [f"From: {from_name} <{from_address}>" if from_name else f"From: {from_address}"]
    if to_address:
        lines.append(f"To: {to_address}")
    lines.append(f"Subject: {subject or '(no subject)'}")
    if received_at:
        lines.append(f"Date: {received_at}")
    return "\n".join(lines)


def format_context(hints: List[str], reputation: Optional[Dict], user_domain: Optional[str]) -> str:
    lines = []
    if user_domain:
        lines.append(f"Recipient domain: {user_domain}")
    if hints:
        lines.append(f"Pre-filter hints: {', '.join(hints)}")
    if reputation:
        lines.append(
            f"Sender reputation: trust={reputation.get('trust_level')}, "
            f"confidence={reputation.get('confidence', 0):.2f}, "
            f"usual category={reputation.get('primary_category') or 'unknown'}, "
            f"received={reputation.get('received', 0)}, opened={reputation.get('opened', 0)}, "
            f"replied={reputation.get('replied', 0)}, spam={reputation.get('spam', 0)}"
        )
    return "\n".join(lines) if lines else "(none)"


def get_classifier_prompt(header: str, content: str, context: str) -> str:
    """
    Version 1.0 - Closed category set, strict JSON output

    Args:
        header: Formatted header block
        content: Body excerpt (HTML stripped, truncated)
        context: Hints and reputation block
    """
    return f"""Classify this email.

EMAIL:
{header}

CONTENT:
{content}

CONTEXT:
{context}

---

CATEGORIES (pick exactly one):
- work: human-written work correspondence
- personal: family, friends, personal matters
- newsletter: subscribed newsletters and digests
- promotion: marketing, offers, advertisements
- transaction: receipts, bank alerts, OTP codes, orders, bookings
- social: social network notifications and messages
- spam: unwanted or fraudulent mail
- uncategorized: none of the above

PRIORITY: 5 urgent, 4 high, 3 normal, 2 low, 1 very low.

OUTPUT (strict JSON, no prose):
{{
  "priority": 1-5,
  "category": "<one category>",
  "confidence": 0.0-1.0,
  "summary": "one sentence",
  "needs_reply": true|false,
  "deadline": "YYYY-MM-DD" or null,
  "suggested_action": "reply|archive|delete|read_later|none",
  "key_entities": {{"people": [], "dates": [], "amounts": [], "tasks": []}},
  "suggested_labels": []
}}
"""
