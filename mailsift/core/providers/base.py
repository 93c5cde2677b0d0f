"""
Provider Adapter contract.

Both protocol implementations (stateful IMAP session, token-based Gmail
REST) expose the same async interface, so the sync coordinator never
branches on the account's protocol. Adapters raise only
mailsift.core.errors.ProviderError subclasses.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


# Limits applied when materializing bodies
MAX_BODY_TEXT_CHARS = 50000
MAX_BODY_HTML_CHARS = 100000


@dataclass
class RawMessage:
    """Header-level view of one message as returned by a listing call."""
    provider_message_id: str
    provider_uid: str
    from_address: str = ""
    from_name: Optional[str] = None
    to_address: Optional[str] = None
    subject: Optional[str] = None
    received_at: Optional[datetime] = None
    thread_id: Optional[str] = None
    snippet: Optional[str] = None
    list_unsubscribe: Optional[str] = None
    has_attachments: bool = False
    labels: List[str] = field(default_factory=list)
    is_read: bool = False
    is_starred: bool = False
    direction: str = "inbound"
    # Set when the protocol hands the body over with the listing (Gmail format=full)
    body_text: Optional[str] = None
    body_html: Optional[str] = None

    @property
    def body_fetched(self) -> bool:
        return self.body_text is not None or self.body_html is not None


@dataclass
class FetchResult:
    """Messages from one listing call plus the cursor candidate they justify."""
    messages: List[RawMessage]
    new_cursor: int
    uid_validity: Optional[int] = None


@dataclass
class MessageRef:
    """Identifies a stored message for on-demand operations."""
    provider_uid: str
    provider_message_id: Optional[str] = None
    folder: str = "INBOX"


@dataclass
class BodyContent:
    text: str = ""
    html: str = ""

    def truncated(self) -> "BodyContent":
        return BodyContent(text=(self.text or "")[:MAX_BODY_TEXT_CHARS],
                           html=(self.html or "")[:MAX_BODY_HTML_CHARS])


class ProviderAdapter(ABC):
    """Uniform async contract over one external mail protocol."""

    kind: str = "unknown"

    @abstractmethod
    async def list_new_messages(self, cursor: int, limit: int, full_sync: bool = False) -> FetchResult:
        """
        List messages after cursor.

        Args:
            cursor: Last persisted position (0 = never synced)
            limit: Maximum number of messages to return
            full_sync: Ignore cursor and re-scan from the beginning up to limit

        Returns:
            FetchResult with messages and a new cursor candidate (>= cursor)
        """

    @abstractmethod
    async def fetch_body(self, ref: MessageRef) -> BodyContent:
        """Fetch the full body of one message."""

    @abstractmethod
    async def mark_read(self, ref: MessageRef) -> None:
        ...

    @abstractmethod
    async def archive(self, ref: MessageRef) -> None:
        ...

    @abstractmethod
    async def trash(self, ref: MessageRef) -> None:
        ...

    async def close(self) -> None:
        """Release any long-lived resources (default: nothing to do)."""
        return None
