"""Direct message (chat.bsky) representations."""

from dataclasses import dataclass
from typing import Optional, Tuple

from .post import Author


@dataclass(frozen=True)
class ChatMessage:
    id: str
    text: str
    sender_did: str
    sent_at: Optional[str] = None


@dataclass(frozen=True)
class Conversation:
    id: str
    members: Tuple[Author, ...] = ()
    last_message: Optional[ChatMessage] = None
    unread_count: int = 0
    muted: bool = False


@dataclass(frozen=True)
class ConversationsPage:
    conversations: Tuple[Conversation, ...] = ()
    cursor: Optional[str] = None


@dataclass(frozen=True)
class MessagesPage:
    messages: Tuple[ChatMessage, ...] = ()
    cursor: Optional[str] = None
