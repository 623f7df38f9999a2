"""Notification (app.bsky.notification) representations."""

from dataclasses import dataclass
from typing import Optional, Tuple

from .post import Author


@dataclass(frozen=True)
class Notification:
    """One activity item.

    `reason` is the server's reason string ('like', 'repost', 'follow',
    'mention', 'reply', 'quote', ...). `reason_subject` is the URI of our
    post that was liked, reposted or quoted. `text` is only set when the
    notification's record is a post.
    """
    uri: str
    cid: str
    author: Author
    reason: str
    indexed_at: str
    is_read: bool = False
    reason_subject: Optional[str] = None
    text: str = ""
    labels: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NotificationsPage:
    notifications: Tuple[Notification, ...] = ()
    cursor: Optional[str] = None
    seen_at: Optional[str] = None

    @property
    def unread_count(self) -> int:
        return sum(1 for notification in self.notifications if not notification.is_read)
