"""Moderation settings and the feed filter built on them.

Settings mirror the account's server-side preferences: label visibility,
the adult-content switch, muted words and the per-feed view filters
(hide reposts, replies and quote posts).
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from .post import FeedInfo, FeedViewPost, Post, parse_datetime

HIDE = 'hide'
WARN = 'warn'
SHOW = 'show'

# Key the server uses for the Following timeline's feed view preference
HOME_FEED = 'home'

ADULT_LABELS = frozenset({'porn', 'sexual', 'nudity'})

DEFAULT_LABEL_VISIBILITY = {
    'sexual': WARN,
    'nudity': WARN,
    'porn': HIDE,
    'nsfl': HIDE,
    'gore': HIDE,
    'violence': HIDE,
    'hate': WARN,
    'spam': WARN,
    'impersonation': WARN,
    '!hide': HIDE,
    '!warn': WARN,
}

# Server values are hide/warn/ignore; older clients also wrote show
_VISIBILITY_ALIASES = {'ignore': SHOW, 'show': SHOW, 'warn': WARN, 'hide': HIDE}


@dataclass(frozen=True)
class MutedWord:
    """A muted word or tag.

    `targets` holds 'content' and/or 'tag'. With actor_target
    'exclude-following', posts by accounts the user follows are not muted.
    """
    value: str
    targets: Tuple[str, ...] = ('content',)
    actor_target: str = 'all'
    expires_at: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires = parse_datetime(self.expires_at)
        if expires is None:
            return False
        return expires <= (now or datetime.now(timezone.utc))

    def matches(self, post: Post) -> bool:
        if self.actor_target == 'exclude-following' and post.author.following:
            return False
        value = self.value.strip()
        if not value:
            return False
        if 'tag' in self.targets:
            tag = value.lstrip('#').lower()
            if any(existing.lower() == tag for existing in post.record.hashtags()):
                return True
        if 'content' in self.targets:
            pattern = r'(?<!\w)' + re.escape(value) + r'(?!\w)'
            if re.search(pattern, post.text, re.IGNORECASE):
                return True
        return False


@dataclass(frozen=True)
class FeedViewFilter:
    hide_reposts: bool = False
    hide_replies: bool = False
    hide_quote_posts: bool = False

    def excludes(self, item: FeedViewPost) -> bool:
        if self.hide_reposts and item.reason is not None:
            return True
        if self.hide_replies and (item.reply is not None or item.post.record.reply is not None):
            return True
        embed = item.post.embed
        if self.hide_quote_posts and embed is not None and embed.kind in ('record', 'record_with_media'):
            return True
        return False


@dataclass(frozen=True)
class ModerationSettings:
    adult_content_enabled: bool = False
    label_visibility: Dict[str, str] = field(default_factory=dict)
    muted_words: Tuple[MutedWord, ...] = ()
    feed_filters: Dict[str, FeedViewFilter] = field(default_factory=dict)

    def visibility(self, label: str) -> str:
        """How content carrying `label` is shown: HIDE, WARN or SHOW."""
        if label in ('!hide', '!warn'):
            return DEFAULT_LABEL_VISIBILITY[label]
        if label in ADULT_LABELS and not self.adult_content_enabled:
            return HIDE
        configured = self.label_visibility.get(label) or DEFAULT_LABEL_VISIBILITY.get(label, SHOW)
        return _VISIBILITY_ALIASES.get(configured, SHOW)

    def feed_filter(self, feed: FeedInfo) -> FeedViewFilter:
        key = HOME_FEED if feed.is_following else feed.uri
        return self.feed_filters.get(key) or FeedViewFilter()

    def to_dict(self) -> dict:
        return {
            'adult_content_enabled': self.adult_content_enabled,
            'label_visibility': dict(self.label_visibility),
            'muted_words': [
                {'value': w.value, 'targets': list(w.targets), 'actor_target': w.actor_target,
                 'expires_at': w.expires_at}
                for w in self.muted_words
            ],
            'feed_filters': {
                key: {'hide_reposts': f.hide_reposts, 'hide_replies': f.hide_replies,
                      'hide_quote_posts': f.hide_quote_posts}
                for key, f in self.feed_filters.items()
            },
        }

    @classmethod
    def from_dict(cls, data) -> 'ModerationSettings':
        data = dict(data or {})
        return cls(
            adult_content_enabled=bool(data.get('adult_content_enabled', False)),
            label_visibility=dict(data.get('label_visibility') or {}),
            muted_words=tuple(
                MutedWord(
                    value=word['value'],
                    targets=tuple(word.get('targets') or ('content',)),
                    actor_target=word.get('actor_target') or 'all',
                    expires_at=word.get('expires_at'),
                )
                for word in data.get('muted_words') or () if word.get('value')
            ),
            feed_filters={
                key: FeedViewFilter(**{k: bool(v) for k, v in dict(value).items()
                                       if k in ('hide_reposts', 'hide_replies', 'hide_quote_posts')})
                for key, value in (data.get('feed_filters') or {}).items()
            },
        )


def moderate_post(post: Post, settings: ModerationSettings, now: Optional[datetime] = None) -> str:
    """HIDE, WARN or SHOW for a single post.

    A live muted word hides the post. Otherwise the strictest visibility
    among the post's and its author's labels wins.
    """
    for word in settings.muted_words:
        if not word.is_expired(now) and word.matches(post):
            return HIDE
    result = SHOW
    for label in post.labels + post.author.labels:
        visibility = settings.visibility(label)
        if visibility == HIDE:
            return HIDE
        if visibility == WARN:
            result = WARN
    return result


def filter_feed_items(items, settings: ModerationSettings, feed: FeedInfo, now: Optional[datetime] = None):
    """Drop entries the feed filter excludes or moderation hides; warned posts stay."""
    feed_filter = settings.feed_filter(feed)
    return tuple(
        item for item in items
        if not feed_filter.excludes(item) and moderate_post(item.post, settings, now) != HIDE
    )
