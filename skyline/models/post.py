"""Post and feed representations for the Bluesky timeline."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Tuple, Any

# Placeholder record URI used while a like/repost request is in flight
PENDING_RECORD_URI = "temp"


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an AT Protocol datetime string; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Author:
    """Profile summary attached to posts, reposts and feed generators."""
    did: str
    handle: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    labels: Tuple[str, ...] = ()
    following: Optional[str] = None  # URI of our follow record, if we follow them

    @property
    def name(self) -> str:
        return self.display_name or self.handle


@dataclass(frozen=True)
class PostViewer:
    """The signed-in user's relationship to a post."""
    like: Optional[str] = None  # URI of our like record
    repost: Optional[str] = None  # URI of our repost record


@dataclass(frozen=True)
class FacetFeature:
    """One rich-text feature: 'mention' (value is a DID), 'link' (URI) or 'tag'."""
    kind: str
    value: str


@dataclass(frozen=True)
class Facet:
    """A span of post text, addressed by UTF-8 byte offsets."""
    byte_start: int
    byte_end: int
    features: Tuple[FacetFeature, ...] = ()


@dataclass(frozen=True)
class ReplyRef:
    """Strong references to the root and parent of a reply."""
    root_uri: str
    root_cid: str
    parent_uri: str
    parent_cid: str


@dataclass(frozen=True)
class PostRecord:
    """The app.bsky.feed.post record itself."""
    text: str = ""
    created_at: Optional[str] = None
    facets: Tuple[Facet, ...] = ()
    langs: Tuple[str, ...] = ()
    reply: Optional[ReplyRef] = None
    tags: Tuple[str, ...] = ()

    def hashtags(self) -> Tuple[str, ...]:
        """Tags from the record and from tag facets, without the leading '#'."""
        found = list(self.tags)
        for facet in self.facets:
            found.extend(f.value for f in facet.features if f.kind == 'tag')
        return tuple(tag.lstrip('#') for tag in found)


@dataclass(frozen=True)
class ImageView:
    thumb: str
    fullsize: str
    alt: str = ""


@dataclass(frozen=True)
class VideoView:
    playlist: str
    thumbnail: Optional[str] = None
    alt: Optional[str] = None
    aspect_ratio: Optional[Tuple[int, int]] = None


@dataclass(frozen=True)
class ExternalView:
    uri: str
    title: str = ""
    description: str = ""
    thumb: Optional[str] = None


@dataclass(frozen=True)
class EmbeddedRecord:
    """A quoted post as it appears inside another post's embed."""
    uri: str
    cid: Optional[str] = None
    author: Optional[Author] = None
    text: str = ""
    created_at: Optional[str] = None


@dataclass(frozen=True)
class Embed:
    """Post embed.

    kind is one of 'images', 'video', 'external', 'record' or
    'record_with_media'. For 'record_with_media', `record` holds the quoted
    post and `media` the nested images/video/external embed.
    """
    kind: str
    images: Tuple[ImageView, ...] = ()
    video: Optional[VideoView] = None
    external: Optional[ExternalView] = None
    record: Optional[EmbeddedRecord] = None
    media: Optional['Embed'] = None


@dataclass(frozen=True)
class Post:
    """A post view as returned by the AppView."""
    uri: str
    cid: str
    author: Author
    record: PostRecord = field(default_factory=PostRecord)
    embed: Optional[Embed] = None
    reply_count: int = 0
    repost_count: int = 0
    like_count: int = 0
    quote_count: int = 0
    indexed_at: Optional[str] = None
    viewer: PostViewer = field(default_factory=PostViewer)
    labels: Tuple[str, ...] = ()

    # Server JSON the post was decoded from (used by the timeline cache)
    _platform_data: Any = field(default=None, compare=False, repr=False)

    @property
    def text(self) -> str:
        return self.record.text

    @property
    def is_liked(self) -> bool:
        return self.viewer.like is not None

    @property
    def is_reposted(self) -> bool:
        return self.viewer.repost is not None

    @property
    def created_at(self) -> Optional[datetime]:
        """When the post was written, falling back to when it was indexed."""
        return parse_datetime(self.record.created_at) or parse_datetime(self.indexed_at)


def _adjust(count: int, before: Optional[str], after: Optional[str]) -> int:
    if before is None and after is not None:
        count += 1
    elif before is not None and after is None:
        count -= 1
    return max(count, 0)


def with_like(post: Post, like_uri: Optional[str]) -> Post:
    """Return `post` with viewer.like set to `like_uri` and like_count adjusted."""
    return replace(
        post,
        viewer=replace(post.viewer, like=like_uri),
        like_count=_adjust(post.like_count, post.viewer.like, like_uri),
    )


def with_repost(post: Post, repost_uri: Optional[str]) -> Post:
    """Return `post` with viewer.repost set to `repost_uri` and repost_count adjusted."""
    return replace(
        post,
        viewer=replace(post.viewer, repost=repost_uri),
        repost_count=_adjust(post.repost_count, post.viewer.repost, repost_uri),
    )


@dataclass(frozen=True)
class RepostReason:
    by: Author
    indexed_at: Optional[str] = None


@dataclass(frozen=True)
class ReplyContext:
    """Root and parent of a reply shown in a feed; either may be unavailable."""
    root: Optional[Post] = None
    parent: Optional[Post] = None


@dataclass(frozen=True, eq=False)
class FeedViewPost:
    """A feed entry: a post, possibly reposted by someone, possibly a reply.

    An original post and a repost of it are different entries. Two entries
    compare equal when they are the same entry and show the same like/repost
    state, which is all a list view needs to decide whether to redraw.
    """
    post: Post
    reason: Optional[RepostReason] = None
    reply: Optional[ReplyContext] = None
    _platform_data: Any = field(default=None, compare=False, repr=False)

    @property
    def id(self) -> str:
        if self.reason is not None:
            return f"{self.post.uri}-repost-{self.reason.by.did}-{self.reason.indexed_at or ''}"
        return self.post.uri

    @property
    def uri(self) -> str:
        return self.post.uri

    def _key(self):
        post = self.post
        return (self.id, post.viewer.like, post.viewer.repost, post.like_count, post.repost_count)

    def __eq__(self, other):
        if not isinstance(other, FeedViewPost):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())


@dataclass(frozen=True)
class FeedInfo:
    """A feed the user can select: the home timeline or a feed generator."""
    uri: str
    display_name: str
    description: str = ""
    avatar: Optional[str] = None
    creator_handle: Optional[str] = None

    @property
    def is_following(self) -> bool:
        return self.uri == FOLLOWING.uri


FOLLOWING = FeedInfo(uri="following", display_name="Following")


@dataclass(frozen=True)
class SavedFeedsPreference:
    """Pinned and saved feed generator URIs from the user's preferences."""
    pinned: Tuple[str, ...] = ()
    saved: Tuple[str, ...] = ()

    def feed_uris(self) -> Tuple[str, ...]:
        """Pinned feeds first, then saved ones, without duplicates."""
        seen = set()
        result = []
        for uri in self.pinned + self.saved:
            if uri not in seen:
                seen.add(uri)
                result.append(uri)
        return tuple(result)


@dataclass(frozen=True)
class FeedPage:
    items: Tuple[FeedViewPost, ...] = ()
    cursor: Optional[str] = None


@dataclass(frozen=True)
class PostsPage:
    posts: Tuple[Post, ...] = ()
    cursor: Optional[str] = None
    hits_total: Optional[int] = None


@dataclass(frozen=True)
class Profile:
    """Full actor profile (search results, follows, profile lookups)."""
    did: str
    handle: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    description: Optional[str] = None
    followers_count: int = 0
    follows_count: int = 0
    posts_count: int = 0
    following: Optional[str] = None  # URI of our follow record
    followed_by: Optional[str] = None


@dataclass(frozen=True)
class ActorsPage:
    actors: Tuple[Profile, ...] = ()
    cursor: Optional[str] = None
