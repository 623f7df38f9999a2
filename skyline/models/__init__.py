"""Data models shared by the client and the controllers."""

from .account import Account
from .chat import ChatMessage, Conversation, ConversationsPage, MessagesPage
from .moderation import (
    HIDE,
    SHOW,
    WARN,
    FeedViewFilter,
    ModerationSettings,
    MutedWord,
    filter_feed_items,
    moderate_post,
)
from .notification import Notification, NotificationsPage
from .post import (
    FOLLOWING,
    PENDING_RECORD_URI,
    ActorsPage,
    Author,
    Embed,
    EmbeddedRecord,
    ExternalView,
    Facet,
    FacetFeature,
    FeedInfo,
    FeedPage,
    FeedViewPost,
    ImageView,
    Post,
    PostRecord,
    PostsPage,
    PostViewer,
    Profile,
    ReplyContext,
    ReplyRef,
    RepostReason,
    SavedFeedsPreference,
    VideoView,
    parse_datetime,
    with_like,
    with_repost,
)
from .thread import (
    ThreadViewPost,
    find_node,
    has_more_replies,
    limit_replies,
    merge_replies,
    update_post_in_tree,
)
