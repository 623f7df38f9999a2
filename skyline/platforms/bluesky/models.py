"""Conversion between Bluesky XRPC JSON and Skyline models.

Responses are validated against the atproto SDK's typed models before
anything reads them, so a malformed response fails in one place with a
DecodeError. The *_from_view functions then turn those typed views into
Skyline's frozen dataclasses. Records are built as typed SDK models too and
serialised with their lexicon field names.
"""

import re
from datetime import datetime, timezone
from typing import Optional, List, Any, Dict

from atproto import AtUri, models
from atproto.exceptions import ModelError

from skyline.errors import DecodeError
from skyline.logging_config import get_logger
from skyline.models import (
    Account,
    ActorsPage,
    Author,
    ChatMessage,
    Conversation,
    ConversationsPage,
    Embed,
    EmbeddedRecord,
    ExternalView,
    Facet,
    FacetFeature,
    FeedInfo,
    FeedPage,
    FeedViewFilter,
    FeedViewPost,
    ImageView,
    MessagesPage,
    ModerationSettings,
    MutedWord,
    Notification,
    NotificationsPage,
    Post,
    PostRecord,
    PostsPage,
    PostViewer,
    Profile,
    ReplyContext,
    ReplyRef,
    RepostReason,
    SavedFeedsPreference,
    ThreadViewPost,
    VideoView,
)

logger = get_logger('bluesky.models')

ACTOR_DEFS = 'app.bsky.actor.defs'
SAVED_FEEDS_PREF = f'{ACTOR_DEFS}#savedFeedsPref'
SAVED_FEEDS_PREF_V2 = f'{ACTOR_DEFS}#savedFeedsPrefV2'

# Preference entries Skyline reads; every other entry is passed through untouched
_PREFERENCE_MODELS = {
    SAVED_FEEDS_PREF: models.AppBskyActorDefs.SavedFeedsPref,
    SAVED_FEEDS_PREF_V2: models.AppBskyActorDefs.SavedFeedsPrefV2,
    f'{ACTOR_DEFS}#adultContentPref': models.AppBskyActorDefs.AdultContentPref,
    f'{ACTOR_DEFS}#contentLabelPref': models.AppBskyActorDefs.ContentLabelPref,
    f'{ACTOR_DEFS}#mutedWordsPref': models.AppBskyActorDefs.MutedWordsPref,
    f'{ACTOR_DEFS}#feedViewPref': models.AppBskyActorDefs.FeedViewPref,
}

_EMBED_VIEWS = {
    'app.bsky.embed.images#view': models.AppBskyEmbedImages.View,
    'app.bsky.embed.video#view': models.AppBskyEmbedVideo.View,
    'app.bsky.embed.external#view': models.AppBskyEmbedExternal.View,
    'app.bsky.embed.record#view': models.AppBskyEmbedRecord.View,
    'app.bsky.embed.recordWithMedia#view': models.AppBskyEmbedRecordWithMedia.View,
}


def parse_model(data: Any, model, what: str):
    """Validate server JSON against an atproto model, raising DecodeError on mismatch."""
    try:
        result = models.get_or_create(data, model)
    except (ModelError, ValueError, TypeError) as e:
        raise DecodeError(f"Malformed {what}: {e}") from e
    if result is None:
        raise DecodeError(f"Missing {what}")
    return result


def dump_model(model) -> Dict[str, Any]:
    """Serialise a typed model the way it goes over the wire."""
    return model.model_dump(by_alias=True, exclude_none=True)


def extract_rkey_from_uri(uri: str) -> str:
    """Extract the record key from an AT URI (at://did/collection/rkey)."""
    try:
        rkey = AtUri.from_str(uri).rkey
    except Exception as e:
        raise DecodeError(f"Invalid AT URI {uri!r}: {e}") from e
    if not rkey:
        raise DecodeError(f"AT URI {uri!r} has no record key")
    return rkey


def now_iso() -> str:
    """Current UTC time in the format records use for createdAt."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def _label_values(labels) -> tuple:
    return tuple(label.val for label in labels or ())


def _raw_list(data, key: str) -> list:
    value = data.get(key) if isinstance(data, dict) else None
    return value if isinstance(value, list) else []


# ============ Actors and sessions ============

def bluesky_author_from_view(view) -> Author:
    viewer = getattr(view, 'viewer', None)
    return Author(
        did=view.did,
        handle=view.handle,
        display_name=getattr(view, 'display_name', None) or None,
        avatar=getattr(view, 'avatar', None),
        labels=_label_values(getattr(view, 'labels', None)),
        following=getattr(viewer, 'following', None),
    )


def bluesky_profile_from_view(view) -> Profile:
    viewer = view.viewer
    return Profile(
        did=view.did,
        handle=view.handle,
        display_name=view.display_name or None,
        avatar=view.avatar,
        description=getattr(view, 'description', None),
        followers_count=getattr(view, 'followers_count', None) or 0,
        follows_count=getattr(view, 'follows_count', None) or 0,
        posts_count=getattr(view, 'posts_count', None) or 0,
        following=getattr(viewer, 'following', None),
        followed_by=getattr(viewer, 'followed_by', None),
    )


def bluesky_profile_from_json(data) -> Profile:
    return bluesky_profile_from_view(parse_model(data, models.AppBskyActorDefs.ProfileViewDetailed, 'profile'))


def bluesky_session_to_account(data, pds_host: str) -> Account:
    """Build an Account from a createSession response."""
    session = parse_model(data, models.ComAtprotoServerCreateSession.Response, 'session')
    return Account(
        id=session.did,
        did=session.did,
        handle=session.handle,
        access_token=session.access_jwt,
        refresh_token=session.refresh_jwt,
        pds_host=pds_host,
    )


def bluesky_refreshed_tokens(data) -> tuple:
    """(access token, refresh token) from a refreshSession response."""
    session = parse_model(data, models.ComAtprotoServerRefreshSession.Response, 'refreshSession response')
    return session.access_jwt, session.refresh_jwt


# ============ Posts ============

def bluesky_facets_from_view(facets) -> tuple:
    result = []
    for facet in facets or ():
        features = []
        for feature in facet.features:
            if isinstance(feature, models.AppBskyRichtextFacet.Mention):
                features.append(FacetFeature('mention', feature.did))
            elif isinstance(feature, models.AppBskyRichtextFacet.Link):
                features.append(FacetFeature('link', feature.uri))
            elif isinstance(feature, models.AppBskyRichtextFacet.Tag):
                features.append(FacetFeature('tag', feature.tag))
        result.append(Facet(facet.index.byte_start, facet.index.byte_end, tuple(features)))
    return tuple(result)


def bluesky_record_from_view(record) -> PostRecord:
    if not isinstance(record, models.AppBskyFeedPost.Record):
        raise DecodeError(f"Expected a post record, got {type(record).__name__}")
    reply = None
    if record.reply is not None:
        reply = ReplyRef(
            root_uri=record.reply.root.uri,
            root_cid=record.reply.root.cid,
            parent_uri=record.reply.parent.uri,
            parent_cid=record.reply.parent.cid,
        )
    return PostRecord(
        text=record.text,
        created_at=record.created_at,
        facets=bluesky_facets_from_view(record.facets),
        langs=tuple(record.langs or ()),
        reply=reply,
        tags=tuple(record.tags or ()),
    )


def _media_from_view(view) -> Optional[Embed]:
    if isinstance(view, models.AppBskyEmbedImages.View):
        images = tuple(ImageView(thumb=img.thumb, fullsize=img.fullsize, alt=img.alt or '') for img in view.images)
        return Embed(kind='images', images=images)
    if isinstance(view, models.AppBskyEmbedVideo.View):
        ratio = view.aspect_ratio
        return Embed(kind='video', video=VideoView(
            playlist=view.playlist,
            thumbnail=view.thumbnail,
            alt=view.alt,
            aspect_ratio=(ratio.width, ratio.height) if ratio else None,
        ))
    if isinstance(view, models.AppBskyEmbedExternal.View):
        external = view.external
        return Embed(kind='external', external=ExternalView(
            uri=external.uri,
            title=external.title or '',
            description=external.description or '',
            thumb=external.thumb,
        ))
    return None


def _embedded_record_from_view(view) -> Optional[EmbeddedRecord]:
    if isinstance(view, models.AppBskyEmbedRecord.ViewRecord):
        value = view.value
        is_post = isinstance(value, models.AppBskyFeedPost.Record)
        return EmbeddedRecord(
            uri=view.uri,
            cid=view.cid,
            author=bluesky_author_from_view(view.author),
            text=value.text if is_post else '',
            created_at=value.created_at if is_post else None,
        )
    # Not-found, blocked and detached quotes only carry their URI
    uri = getattr(view, 'uri', None)
    return EmbeddedRecord(uri=uri) if uri else None


def bluesky_embed_from_view(view) -> Optional[Embed]:
    if view is None:
        return None
    if isinstance(view, models.AppBskyEmbedRecordWithMedia.View):
        return Embed(
            kind='record_with_media',
            record=_embedded_record_from_view(view.record.record),
            media=_media_from_view(view.media),
        )
    if isinstance(view, models.AppBskyEmbedRecord.View):
        return Embed(kind='record', record=_embedded_record_from_view(view.record))
    return _media_from_view(view)


def bluesky_embed_from_json(data) -> Optional[Embed]:
    """Decode an embed view; unknown embed types decode to None."""
    if not data:
        return None
    embed_type = data.get('$type', '')
    model = _EMBED_VIEWS.get(embed_type)
    if model is None:
        logger.debug(f"Ignoring unsupported embed type {embed_type!r}")
        return None
    return bluesky_embed_from_view(parse_model(data, model, 'embed'))


def bluesky_post_from_view(view, raw=None) -> Post:
    """Convert a typed app.bsky.feed.defs#postView; `raw` is the JSON it came from."""
    viewer = view.viewer
    return Post(
        uri=view.uri,
        cid=view.cid,
        author=bluesky_author_from_view(view.author),
        record=bluesky_record_from_view(view.record),
        embed=bluesky_embed_from_view(view.embed),
        reply_count=view.reply_count or 0,
        repost_count=view.repost_count or 0,
        like_count=view.like_count or 0,
        quote_count=view.quote_count or 0,
        indexed_at=view.indexed_at,
        viewer=PostViewer(like=getattr(viewer, 'like', None), repost=getattr(viewer, 'repost', None)),
        labels=_label_values(view.labels),
        _platform_data=raw,
    )


def bluesky_post_from_json(data) -> Post:
    return bluesky_post_from_view(parse_model(data, models.AppBskyFeedDefs.PostView, 'post'), data)


def _reply_post(view, raw) -> Optional[Post]:
    # notFoundPost / blockedPost stand in for posts that cannot be shown
    if not isinstance(view, models.AppBskyFeedDefs.PostView):
        return None
    return bluesky_post_from_view(view, raw)


def bluesky_feed_item_from_view(view, raw) -> FeedViewPost:
    """Convert a typed app.bsky.feed.defs#feedViewPost, keeping its JSON for the cache."""
    raw_post = raw.get('post') if isinstance(raw, dict) else None
    post = bluesky_post_from_view(view.post, raw_post)

    reason = None
    if isinstance(view.reason, models.AppBskyFeedDefs.ReasonRepost):
        reason = RepostReason(by=bluesky_author_from_view(view.reason.by), indexed_at=view.reason.indexed_at)

    reply = None
    if view.reply is not None:
        raw_reply = raw.get('reply') or {}
        reply = ReplyContext(
            root=_reply_post(view.reply.root, raw_reply.get('root')),
            parent=_reply_post(view.reply.parent, raw_reply.get('parent')),
        )

    return FeedViewPost(post=post, reason=reason, reply=reply, _platform_data=raw)


def bluesky_feed_item_from_json(data) -> FeedViewPost:
    return bluesky_feed_item_from_view(parse_model(data, models.AppBskyFeedDefs.FeedViewPost, 'feed item'), data)


def bluesky_feed_page_from_json(data, model=models.AppBskyFeedGetTimeline.Response) -> FeedPage:
    """Decode a getTimeline/getFeed/getAuthorFeed response (they share one shape)."""
    response = parse_model(data, model, 'feed response')
    raw_items = _raw_list(data, 'feed')
    return FeedPage(
        items=tuple(bluesky_feed_item_from_view(view, raw) for view, raw in zip(response.feed, raw_items)),
        cursor=response.cursor or None,
    )


def bluesky_posts_page_from_json(data, model=models.AppBskyFeedSearchPosts.Response) -> PostsPage:
    response = parse_model(data, model, 'posts response')
    raw_posts = _raw_list(data, 'posts')
    return PostsPage(
        posts=tuple(bluesky_post_from_view(view, raw) for view, raw in zip(response.posts, raw_posts)),
        cursor=getattr(response, 'cursor', None) or None,
        hits_total=getattr(response, 'hits_total', None),
    )


def bluesky_actors_page_from_json(data, model=models.AppBskyActorSearchActors.Response, key: str = 'actors') -> ActorsPage:
    response = parse_model(data, model, 'actors response')
    return ActorsPage(
        actors=tuple(bluesky_profile_from_view(actor) for actor in getattr(response, key)),
        cursor=response.cursor or None,
    )


# ============ Threads ============

def _thread_node_from_view(view, raw, with_parent: bool = True) -> Optional[ThreadViewPost]:
    """Convert a thread node; notFound/blocked variants become None."""
    if not isinstance(view, models.AppBskyFeedDefs.ThreadViewPost):
        return None
    raw = raw if isinstance(raw, dict) else {}
    replies = None
    if view.replies is not None:
        nodes = (
            _thread_node_from_view(reply, raw_reply, with_parent=False)
            for reply, raw_reply in zip(view.replies, _raw_list(raw, 'replies'))
        )
        replies = tuple(node for node in nodes if node is not None)
    parent = _thread_node_from_view(view.parent, raw.get('parent')) if with_parent else None
    return ThreadViewPost(
        post=bluesky_post_from_view(view.post, raw.get('post')),
        parent=parent,
        replies=replies,
    )


def bluesky_thread_from_json(data) -> ThreadViewPost:
    """Convert a getPostThread response to the root ThreadViewPost."""
    response = parse_model(data, models.AppBskyFeedGetPostThread.Response, 'thread response')
    node = _thread_node_from_view(response.thread, data.get('thread'))
    if node is None:
        raise DecodeError(f"Thread root is not viewable ({getattr(response.thread, 'py_type', 'unknown')})")
    return node


# ============ Feeds and preferences ============

def bluesky_feed_info_from_view(view) -> FeedInfo:
    return FeedInfo(
        uri=view.uri,
        display_name=view.display_name or view.uri,
        description=view.description or '',
        avatar=view.avatar,
        creator_handle=view.creator.handle,
    )


def bluesky_feed_generators_from_json(data) -> List[FeedInfo]:
    response = parse_model(data, models.AppBskyFeedGetFeedGenerators.Response, 'feed generators response')
    return [bluesky_feed_info_from_view(view) for view in response.feeds]


def parse_preferences(preferences: List[Dict[str, Any]]) -> list:
    """Typed views of the preference entries Skyline reads.

    Other entry types are skipped. A malformed entry is logged and skipped
    so one bad preference does not hide the rest.
    """
    result = []
    for pref in preferences:
        model = _PREFERENCE_MODELS.get(pref.get('$type')) if isinstance(pref, dict) else None
        if model is None:
            continue
        try:
            result.append(parse_model(pref, model, pref['$type']))
        except DecodeError as e:
            logger.warning(f"Skipping preference: {e}")
    return result


def saved_feeds_from_preferences(preferences: List[Dict[str, Any]]) -> SavedFeedsPreference:
    """Pick the saved-feeds preference out of the preference list.

    The v2 preference wins over the legacy one when both are present; only
    items of type 'feed' are feed generators.
    """
    legacy = None
    for pref in parse_preferences(preferences):
        if isinstance(pref, models.AppBskyActorDefs.SavedFeedsPrefV2):
            pinned, saved = [], []
            for item in pref.items:
                if item.type != 'feed' or not item.value:
                    continue
                (pinned if item.pinned else saved).append(item.value)
            return SavedFeedsPreference(pinned=tuple(pinned), saved=tuple(saved))
        if isinstance(pref, models.AppBskyActorDefs.SavedFeedsPref):
            legacy = SavedFeedsPreference(pinned=tuple(pref.pinned), saved=tuple(pref.saved))
    return legacy or SavedFeedsPreference()


def moderation_settings_from_preferences(preferences: List[Dict[str, Any]]) -> ModerationSettings:
    """Collect label, adult-content, muted-word and feed-view preferences."""
    adult_content = False
    label_visibility = {}
    muted_words = []
    feed_filters = {}
    for pref in parse_preferences(preferences):
        if isinstance(pref, models.AppBskyActorDefs.AdultContentPref):
            adult_content = bool(pref.enabled)
        elif isinstance(pref, models.AppBskyActorDefs.ContentLabelPref):
            # Labeler-specific settings only apply to that labeler's labels
            if getattr(pref, 'labeler_did', None) is None:
                label_visibility[pref.label] = pref.visibility
        elif isinstance(pref, models.AppBskyActorDefs.MutedWordsPref):
            for word in pref.items:
                muted_words.append(MutedWord(
                    value=word.value,
                    targets=tuple(word.targets),
                    actor_target=getattr(word, 'actor_target', None) or 'all',
                    expires_at=getattr(word, 'expires_at', None),
                ))
        elif isinstance(pref, models.AppBskyActorDefs.FeedViewPref):
            feed_filters[pref.feed] = FeedViewFilter(
                hide_reposts=bool(pref.hide_reposts),
                hide_replies=bool(pref.hide_replies),
                hide_quote_posts=bool(pref.hide_quote_posts),
            )
    return ModerationSettings(
        adult_content_enabled=adult_content,
        label_visibility=label_visibility,
        muted_words=tuple(muted_words),
        feed_filters=feed_filters,
    )


def remove_saved_feed(preferences: List[Dict[str, Any]], feed_uri: str) -> List[Dict[str, Any]]:
    """Return a copy of the preference list with `feed_uri` unsaved everywhere.

    Entries of every other type are passed through unchanged, since the
    server replaces the whole list on write.
    """
    result = []
    for pref in preferences:
        pref_type = pref.get('$type')
        if pref_type == SAVED_FEEDS_PREF_V2:
            pref = dict(pref, items=[item for item in pref.get('items') or () if item.get('value') != feed_uri])
        elif pref_type == SAVED_FEEDS_PREF:
            pref = dict(
                pref,
                pinned=[uri for uri in pref.get('pinned') or () if uri != feed_uri],
                saved=[uri for uri in pref.get('saved') or () if uri != feed_uri],
            )
        result.append(pref)
    return result


# ============ Notifications ============

def bluesky_notification_from_view(view) -> Notification:
    record = view.record
    text = record.text if isinstance(record, models.AppBskyFeedPost.Record) else ''
    return Notification(
        uri=view.uri,
        cid=view.cid,
        author=bluesky_author_from_view(view.author),
        reason=view.reason,
        indexed_at=view.indexed_at,
        is_read=bool(view.is_read),
        reason_subject=view.reason_subject,
        text=text,
        labels=_label_values(view.labels),
    )


def bluesky_notifications_page_from_json(data) -> NotificationsPage:
    response = parse_model(data, models.AppBskyNotificationListNotifications.Response, 'notifications response')
    return NotificationsPage(
        notifications=tuple(bluesky_notification_from_view(view) for view in response.notifications),
        cursor=response.cursor or None,
        seen_at=response.seen_at,
    )


# ============ Chat ============

def bluesky_message_from_view(view) -> ChatMessage:
    return ChatMessage(id=view.id, text=view.text, sender_did=view.sender.did, sent_at=view.sent_at)


def bluesky_message_from_json(data) -> ChatMessage:
    return bluesky_message_from_view(parse_model(data, models.ChatBskyConvoDefs.MessageView, 'message'))


def bluesky_conversation_from_view(view) -> Conversation:
    last = view.last_message
    # Deleted messages have no text and are not shown as a preview
    last_message = bluesky_message_from_view(last) if isinstance(last, models.ChatBskyConvoDefs.MessageView) else None
    return Conversation(
        id=view.id,
        members=tuple(bluesky_author_from_view(member) for member in view.members),
        last_message=last_message,
        unread_count=view.unread_count or 0,
        muted=bool(view.muted),
    )


def bluesky_conversations_page_from_json(data) -> ConversationsPage:
    response = parse_model(data, models.ChatBskyConvoListConvos.Response, 'conversations response')
    return ConversationsPage(
        conversations=tuple(bluesky_conversation_from_view(convo) for convo in response.convos),
        cursor=response.cursor or None,
    )


def bluesky_messages_page_from_json(data) -> MessagesPage:
    response = parse_model(data, models.ChatBskyConvoGetMessages.Response, 'messages response')
    return MessagesPage(
        messages=tuple(
            bluesky_message_from_view(message) for message in response.messages
            if isinstance(message, models.ChatBskyConvoDefs.MessageView)
        ),
        cursor=response.cursor or None,
    )


# ============ Records ============

_MENTION_RE = re.compile(
    rb'(?:^|\W)(@(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)'
)
_URL_RE = re.compile(
    rb'(?:^|\W)(https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b'
    rb'(?:[-a-zA-Z0-9()@:%_+.~#?&/=]*[-a-zA-Z0-9@%_+~#/=])?)'
)
_TAG_RE = re.compile(rb'(?:^|\s)(#[^\s#]+)')
_TAG_TRAILING = b'.,;:!?\'")'


def detect_facets(text: str) -> List[Facet]:
    """Find mentions, links and hashtags in `text`.

    Mention features carry the handle; the client swaps in the DID before
    the post is created. Offsets are UTF-8 byte offsets.
    """
    data = text.encode('utf-8')
    facets = []
    for match in _MENTION_RE.finditer(data):
        handle = match.group(1)[1:].decode('utf-8')
        facets.append(Facet(match.start(1), match.end(1), (FacetFeature('mention', handle),)))
    for match in _URL_RE.finditer(data):
        facets.append(Facet(match.start(1), match.end(1), (FacetFeature('link', match.group(1).decode('utf-8')),)))
    for match in _TAG_RE.finditer(data):
        tag = match.group(1).rstrip(_TAG_TRAILING)
        name = tag[1:].decode('utf-8', errors='ignore')
        if not name or name.isdigit() or len(name) > 64:
            continue
        start = match.start(1)
        facets.append(Facet(start, start + len(tag), (FacetFeature('tag', name),)))
    facets.sort(key=lambda facet: facet.byte_start)
    return facets


def facet_to_model(facet: Facet):
    features = []
    for feature in facet.features:
        if feature.kind == 'mention':
            features.append(models.AppBskyRichtextFacet.Mention(did=feature.value))
        elif feature.kind == 'link':
            features.append(models.AppBskyRichtextFacet.Link(uri=feature.value))
        elif feature.kind == 'tag':
            features.append(models.AppBskyRichtextFacet.Tag(tag=feature.value))
    return models.AppBskyRichtextFacet.Main(
        index=models.AppBskyRichtextFacet.ByteSlice(byte_start=facet.byte_start, byte_end=facet.byte_end),
        features=features,
    )


def strong_ref(uri: str, cid: str):
    return models.ComAtprotoRepoStrongRef.Main(uri=uri, cid=cid)


def build_post_record(text: str, reply: Optional[ReplyRef] = None, langs=None, facets=()) -> Dict[str, Any]:
    reply_ref = None
    if reply is not None:
        reply_ref = models.AppBskyFeedPost.ReplyRef(
            root=strong_ref(reply.root_uri, reply.root_cid),
            parent=strong_ref(reply.parent_uri, reply.parent_cid),
        )
    record = models.AppBskyFeedPost.Record(
        text=text,
        created_at=now_iso(),
        facets=[facet_to_model(facet) for facet in facets] or None,
        langs=list(langs) if langs else None,
        reply=reply_ref,
    )
    return dump_model(record)


def build_like_record(uri: str, cid: str) -> Dict[str, Any]:
    return dump_model(models.AppBskyFeedLike.Record(subject=strong_ref(uri, cid), created_at=now_iso()))


def build_repost_record(uri: str, cid: str) -> Dict[str, Any]:
    return dump_model(models.AppBskyFeedRepost.Record(subject=strong_ref(uri, cid), created_at=now_iso()))


def build_follow_record(did: str) -> Dict[str, Any]:
    return dump_model(models.AppBskyGraphFollow.Record(subject=did, created_at=now_iso()))
