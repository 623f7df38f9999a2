"""Authenticated XRPC client for Bluesky.

Every network request made by Skyline goes through BlueskyClient.call(),
which signs the request with the active account's access token. When the
server reports the token as expired the client exchanges the refresh token
for a new pair (once per account, however many requests noticed at the same
time) and retries the request exactly once.
"""

import threading
from concurrent.futures import Future
from dataclasses import replace
from typing import List, Optional, Any, Dict, Tuple

import requests
from atproto import models

from skyline.errors import (
    APIError,
    AuthenticationError,
    DecodeError,
    NetworkError,
    ProtocolError,
)
from skyline.logging_config import get_logger
from skyline.models import (
    FOLLOWING,
    Account,
    ActorsPage,
    ChatMessage,
    ConversationsPage,
    FeedInfo,
    FeedPage,
    MessagesPage,
    ModerationSettings,
    NotificationsPage,
    Post,
    PostsPage,
    Profile,
    ReplyRef,
    ThreadViewPost,
)
from .models import (
    bluesky_actors_page_from_json,
    bluesky_conversations_page_from_json,
    bluesky_feed_generators_from_json,
    bluesky_feed_page_from_json,
    bluesky_message_from_json,
    bluesky_messages_page_from_json,
    bluesky_notifications_page_from_json,
    bluesky_posts_page_from_json,
    bluesky_profile_from_json,
    bluesky_refreshed_tokens,
    bluesky_session_to_account,
    bluesky_thread_from_json,
    build_follow_record,
    build_like_record,
    build_post_record,
    build_repost_record,
    detect_facets,
    dump_model,
    extract_rkey_from_uri,
    moderation_settings_from_preferences,
    now_iso,
    parse_model,
    remove_saved_feed,
    saved_feeds_from_preferences,
)

logger = get_logger('client')

DEFAULT_PDS = "https://bsky.social"
CHAT_PROXY = "did:web:api.bsky.chat#bsky_chat"

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_FEED_GENERATORS = 150
MAX_POSTS_PER_LOOKUP = 25


def normalize_pds_host(host: Optional[str]) -> str:
    """Turn user input like 'bsky.social/' into 'https://bsky.social'."""
    host = (host or "").strip()
    if not host:
        return DEFAULT_PDS
    if not host.startswith(("http://", "https://")):
        host = "https://" + host
    return host.rstrip("/")


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit < 1:
        return DEFAULT_PAGE_SIZE
    return min(limit, MAX_PAGE_SIZE)


class BlueskyClient:
    """Typed wrapper around the Bluesky XRPC API.

    Args:
        store: SessionStore providing credentials and receiving refreshed tokens
        session: requests.Session (or compatible) used for transport
        timeout: per-request timeout in seconds, passed to requests
    """

    def __init__(self, store, session: Optional[requests.Session] = None, timeout: Optional[float] = 30):
        self.store = store
        self.http = session or requests.Session()
        self.timeout = timeout
        self._refresh_lock = threading.Lock()
        self._refreshing: Dict[str, Future] = {}

    # ============ Transport ============

    def _send(self, method: str, url: str, token: Optional[str], params=None, data=None, headers=None):
        request_headers = {'Accept': 'application/json'}
        if token:
            request_headers['Authorization'] = f"Bearer {token}"
        if headers:
            request_headers.update(headers)
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            return self.http.request(
                method, url,
                params=params or None,
                json=data,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise NetworkError(str(e) or type(e).__name__) from e

    @staticmethod
    def _error_body(response) -> Tuple[Optional[str], Optional[str]]:
        try:
            body = response.json()
        except ValueError:
            return None, None
        if isinstance(body, dict):
            return body.get('error'), body.get('message')
        return None, None

    def _is_expired_token(self, response) -> bool:
        if response.status_code == 401:
            return True
        if response.status_code != 400:
            return False
        error, message = self._error_body(response)
        if error == 'ExpiredToken':
            return True
        text = (message or '').lower()
        # A token that fails verification cannot be fixed by refreshing it
        if 'token could not be verified' in text:
            return False
        return 'token' in text or 'expired' in text

    def _decode(self, response) -> Dict[str, Any]:
        status = response.status_code
        if 200 <= status < 300:
            if not response.content:
                return {}
            try:
                body = response.json()
            except ValueError as e:
                raise DecodeError(f"Response is not valid JSON: {e}", status=status) from e
            if not isinstance(body, dict):
                raise DecodeError("Response is not a JSON object", status=status)
            return body
        error, message = self._error_body(response)
        if status == 401:
            raise AuthenticationError(message or "Authentication required", status=status, error=error)
        raise APIError(message or f"HTTP {status}", status=status, error=error)

    def _url(self, account: Account, nsid: str) -> str:
        return f"{account.pds_host}/xrpc/{nsid}"

    def _active(self) -> Account:
        account = self.store.active_account()
        if account is None:
            raise AuthenticationError("Not signed in")
        return account

    def call(self, method: str, nsid: str, params: Optional[Dict[str, Any]] = None,
             data: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None,
             account: Optional[Account] = None) -> Dict[str, Any]:
        """Issue an authenticated XRPC request and return the decoded body.

        An expired access token is refreshed once and the request retried
        once. Every other failure is raised to the caller unchanged.
        """
        account = account or self._active()
        url = self._url(account, nsid)
        logger.debug(f"{method} {nsid} as {account.handle}")
        response = self._send(method, url, account.access_token, params, data, headers)
        if self._is_expired_token(response):
            logger.info(f"Access token for {account.handle} expired, refreshing")
            account = self.refresh_session(account)
            response = self._send(method, url, account.access_token, params, data, headers)
        return self._decode(response)

    # ============ Session ============

    def refresh_session(self, account: Account) -> Account:
        """Exchange the refresh token for new tokens, at most once at a time per account.

        Callers arriving while a refresh is running wait for its outcome.
        A caller holding an access token that has already been replaced gets
        the current account back without a new exchange.
        """
        with self._refresh_lock:
            current = self.store.get_account(account.id) or account
            if current.access_token != account.access_token:
                return current
            future = self._refreshing.get(account.id)
            leader = future is None
            if leader:
                future = Future()
                self._refreshing[account.id] = future

        if leader:
            try:
                future.set_result(self._exchange_refresh_token(current))
            except Exception as e:
                future.set_exception(e)
            finally:
                with self._refresh_lock:
                    self._refreshing.pop(account.id, None)
        return future.result()

    def _exchange_refresh_token(self, account: Account) -> Account:
        url = self._url(account, models.ids.ComAtprotoServerRefreshSession)
        try:
            response = self._send('POST', url, account.refresh_token)
        except NetworkError:
            logger.error(f"Session refresh for {account.handle} could not reach the server")
            raise
        if not 200 <= response.status_code < 300:
            error, message = self._error_body(response)
            logger.error(f"Session refresh for {account.handle} rejected: {error} {message}")
            raise AuthenticationError(message or "Session refresh failed", status=response.status_code, error=error)
        access_token, refresh_token = bluesky_refreshed_tokens(self._decode(response))
        updated = self.store.update_tokens(account.id, access_token, refresh_token)
        logger.info(f"Refreshed session for {account.handle}")
        return updated or replace(account, access_token=access_token, refresh_token=refresh_token)

    def create_session(self, identifier: str, password: str, pds_host: Optional[str] = None) -> Account:
        """Log in and return a new Account (not yet stored)."""
        pds_host = normalize_pds_host(pds_host)
        url = f"{pds_host}/xrpc/{models.ids.ComAtprotoServerCreateSession}"
        response = self._send('POST', url, None, data={'identifier': identifier, 'password': password})
        if response.status_code == 401:
            _, message = self._error_body(response)
            raise AuthenticationError(message or "Invalid identifier or password", status=401)
        account = bluesky_session_to_account(self._decode(response), pds_host)
        try:
            profile = self.get_profile(account.did, account=account)
        except ProtocolError as e:
            logger.warning(f"Could not load profile for {account.handle}: {e}")
            return account
        return replace(account, handle=profile.handle, display_name=profile.display_name, avatar_url=profile.avatar)

    def get_session(self) -> Account:
        """Check the active session with the server and pick up a changed handle."""
        account = self._active()
        data = self.call('GET', models.ids.ComAtprotoServerGetSession, account=account)
        handle = parse_model(data, models.ComAtprotoServerGetSession.Response, 'session').handle
        if handle != account.handle:
            logger.info(f"Handle changed from {account.handle} to {handle}")
            return self.store.update_profile(account.id, handle=handle) or replace(account, handle=handle)
        return self.store.get_account(account.id) or account

    def delete_session(self, account: Account) -> None:
        """Revoke the refresh token on the server (sign-out)."""
        url = self._url(account, models.ids.ComAtprotoServerDeleteSession)
        self._decode(self._send('POST', url, account.refresh_token))

    # ============ Feeds ============

    def get_timeline(self, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> FeedPage:
        data = self.call('GET', models.ids.AppBskyFeedGetTimeline,
                         params={'limit': clamp_limit(limit), 'cursor': cursor})
        return bluesky_feed_page_from_json(data)

    def get_feed(self, feed_uri: str, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> FeedPage:
        data = self.call('GET', models.ids.AppBskyFeedGetFeed,
                         params={'feed': feed_uri, 'limit': clamp_limit(limit), 'cursor': cursor})
        return bluesky_feed_page_from_json(data, models.AppBskyFeedGetFeed.Response)

    def get_feed_page(self, feed: FeedInfo, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> FeedPage:
        """One page of either the home timeline or a feed generator."""
        if feed.is_following:
            return self.get_timeline(limit=limit, cursor=cursor)
        return self.get_feed(feed.uri, limit=limit, cursor=cursor)

    def get_author_feed(self, actor: str, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None,
                        filter: Optional[str] = None) -> FeedPage:
        data = self.call('GET', models.ids.AppBskyFeedGetAuthorFeed,
                         params={'actor': actor, 'limit': clamp_limit(limit), 'cursor': cursor, 'filter': filter})
        return bluesky_feed_page_from_json(data, models.AppBskyFeedGetAuthorFeed.Response)

    def get_post_thread(self, uri: str, depth: Optional[int] = None, parent_height: Optional[int] = None) -> ThreadViewPost:
        data = self.call('GET', models.ids.AppBskyFeedGetPostThread,
                         params={'uri': uri, 'depth': depth, 'parentHeight': parent_height})
        return bluesky_thread_from_json(data)

    def get_posts(self, uris: List[str]) -> List[Post]:
        posts = []
        for start in range(0, len(uris), MAX_POSTS_PER_LOOKUP):
            data = self.call('GET', models.ids.AppBskyFeedGetPosts,
                             params={'uris': list(uris[start:start + MAX_POSTS_PER_LOOKUP])})
            posts.extend(bluesky_posts_page_from_json(data, models.AppBskyFeedGetPosts.Response).posts)
        return posts

    def get_feed_generators(self, feed_uris: List[str]) -> List[FeedInfo]:
        """Resolve feed generator URIs, keeping the order they were asked for."""
        if not feed_uris:
            return []
        data = self.call('GET', models.ids.AppBskyFeedGetFeedGenerators,
                         params={'feeds': list(feed_uris[:MAX_FEED_GENERATORS])})
        by_uri = {info.uri: info for info in bluesky_feed_generators_from_json(data)}
        return [by_uri[uri] for uri in feed_uris if uri in by_uri]

    def get_saved_feeds(self) -> List[FeedInfo]:
        """Following followed by the user's pinned and saved feed generators."""
        saved = saved_feeds_from_preferences(self.get_preferences())
        return [FOLLOWING] + self.get_feed_generators(list(saved.feed_uris()))

    def get_moderation_settings(self) -> ModerationSettings:
        """Label, adult-content, muted-word and feed-view settings from the server preferences."""
        return moderation_settings_from_preferences(self.get_preferences())

    # ============ Search ============

    def search_posts(self, query: str, limit: int = 25, cursor: Optional[str] = None,
                     sort: Optional[str] = None) -> PostsPage:
        data = self.call('GET', models.ids.AppBskyFeedSearchPosts,
                         params={'q': query, 'limit': clamp_limit(limit), 'cursor': cursor, 'sort': sort})
        return bluesky_posts_page_from_json(data)

    def search_actors(self, query: str, limit: int = 25, cursor: Optional[str] = None) -> ActorsPage:
        data = self.call('GET', models.ids.AppBskyActorSearchActors,
                         params={'q': query, 'limit': clamp_limit(limit), 'cursor': cursor})
        return bluesky_actors_page_from_json(data)

    # ============ Actors and social graph ============

    def get_profile(self, actor: str, account: Optional[Account] = None) -> Profile:
        data = self.call('GET', models.ids.AppBskyActorGetProfile, params={'actor': actor}, account=account)
        return bluesky_profile_from_json(data)

    def get_follows(self, actor: str, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> ActorsPage:
        data = self.call('GET', models.ids.AppBskyGraphGetFollows,
                         params={'actor': actor, 'limit': clamp_limit(limit), 'cursor': cursor})
        return bluesky_actors_page_from_json(data, models.AppBskyGraphGetFollows.Response, key='follows')

    def get_followers(self, actor: str, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> ActorsPage:
        data = self.call('GET', models.ids.AppBskyGraphGetFollowers,
                         params={'actor': actor, 'limit': clamp_limit(limit), 'cursor': cursor})
        return bluesky_actors_page_from_json(data, models.AppBskyGraphGetFollowers.Response, key='followers')

    def resolve_handle(self, handle: str) -> str:
        data = self.call('GET', models.ids.ComAtprotoIdentityResolveHandle, params={'handle': handle})
        return parse_model(data, models.ComAtprotoIdentityResolveHandle.Response, 'resolveHandle response').did

    # ============ Preferences ============

    def get_preferences(self) -> List[Dict[str, Any]]:
        """The raw preference list; entries are tagged by their '$type'."""
        data = self.call('GET', models.ids.AppBskyActorGetPreferences)
        preferences = data.get('preferences')
        if not isinstance(preferences, list):
            raise DecodeError("getPreferences response has no preference list")
        return preferences

    def put_preferences(self, preferences: List[Dict[str, Any]]) -> None:
        self.call('POST', models.ids.AppBskyActorPutPreferences, data={'preferences': preferences})

    def unsave_feed(self, feed_uri: str) -> None:
        """Remove a feed generator from both saved-feed preference formats."""
        self.put_preferences(remove_saved_feed(self.get_preferences(), feed_uri))

    # ============ Records ============

    def _create_record(self, collection: str, record: Dict[str, Any]) -> Tuple[str, str]:
        account = self._active()
        data = self.call('POST', models.ids.ComAtprotoRepoCreateRecord,
                         data={'repo': account.did, 'collection': collection, 'record': record},
                         account=account)
        created = parse_model(data, models.ComAtprotoRepoCreateRecord.Response, 'createRecord response')
        return created.uri, created.cid

    def _delete_record(self, collection: str, record_uri: str) -> None:
        account = self._active()
        self.call('POST', models.ids.ComAtprotoRepoDeleteRecord,
                  data={'repo': account.did, 'collection': collection, 'rkey': extract_rkey_from_uri(record_uri)},
                  account=account)

    def like(self, uri: str, cid: str) -> str:
        """Like a post; returns the URI of the like record."""
        return self._create_record(models.ids.AppBskyFeedLike, build_like_record(uri, cid))[0]

    def unlike(self, like_uri: str) -> None:
        self._delete_record(models.ids.AppBskyFeedLike, like_uri)

    def repost(self, uri: str, cid: str) -> str:
        """Repost a post; returns the URI of the repost record."""
        return self._create_record(models.ids.AppBskyFeedRepost, build_repost_record(uri, cid))[0]

    def unrepost(self, repost_uri: str) -> None:
        self._delete_record(models.ids.AppBskyFeedRepost, repost_uri)

    def follow(self, did: str) -> str:
        """Follow an account; returns the URI of the follow record."""
        return self._create_record(models.ids.AppBskyGraphFollow, build_follow_record(did))[0]

    def unfollow(self, follow_uri: str) -> None:
        self._delete_record(models.ids.AppBskyGraphFollow, follow_uri)

    def _resolve_facets(self, text: str):
        facets = []
        for facet in detect_facets(text):
            feature = facet.features[0]
            if feature.kind == 'mention':
                try:
                    did = self.resolve_handle(feature.value)
                except APIError as e:
                    # Unknown handles stay plain text
                    logger.debug(f"Not linking @{feature.value}: {e}")
                    continue
                facet = replace(facet, features=(replace(feature, value=did),))
            facets.append(facet)
        return facets

    def create_post(self, text: str, reply_to: Optional[Post] = None, langs: Optional[List[str]] = None) -> Tuple[str, str]:
        """Publish a post, optionally as a reply; returns (uri, cid)."""
        reply = None
        if reply_to is not None:
            parent_reply = reply_to.record.reply
            reply = ReplyRef(
                root_uri=parent_reply.root_uri if parent_reply else reply_to.uri,
                root_cid=parent_reply.root_cid if parent_reply else reply_to.cid,
                parent_uri=reply_to.uri,
                parent_cid=reply_to.cid,
            )
        record = build_post_record(text, reply=reply, langs=langs, facets=self._resolve_facets(text))
        return self._create_record(models.ids.AppBskyFeedPost, record)

    def delete_post(self, uri: str) -> None:
        self._delete_record(models.ids.AppBskyFeedPost, uri)

    # ============ Notifications ============

    def list_notifications(self, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> NotificationsPage:
        data = self.call('GET', models.ids.AppBskyNotificationListNotifications,
                         params={'limit': clamp_limit(limit), 'cursor': cursor})
        return bluesky_notifications_page_from_json(data)

    def get_unread_count(self) -> int:
        data = self.call('GET', models.ids.AppBskyNotificationGetUnreadCount)
        return parse_model(data, models.AppBskyNotificationGetUnreadCount.Response, 'unread count').count

    def update_seen_notifications(self, seen_at: Optional[str] = None) -> None:
        """Mark notifications up to `seen_at` (default: now) as read."""
        body = models.AppBskyNotificationUpdateSeen.Data(seen_at=seen_at or now_iso())
        self.call('POST', models.ids.AppBskyNotificationUpdateSeen, data=dump_model(body))

    # ============ Chat ============

    def _chat_call(self, method: str, nsid: str, **kwargs) -> Dict[str, Any]:
        return self.call(method, nsid, headers={'atproto-proxy': CHAT_PROXY}, **kwargs)

    def list_convos(self, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> ConversationsPage:
        data = self._chat_call('GET', models.ids.ChatBskyConvoListConvos,
                               params={'limit': clamp_limit(limit), 'cursor': cursor})
        return bluesky_conversations_page_from_json(data)

    def get_messages(self, convo_id: str, limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> MessagesPage:
        data = self._chat_call('GET', models.ids.ChatBskyConvoGetMessages,
                               params={'convoId': convo_id, 'limit': clamp_limit(limit), 'cursor': cursor})
        return bluesky_messages_page_from_json(data)

    def send_message(self, convo_id: str, text: str) -> ChatMessage:
        body = models.ChatBskyConvoSendMessage.Data(
            convo_id=convo_id,
            message=models.ChatBskyConvoDefs.MessageInput(text=text),
        )
        data = self._chat_call('POST', models.ids.ChatBskyConvoSendMessage, data=dump_model(body))
        return bluesky_message_from_json(data)
