"""Feed state: loading, paging, polling for new posts and optimistic actions."""

import threading
from collections import namedtuple
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from .errors import ProtocolError, describe_error
from .logging_config import get_logger
from .models import (
	FOLLOWING,
	PENDING_RECORD_URI,
	FeedInfo,
	FeedViewPost,
	ModerationSettings,
	filter_feed_items,
	parse_datetime,
	with_like,
	with_repost,
)
from .platforms.bluesky.client import DEFAULT_PAGE_SIZE
from .polling import BackgroundPoller
from .preferences import (
	DEFAULT_REFRESH_INTERVAL,
	get_feed_order,
	get_moderation_settings,
	get_refresh_interval,
	set_feed_order,
	set_moderation_settings,
)

logger = get_logger('timeline')

# How many older pages a poll may walk back looking for posts it already has
MAX_POLL_BATCHES = 10
# How far a restore may page back looking for the saved scroll anchor
MAX_ANCHOR_PAGES = 10
MAX_ANCHOR_POSTS = 500
# The user counts as "at the top" while one of the first few posts is visible
TOP_OF_FEED = 3


def run_in_thread(fn, *args):
	threading.Thread(target=fn, args=args, daemon=True).start()


def _unique_by_uri(items, exclude=()):
	"""Drop entries whose post URI is in `exclude` or already seen earlier in `items`."""
	seen = set(exclude)
	result = []
	for item in items:
		if item.uri in seen:
			continue
		seen.add(item.uri)
		result.append(item)
	return tuple(result)


def _closest_post(items, when):
	"""URI of the entry whose post was written closest to `when`."""
	target = parse_datetime(when)
	if target is None:
		return None
	best = None
	for item in items:
		created = item.post.created_at
		if created is None:
			continue
		distance = abs((created - target).total_seconds())
		if best is None or distance < best[0]:
			best = (distance, item.uri)
	return best[1] if best else None


@dataclass(frozen=True)
class TimelineState:
	"""Snapshot of a feed as presented to the UI."""
	posts: Tuple[FeedViewPost, ...] = ()
	cursor: Optional[str] = None
	selected_feed: FeedInfo = FOLLOWING
	available_feeds: Tuple[FeedInfo, ...] = (FOLLOWING,)
	is_loading: bool = False
	is_loading_more: bool = False
	has_loaded: bool = False
	error_message: Optional[str] = None
	background_fetch_error: Optional[str] = None
	unseen_posts_count: int = 0
	pending_new_posts: Tuple[FeedViewPost, ...] = ()
	should_auto_insert: bool = False
	visible_post_uri: Optional[str] = None
	saved_scroll_anchor: Optional[str] = None

	@property
	def status(self):
		"""'idle', 'loading', 'loading_more', 'errored' or 'loaded'."""
		if self.is_loading:
			return "loading"
		if self.is_loading_more:
			return "loading_more"
		if self.error_message and not self.posts:
			return "errored"
		if self.has_loaded:
			return "loaded"
		return "idle"

	@property
	def has_more(self):
		return self.cursor is not None


# Identifies the load a network result belongs to
_Operation = namedtuple("_Operation", "generation account_id feed")


class TimelineController(object):
	"""Owns the state of the feed on screen.

	Network work runs through `runner` (a daemon thread per call by default).
	Results are folded into a new immutable TimelineState and every
	subscriber is called with it. A result is dropped if the account or feed
	changed, or a newer load started, while it was in flight.
	"""

	def __init__(self, client, store, prefs=None, cache=None, runner=None, poller=None,
			page_size=DEFAULT_PAGE_SIZE, max_poll_batches=MAX_POLL_BATCHES):
		self.client = client
		self.store = store
		self.prefs = prefs
		self.cache = cache
		self.page_size = page_size
		self.max_poll_batches = max_poll_batches
		self._run = runner or run_in_thread
		self._lock = threading.RLock()
		self._state = TimelineState()
		self._listeners = []
		self._generation = 0
		self._poll_epoch = 0
		self._poll_failures = 0
		self._account_id = store.active_account_id()
		self._new_post_uris = set()
		self._seen_post_uris = set()
		# (account id, post uri, field) of like/repost requests still running
		self._in_flight = set()
		self._moderation = self._saved_moderation(self._account_id)
		self._attached = False
		self.poller = poller or BackgroundPoller(self.poll_for_new_posts, self._poll_interval, name="timeline-poll")
		store.add_listener(self._on_account_switched)

	# ============ State plumbing ============

	@property
	def state(self):
		return self._state

	@property
	def account_id(self):
		return self._account_id

	def subscribe(self, listener):
		"""Call `listener(state)` after every change; returns an unsubscribe function."""
		self._listeners.append(listener)
		return lambda: self._listeners.remove(listener) if listener in self._listeners else None

	def _notify(self, state):
		for listener in list(self._listeners):
			listener(state)

	def _operation(self):
		return _Operation(self._generation, self._account_id, self._state.selected_feed)

	def _is_current(self, op):
		return op.generation == self._generation and op.account_id == self._account_id

	def _apply(self, op=None, **changes):
		"""Apply changes unless `op` is stale; returns whether they were applied."""
		with self._lock:
			if op is not None and not self._is_current(op):
				logger.debug("Discarding result of a superseded timeline operation")
				return False
			self._state = replace(self._state, **changes)
			state = self._state
		self._notify(state)
		return True

	def _poll_interval(self):
		if self.prefs is None:
			return int(DEFAULT_REFRESH_INTERVAL)
		return int(get_refresh_interval(self.prefs))

	def _unseen_count(self):
		return len(self._new_post_uris - self._seen_post_uris)

	# ============ Moderation ============

	@property
	def moderation(self):
		return self._moderation

	def _saved_moderation(self, account_id):
		if self.prefs is None or account_id is None:
			return ModerationSettings()
		return get_moderation_settings(self.prefs, account_id)

	def _filter(self, items, feed):
		return filter_feed_items(items, self._moderation, feed)

	def set_moderation(self, settings):
		"""Use new moderation settings and drop entries they hide from posts and pending.

		Entries hidden earlier come back with the next load.
		"""
		with self._lock:
			self._moderation = settings
			account_id = self._account_id
			state = self._state
			posts = self._filter(state.posts, state.selected_feed)
			pending = self._filter(state.pending_new_posts, state.selected_feed)
			changed = len(posts) != len(state.posts) or len(pending) != len(state.pending_new_posts)
			if changed:
				self._state = replace(state, posts=posts, pending_new_posts=pending)
			state = self._state
		if self.prefs is not None and account_id is not None:
			set_moderation_settings(self.prefs, account_id, settings)
		if changed:
			logger.debug("Moderation settings changed, filtered the loaded posts")
			self._notify(state)

	# ============ Lifecycle ============

	def attach(self):
		"""The feed is on screen: load what is missing and start polling."""
		self._attached = True
		if self._account_id is None:
			return
		self.load_available_feeds()
		if not self._state.has_loaded and not self._state.is_loading:
			self.load_timeline()
		self.start_polling()

	def detach(self):
		"""The feed left the screen: remember the scroll position and stop polling."""
		self._attached = False
		self.persist_scroll_state()
		self.stop_polling()

	def start_polling(self):
		if self._account_id is None:
			return False
		return self.poller.start()

	def stop_polling(self):
		self.poller.stop()
		with self._lock:
			self._poll_epoch += 1

	def restart_polling(self):
		"""Apply a changed refresh interval."""
		self.stop_polling()
		if self._attached:
			self.start_polling()

	def _on_account_switched(self, account):
		self.persist_scroll_state()
		self.stop_polling()
		with self._lock:
			self._generation += 1
			self._account_id = account.id if account is not None else None
			self._new_post_uris.clear()
			self._seen_post_uris.clear()
			self._poll_failures = 0
			self._moderation = self._saved_moderation(self._account_id)
			self._state = TimelineState()
			state = self._state
		logger.info(f"Timeline reset for account {account.handle if account else None}")
		self._notify(state)
		if account is not None and self._attached:
			self.attach()

	# ============ Loading ============

	def load_timeline(self, error_message=None):
		"""Fetch the first page of the selected feed, replacing posts and cursor.

		`error_message` is shown during and after the load; a failed action
		passes its error here so the reload does not wipe it.
		"""
		with self._lock:
			if self._account_id is None:
				return False
			self._generation += 1
			op = self._operation()
			show_cached = not self._state.posts
			self._state = replace(self._state, is_loading=True, is_loading_more=False, error_message=error_message)
			state = self._state
		self._notify(state)
		if show_cached:
			self._show_cached(op)
		self._run(self._do_load, op, error_message)
		return True

	def _show_cached(self, op):
		if self.cache is None:
			return
		items, metadata = self.cache.load_feed(op.account_id, op.feed.uri)
		if not items:
			return
		with self._lock:
			if not self._is_current(op) or self._state.posts:
				return
			posts = self._filter(_unique_by_uri(items), op.feed)
			self._state = replace(self._state, posts=posts, cursor=metadata.get('cursor'))
			state = self._state
		logger.debug(f"Showing {len(items)} cached posts for {op.feed.display_name}")
		self._notify(state)

	def _do_load(self, op, error_message=None):
		anchor = anchor_time = None
		if self.cache is not None:
			anchor, anchor_time = self.cache.load_scroll_position(op.account_id, op.feed.uri)
		try:
			items, cursor = self._fetch_to_anchor(op.feed, anchor)
		except ProtocolError as e:
			logger.error(f"Failed to load {op.feed.display_name}: {e}", exc_info=True)
			with self._lock:
				# Cached posts on screen count as loaded so polling can pick up from them
				has_loaded = self._state.has_loaded or bool(self._state.posts)
			self._apply(op, is_loading=False, has_loaded=has_loaded, error_message=describe_error(e))
			return

		posts = self._filter(_unique_by_uri(items), op.feed)
		if anchor is not None and anchor not in {item.uri for item in posts}:
			anchor = _closest_post(posts, anchor_time)
		applied = self._apply(
			op,
			posts=posts,
			cursor=cursor,
			is_loading=False,
			has_loaded=True,
			error_message=error_message,
			background_fetch_error=None,
			pending_new_posts=(),
			should_auto_insert=False,
			saved_scroll_anchor=anchor,
		)
		if applied:
			logger.info(f"Loaded {len(posts)} posts for {op.feed.display_name}")
			if self.cache is not None:
				self.cache.save_feed(op.account_id, op.feed.uri, list(posts), cursor)

	def _fetch_to_anchor(self, feed, anchor):
		"""Load the first page, paging further back until `anchor` is among the posts.

		Stops after MAX_ANCHOR_PAGES pages or MAX_ANCHOR_POSTS posts. Returns
		every fetched entry and the cursor after the last page.
		"""
		items = []
		cursor = None
		for _ in range(MAX_ANCHOR_PAGES):
			page = self.client.get_feed_page(feed, limit=self.page_size, cursor=cursor)
			items.extend(page.items)
			cursor = page.cursor
			if anchor is None or any(item.uri == anchor for item in page.items):
				break
			if cursor is None or not page.items or len(items) >= MAX_ANCHOR_POSTS:
				logger.debug(f"Scroll anchor not found in the newest {len(items)} posts")
				break
		return items, cursor

	def refresh(self, error_message=None):
		"""Reload the feed from the top (pull to refresh)."""
		with self._lock:
			self._state = replace(self._state, cursor=None)
		return self.load_timeline(error_message)

	def load_more(self):
		"""Append the next page; ignored without a cursor or while loading."""
		with self._lock:
			state = self._state
			if state.cursor is None or state.is_loading or state.is_loading_more:
				return False
			op = self._operation()
			cursor = state.cursor
			self._state = replace(state, is_loading_more=True)
			state = self._state
		self._notify(state)
		self._run(self._do_load_more, op, cursor)
		return True

	def _do_load_more(self, op, cursor):
		try:
			page = self.client.get_feed_page(op.feed, limit=self.page_size, cursor=cursor)
		except ProtocolError as e:
			logger.error(f"Failed to load more of {op.feed.display_name}: {e}", exc_info=True)
			self._apply(op, is_loading_more=False, error_message=describe_error(e))
			return
		with self._lock:
			if not self._is_current(op):
				logger.debug("Discarding stale page")
				return
			state = self._state
			additions = self._filter(_unique_by_uri(page.items, exclude={item.uri for item in state.posts}), op.feed)
			self._state = replace(
				state,
				posts=state.posts + additions,
				cursor=page.cursor,
				is_loading_more=False,
				error_message=None,
			)
			state = self._state
		self._notify(state)

	# ============ Polling for new posts ============

	def poll_for_new_posts(self):
		"""Fetch the newest posts into pending_new_posts without touching posts."""
		with self._lock:
			state = self._state
			if self._account_id is None or not state.has_loaded or state.is_loading or state.is_loading_more:
				return
			op = self._operation()
			epoch = self._poll_epoch
			known = {item.uri for item in state.posts + state.pending_new_posts}

		try:
			fetched = self._fetch_newer(op.feed, known)
		except ProtocolError as e:
			self._poll_failures += 1
			logger.warning(f"Background refresh failed ({self._poll_failures} in a row): {e}")
			if epoch == self._poll_epoch:
				self._apply(op, background_fetch_error=describe_error(e))
			return

		self._poll_failures = 0
		with self._lock:
			if not self._is_current(op) or epoch != self._poll_epoch:
				logger.debug("Discarding poll result")
				return
			state = self._state
			known = {item.uri for item in state.posts + state.pending_new_posts}
			fresh = self._filter(_unique_by_uri(fetched, exclude=known), op.feed)
			if not fresh and state.background_fetch_error is None:
				return
			self._new_post_uris.update(item.uri for item in fresh)
			pending = fresh + state.pending_new_posts
			self._state = replace(
				state,
				pending_new_posts=pending,
				unseen_posts_count=self._unseen_count(),
				background_fetch_error=None,
				should_auto_insert=bool(pending) and self._is_at_top(state),
			)
			state = self._state
		if fresh:
			logger.info(f"{len(fresh)} new posts in {op.feed.display_name}")
		self._notify(state)

	def _fetch_newer(self, feed, known):
		"""Walk pages from the newest until one overlaps what is already known."""
		collected = []
		cursor = None
		for _ in range(self.max_poll_batches):
			page = self.client.get_feed_page(feed, limit=self.page_size, cursor=cursor)
			overlap = False
			for item in page.items:
				if item.uri in known:
					overlap = True
				else:
					collected.append(item)
			if overlap or not known or not page.items or page.cursor is None:
				break
			cursor = page.cursor
		return collected

	def _is_at_top(self, state):
		if state.visible_post_uri is None:
			return True
		return state.visible_post_uri in {item.uri for item in state.posts[:TOP_OF_FEED]}

	def insert_pending_posts(self):
		"""Move every pending post to the front of posts in one update."""
		with self._lock:
			state = self._state
			if not state.pending_new_posts:
				if state.should_auto_insert:
					self._state = replace(state, should_auto_insert=False)
				return 0
			inserted = _unique_by_uri(state.pending_new_posts, exclude={item.uri for item in state.posts})
			self._state = replace(
				state,
				posts=inserted + state.posts,
				pending_new_posts=(),
				should_auto_insert=False,
			)
			state = self._state
		self._notify(state)
		return len(inserted)

	def mark_post_as_seen(self, uri):
		with self._lock:
			if uri not in self._new_post_uris or uri in self._seen_post_uris:
				return
			self._seen_post_uris.add(uri)
			count = self._unseen_count()
		self._apply(unseen_posts_count=count)

	def clear_new_posts_tracking(self):
		with self._lock:
			self._new_post_uris.clear()
			self._seen_post_uris.clear()
		self._apply(unseen_posts_count=0)

	# ============ Scroll position ============

	def set_visible_post(self, uri):
		if uri != self._state.visible_post_uri:
			self._apply(visible_post_uri=uri)

	def persist_scroll_state(self):
		"""Save the visible post of the current feed; returns the saved URI.

		The post's creation time is saved with it, so a later restore can
		fall back to the nearest post when this one is no longer in reach.
		"""
		with self._lock:
			account_id = self._account_id
			state = self._state
		if self.cache is None or account_id is None or not state.visible_post_uri:
			return None
		created = None
		for item in state.posts:
			if item.uri == state.visible_post_uri:
				created = item.post.created_at
				break
		self.cache.save_scroll_anchor(
			account_id,
			state.selected_feed.uri,
			state.visible_post_uri,
			created.isoformat() if created is not None else None,
		)
		return state.visible_post_uri

	def consume_scroll_anchor(self):
		"""Return the saved anchor once, if its post is loaded, then forget it."""
		with self._lock:
			anchor = self._state.saved_scroll_anchor
			if anchor is None:
				return None
			present = any(item.uri == anchor for item in self._state.posts)
			self._state = replace(self._state, saved_scroll_anchor=None)
			state = self._state
		self._notify(state)
		return anchor if present else None

	# ============ Feeds ============

	def load_available_feeds(self):
		with self._lock:
			account_id = self._account_id
		if account_id is None:
			return
		self._run(self._do_load_feeds, account_id)

	def _do_load_feeds(self, account_id):
		try:
			feeds = self.client.get_saved_feeds()
		except ProtocolError as e:
			logger.warning(f"Could not load saved feeds, showing Following only: {e}")
			feeds = [FOLLOWING]
		feeds = self._ordered_feeds(account_id, feeds)
		with self._lock:
			if account_id != self._account_id:
				return
		self._apply(available_feeds=tuple(feeds))

		try:
			settings = self.client.get_moderation_settings()
		except ProtocolError as e:
			logger.warning(f"Could not load moderation preferences, keeping the saved ones: {e}")
			return
		with self._lock:
			if account_id != self._account_id:
				return
		self.set_moderation(settings)

	def _ordered_feeds(self, account_id, feeds):
		if self.prefs is None:
			return list(feeds)
		order = get_feed_order(self.prefs, account_id)
		if not order:
			return list(feeds)
		position = {uri: index for index, uri in enumerate(order)}
		# Feeds missing from the saved order keep their relative order at the end
		return sorted(feeds, key=lambda feed: position.get(feed.uri, len(order)))

	def move_feed(self, feed_uri, index):
		"""Move a feed to a new position and remember the order."""
		with self._lock:
			feeds = list(self._state.available_feeds)
			matches = [feed for feed in feeds if feed.uri == feed_uri]
			if not matches:
				return False
			feeds.remove(matches[0])
			feeds.insert(max(0, min(index, len(feeds))), matches[0])
			account_id = self._account_id
		if self.prefs is not None and account_id is not None:
			set_feed_order(self.prefs, account_id, [feed.uri for feed in feeds])
		self._apply(available_feeds=tuple(feeds))
		return True

	def unsave_feed(self, feed):
		"""Remove a feed from the user's saved feeds."""
		if feed.is_following:
			return False
		with self._lock:
			account_id = self._account_id
		self._run(self._do_unsave_feed, account_id, feed)
		return True

	def _do_unsave_feed(self, account_id, feed):
		try:
			self.client.unsave_feed(feed.uri)
		except ProtocolError as e:
			logger.error(f"Could not remove feed {feed.display_name}: {e}", exc_info=True)
			self._apply(error_message=describe_error(e))
			return
		with self._lock:
			if account_id != self._account_id:
				return
			feeds = tuple(f for f in self._state.available_feeds if f.uri != feed.uri)
			was_selected = self._state.selected_feed.uri == feed.uri
		self._apply(available_feeds=feeds)
		if was_selected:
			self.switch_to_feed(FOLLOWING)

	def switch_to_feed(self, feed):
		"""Show another feed; nothing from the previous feed stays visible."""
		if feed.uri == self._state.selected_feed.uri:
			return False
		self.persist_scroll_state()
		self.stop_polling()
		with self._lock:
			self._generation += 1
			self._new_post_uris.clear()
			self._seen_post_uris.clear()
			self._state = replace(
				self._state,
				selected_feed=feed,
				posts=(),
				cursor=None,
				pending_new_posts=(),
				unseen_posts_count=0,
				should_auto_insert=False,
				visible_post_uri=None,
				saved_scroll_anchor=None,
				error_message=None,
				background_fetch_error=None,
				has_loaded=False,
				is_loading=False,
				is_loading_more=False,
			)
			state = self._state
		logger.info(f"Switched to feed {feed.display_name}")
		self._notify(state)
		self.load_timeline()
		if self._attached:
			self.start_polling()
		return True

	# ============ Optimistic actions ============

	def _find_post(self, uri):
		for item in self._state.posts + self._state.pending_new_posts:
			if item.uri == uri:
				return item.post
		return None

	def _rewrite_post(self, uri, transform):
		"""Apply transform to every entry (posts and pending) showing the post at `uri`.

		Must be called with the lock held; returns the new state, or None
		when nothing changed.
		"""
		def rewrite(items):
			changed = False
			result = []
			for item in items:
				if item.uri == uri:
					post = transform(item.post)
					if post is not item.post:
						item = replace(item, post=post)
						changed = True
				result.append(item)
			return tuple(result) if changed else items

		state = self._state
		posts = rewrite(state.posts)
		pending = rewrite(state.pending_new_posts)
		if posts is state.posts and pending is state.pending_new_posts:
			return None
		self._state = replace(state, posts=posts, pending_new_posts=pending)
		return self._state

	def _toggle(self, item, field, apply, create, delete, action):
		uri = item.uri
		with self._lock:
			post = self._find_post(uri) or (item.post if isinstance(item, FeedViewPost) else item)
			previous = getattr(post.viewer, field)
			account_id = self._account_id
			key = (account_id, uri, field)
			if previous == PENDING_RECORD_URI or key in self._in_flight:
				logger.debug(f"Ignoring {action} toggle while a request is in flight")
				return False
			self._in_flight.add(key)
			state = self._rewrite_post(uri, lambda p: apply(p, PENDING_RECORD_URI if previous is None else None))
		if state is not None:
			self._notify(state)
		self._run(self._do_toggle, account_id, post, field, apply, create, delete, previous, action)
		return True

	def _do_toggle(self, account_id, post, field, apply, create, delete, previous, action):
		try:
			self._send_toggle(account_id, post, field, apply, create, delete, previous, action)
		finally:
			with self._lock:
				self._in_flight.discard((account_id, post.uri, field))

	def _send_toggle(self, account_id, post, field, apply, create, delete, previous, action):
		try:
			if previous is None:
				record_uri = create(post.uri, post.cid)
				with self._lock:
					if account_id != self._account_id:
						return
					state = self._rewrite_post(
						post.uri,
						lambda p: apply(p, record_uri) if getattr(p.viewer, field) == PENDING_RECORD_URI else p,
					)
				if state is not None:
					self._notify(state)
			else:
				delete(previous)
		except ProtocolError as e:
			logger.error(f"Failed to {action} {post.uri}: {e}", exc_info=True)
			with self._lock:
				if account_id != self._account_id:
					return
			# Refetch to drop the optimistic change
			self.refresh(error_message=describe_error(e))

	def toggle_like(self, item):
		"""Like or unlike a post (a FeedViewPost or Post) optimistically."""
		return self._toggle(item, 'like', with_like, self.client.like, self.client.unlike, 'like')

	def toggle_repost(self, item):
		"""Repost or undo a repost optimistically."""
		return self._toggle(item, 'repost', with_repost, self.client.repost, self.client.unrepost, 'repost')
