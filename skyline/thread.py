"""Thread view state: shallow first load, background deepening, reply paging."""

import threading
import time
from collections import namedtuple
from dataclasses import dataclass, replace
from typing import FrozenSet, Optional

from .errors import ProtocolError, describe_error
from .logging_config import get_logger
from .models import (
	PENDING_RECORD_URI,
	ThreadViewPost,
	find_node,
	has_more_replies,
	limit_replies,
	merge_replies,
	update_post_in_tree,
	with_like,
	with_repost,
)
from .timeline import run_in_thread

logger = get_logger('thread')

INITIAL_DEPTH = 1
EXPAND_DEPTH = 3
INITIAL_VISIBLE_REPLIES = 10
REPLY_BATCH_SIZE = 20
DEEPEN_DELAY = 0.3


@dataclass(frozen=True)
class ThreadState:
	"""Snapshot of an open thread.

	`thread` is what is displayed; `full_thread` is the deepest tree fetched
	so far and the source for showing more replies.
	"""
	root_uri: Optional[str] = None
	thread: Optional[ThreadViewPost] = None
	full_thread: Optional[ThreadViewPost] = None
	is_loading: bool = False
	error_message: Optional[str] = None
	visible_reply_count: int = INITIAL_VISIBLE_REPLIES
	loading_replies_for: FrozenSet[str] = frozenset()


_Operation = namedtuple("_Operation", "generation account_id root_uri")


class ThreadController(object):
	def __init__(self, client, store=None, runner=None, sleep=time.sleep,
			initial_depth=INITIAL_DEPTH, expand_depth=EXPAND_DEPTH,
			initial_visible_replies=INITIAL_VISIBLE_REPLIES, reply_batch_size=REPLY_BATCH_SIZE,
			deepen_delay=DEEPEN_DELAY):
		self.client = client
		self.store = store
		self.initial_depth = initial_depth
		self.expand_depth = expand_depth
		self.initial_visible_replies = initial_visible_replies
		self.reply_batch_size = reply_batch_size
		self.deepen_delay = deepen_delay
		self._run = runner or run_in_thread
		self._sleep = sleep
		self._lock = threading.RLock()
		self._state = ThreadState(visible_reply_count=initial_visible_replies)
		self._listeners = []
		self._generation = 0
		self._in_flight = set()
		self._account_id = store.active_account_id() if store is not None else None
		if store is not None:
			store.add_listener(self._on_account_switched)

	@property
	def state(self):
		return self._state

	def subscribe(self, listener):
		self._listeners.append(listener)
		return lambda: self._listeners.remove(listener) if listener in self._listeners else None

	def _notify(self, state):
		for listener in list(self._listeners):
			listener(state)

	def _operation(self):
		return _Operation(self._generation, self._account_id, self._state.root_uri)

	def _is_current(self, op):
		return (op.generation == self._generation and op.account_id == self._account_id
			and op.root_uri == self._state.root_uri)

	def _apply(self, op=None, **changes):
		with self._lock:
			if op is not None and not self._is_current(op):
				return False
			self._state = replace(self._state, **changes)
			state = self._state
		self._notify(state)
		return True

	def _on_account_switched(self, account):
		with self._lock:
			self._generation += 1
			self._account_id = account.id if account is not None else None
			self._state = ThreadState(visible_reply_count=self.initial_visible_replies)
			state = self._state
		self._notify(state)

	def reset(self):
		"""Close the thread, discarding anything still in flight."""
		with self._lock:
			self._generation += 1
			self._state = ThreadState(visible_reply_count=self.initial_visible_replies)
			state = self._state
		self._notify(state)

	# ============ Loading ============

	def load_thread(self, post_uri):
		"""Show a thread quickly, then fetch it deeper in the background."""
		self._start_load(post_uri)

	def _start_load(self, post_uri, error_message=None, visible_reply_count=None):
		with self._lock:
			self._generation += 1
			previous = self._state
			same_root = previous.root_uri == post_uri
			self._state = ThreadState(
				root_uri=post_uri,
				# A retry keeps what is already on screen
				thread=previous.thread if same_root else None,
				full_thread=previous.full_thread if same_root else None,
				is_loading=True,
				error_message=error_message,
				visible_reply_count=visible_reply_count or self.initial_visible_replies,
			)
			op = self._operation()
			state = self._state
		self._notify(state)
		self._run(self._do_load, op, error_message)

	def _do_load(self, op, error_message=None):
		try:
			tree = self.client.get_post_thread(op.root_uri, depth=self.initial_depth)
		except ProtocolError as e:
			logger.error(f"Failed to load thread {op.root_uri}: {e}", exc_info=True)
			self._apply(op, is_loading=False, error_message=describe_error(e))
			return
		applied = self._apply(
			op,
			thread=limit_replies(tree, self._state.visible_reply_count),
			full_thread=tree,
			is_loading=False,
			error_message=error_message,
		)
		if not applied:
			return
		# Let the first render settle before asking for the deeper tree
		self._sleep(self.deepen_delay)
		self._load_deeper(op)

	def _load_deeper(self, op):
		try:
			tree = self.client.get_post_thread(op.root_uri, depth=self.expand_depth)
		except ProtocolError as e:
			logger.warning(f"Could not expand thread {op.root_uri}: {e}")
			return
		with self._lock:
			if not self._is_current(op):
				logger.debug(f"Dropping expanded thread for {op.root_uri}, no longer open")
				return
			self._state = replace(
				self._state,
				full_thread=tree,
				thread=limit_replies(tree, self._state.visible_reply_count),
			)
			state = self._state
		self._notify(state)

	# ============ Reply paging ============

	def can_show_more_replies(self):
		full = self._state.full_thread
		return bool(full and full.replies and len(full.replies) > self._state.visible_reply_count)

	def show_more_replies(self):
		"""Reveal the next batch of already fetched top-level replies."""
		with self._lock:
			state = self._state
			if state.full_thread is None:
				return False
			count = state.visible_reply_count + self.reply_batch_size
			self._state = replace(
				state,
				visible_reply_count=count,
				thread=limit_replies(state.full_thread, count),
			)
			state = self._state
		self._notify(state)
		return True

	@staticmethod
	def has_more_replies(node):
		return has_more_replies(node)

	def load_more_replies(self, post_uri):
		"""Fetch the replies of one post deeper and merge them into both trees."""
		with self._lock:
			state = self._state
			if state.full_thread is None or post_uri in state.loading_replies_for:
				return False
			op = self._operation()
			self._state = replace(state, loading_replies_for=state.loading_replies_for | {post_uri})
			state = self._state
		self._notify(state)
		self._run(self._do_load_more_replies, op, post_uri)
		return True

	def _do_load_more_replies(self, op, post_uri):
		try:
			fetched = self.client.get_post_thread(post_uri, depth=self.expand_depth)
		except ProtocolError as e:
			logger.error(f"Failed to load replies of {post_uri}: {e}", exc_info=True)
			with self._lock:
				if not self._is_current(op):
					return
				self._state = replace(self._state, loading_replies_for=self._state.loading_replies_for - {post_uri})
				state = self._state
			self._notify(state)
			return
		with self._lock:
			if not self._is_current(op):
				return
			state = self._state
			self._state = replace(
				state,
				thread=merge_replies(state.thread, fetched, post_uri) if state.thread else None,
				full_thread=merge_replies(state.full_thread, fetched, post_uri) if state.full_thread else None,
				loading_replies_for=state.loading_replies_for - {post_uri},
			)
			state = self._state
		self._notify(state)

	# ============ Optimistic actions ============

	def _rewrite_post(self, uri, transform):
		"""Rewrite the post in both trees; lock must be held."""
		state = self._state
		thread = update_post_in_tree(state.thread, uri, transform) if state.thread else None
		full = update_post_in_tree(state.full_thread, uri, transform) if state.full_thread else None
		if thread is state.thread and full is state.full_thread:
			return None
		self._state = replace(state, thread=thread, full_thread=full)
		return self._state

	def _toggle(self, post, field, apply, create, delete, action):
		with self._lock:
			node = find_node(self._state.thread, post.uri) or find_node(self._state.full_thread, post.uri)
			current = node.post if node is not None else post
			previous = getattr(current.viewer, field)
			op = self._operation()
			key = (op.account_id, post.uri, field)
			if previous == PENDING_RECORD_URI or key in self._in_flight:
				logger.debug(f"Ignoring {action} toggle while a request is in flight")
				return False
			self._in_flight.add(key)
			state = self._rewrite_post(post.uri, lambda p: apply(p, PENDING_RECORD_URI if previous is None else None))
		if state is not None:
			self._notify(state)
		self._run(self._do_toggle, op, current, field, apply, create, delete, previous, action)
		return True

	def _do_toggle(self, op, post, field, apply, create, delete, previous, action):
		try:
			self._send_toggle(op, post, field, apply, create, delete, previous, action)
		finally:
			with self._lock:
				self._in_flight.discard((op.account_id, post.uri, field))

	def _send_toggle(self, op, post, field, apply, create, delete, previous, action):
		try:
			if previous is None:
				record_uri = create(post.uri, post.cid)
				with self._lock:
					if not self._is_current(op):
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
				if not self._is_current(op):
					return
				visible = self._state.visible_reply_count
			# Refetch to drop the optimistic change, keeping the error and the replies shown
			self._start_load(op.root_uri, describe_error(e), visible)

	def toggle_like(self, post):
		return self._toggle(post, 'like', with_like, self.client.like, self.client.unlike, 'like')

	def toggle_repost(self, post):
		return self._toggle(post, 'repost', with_repost, self.client.repost, self.client.unrepost, 'repost')
