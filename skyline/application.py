"""Builds and wires the Skyline services."""

import requests

from . import preferences
from .cache import TimelineCache
from .config import get_app_dir
from .errors import ProtocolError, describe_error
from .logging_config import get_logger, set_debug_mode, setup_logging
from .platforms.bluesky import BlueskyClient
from .playback import PlaybackCoordinator
from .session_store import SessionStore
from .thread import ThreadController
from .timeline import TimelineController

logger = get_logger('app')


class Application:
	"""Holds the services one running client needs.

	Nothing here is global: the presentation layer creates an Application,
	calls load(), and hands the controllers to its screens.
	"""

	def __init__(self, config_home=None, http_session=None, runner=None):
		self.config_home = config_home
		self.http_session = http_session
		self.runner = runner
		self.prefs = None
		self.confpath = ""
		self.store = None
		self.client = None
		self.cache = None
		self.playback = None
		self.timeline = None
		self.thread = None
		self.errors = []
		self._initialized = False

	def load(self):
		"""Load preferences and accounts and create the controllers."""
		if self._initialized:
			return

		self.confpath = get_app_dir(self.config_home)
		self.prefs = preferences.load_preferences(config_home=self.config_home)
		setup_logging(self.confpath, debug=self.prefs.debug_logging)

		self.store = SessionStore(config_home=self.config_home)
		self.client = BlueskyClient(
			self.store,
			session=self.http_session or requests.Session(),
			timeout=self.prefs.request_timeout,
		)
		if self.prefs.timeline_cache_enabled:
			self.cache = TimelineCache(self.confpath)
		self.playback = PlaybackCoordinator(self.prefs)
		self.timeline = TimelineController(
			self.client,
			self.store,
			prefs=self.prefs,
			cache=self.cache,
			runner=self.runner,
			page_size=self.prefs.page_size,
		)
		self.thread = ThreadController(self.client, self.store, runner=self.runner)

		active = self.store.active_account()
		logger.info(f"Loaded {len(self.store.accounts())} account(s), active: {active.handle if active else None}")
		self._initialized = True

	def handle_error(self, error, name="Unknown"):
		"""Log an error and remember a readable message for it."""
		logger.error(f"API error in {name}: {error}", exc_info=error)
		message = f"Error in {name}: {describe_error(error)}"
		self.errors.append(message)
		return message

	# ============ Accounts ============

	def login(self, identifier, password, pds_host=None):
		"""Sign in and store the account; the first account becomes active."""
		account = self.client.create_session(identifier, password, pds_host)
		self.store.add_account(account)
		return account

	def switch_account(self, account_id):
		return self.store.switch_account(account_id)

	def sign_out(self, account_id=None):
		"""Revoke the session, drop cached data and forget the account."""
		account = self.store.get_account(account_id) if account_id else self.store.active_account()
		if account is None:
			return False
		try:
			self.client.delete_session(account)
		except ProtocolError as e:
			# The local sign-out still goes ahead
			self.handle_error(e, "sign out")
		if self.cache is not None:
			self.cache.clear_account(account.id)
		return self.store.remove_account(account.id)

	# ============ Settings ============

	def set_refresh_interval(self, interval):
		preferences.set_refresh_interval(self.prefs, interval)
		self.timeline.restart_polling()

	def set_auto_play_videos(self, enabled):
		self.prefs.auto_play_videos = bool(enabled)

	def set_debug_logging(self, enabled):
		self.prefs.debug_logging = bool(enabled)
		set_debug_mode(enabled)

	def clear_cache(self):
		"""Drop every cached feed and saved scroll position, for all accounts."""
		if self.cache is None:
			return False
		self.cache.clear_all()
		logger.info("Timeline cache cleared")
		return True

	def close(self):
		if not self._initialized:
			return
		self.timeline.detach()
		self.thread.reset()
		if self.cache is not None:
			self.cache.close()
		self.prefs.close()
		self._initialized = False
