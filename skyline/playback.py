"""Keeps at most one media item playing with sound at a time."""

import threading

from .logging_config import get_logger

logger = get_logger('playback')


class PlaybackCoordinator(object):
	"""Grants exclusive playback to one player id at a time.

	A player handed to request_exclusive_playback() only needs a pause()
	method; it is paused when another id takes over.
	"""

	def __init__(self, prefs=None):
		self.prefs = prefs
		self._lock = threading.Lock()
		self._current_id = None
		self._current_player = None

	@property
	def current_id(self):
		return self._current_id

	def request_exclusive_playback(self, player_id, player=None):
		"""Make `player_id` the only playing item; returns the id it displaced."""
		with self._lock:
			previous_id, previous_player = self._current_id, self._current_player
			self._current_id = player_id
			self._current_player = player
		if previous_id is None or previous_id == player_id:
			return None
		logger.debug(f"Pausing {previous_id} for {player_id}")
		if previous_player is not None:
			previous_player.pause()
		return previous_id

	def release(self, player_id):
		"""Give up playback; ignored unless `player_id` is the current one."""
		with self._lock:
			if self._current_id != player_id:
				return False
			self._current_id = None
			self._current_player = None
		return True

	def should_autoplay(self):
		if self.prefs is None:
			return True
		return bool(self.prefs.get("auto_play_videos", True))
