"""Background polling loop used by the timeline."""

import threading

from .logging_config import get_logger

logger = get_logger('polling')


class BackgroundPoller(object):
	"""Calls `callback` every `interval()` seconds on a daemon thread.

	The interval is read again before every wait, so a changed setting
	applies from the next cycle; an interval of 0 ends the loop. stop()
	wakes the thread immediately instead of letting it finish its sleep.
	"""

	def __init__(self, callback, interval, name="poller"):
		self._callback = callback
		self._interval = interval
		self._name = name
		self._lock = threading.Lock()
		self._stop_event = None
		self._thread = None

	@property
	def is_running(self):
		with self._lock:
			return self._thread is not None and self._thread.is_alive()

	def start(self):
		"""Start polling; returns False when already running or disabled."""
		with self._lock:
			if self._thread is not None and self._thread.is_alive():
				return False
			interval = self._interval()
			if interval <= 0:
				logger.debug(f"{self._name}: polling disabled")
				return False
			# Each run gets its own event so a stopped thread can never be revived
			self._stop_event = threading.Event()
			self._thread = threading.Thread(target=self._run, args=(self._stop_event,), name=self._name, daemon=True)
			self._thread.start()
		logger.debug(f"{self._name}: polling every {interval}s")
		return True

	def stop(self):
		with self._lock:
			if self._stop_event is not None:
				self._stop_event.set()
			self._stop_event = None
			self._thread = None

	def restart(self):
		self.stop()
		return self.start()

	def _run(self, stop_event):
		while True:
			interval = self._interval()
			if interval <= 0 or stop_event.wait(interval):
				break
			try:
				self._callback()
			except Exception:
				# Keep polling; the next tick retries
				logger.exception(f"{self._name}: poll failed")
		logger.debug(f"{self._name}: polling stopped")
