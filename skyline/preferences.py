"""Application preferences stored in the main Skyline config."""

from enum import IntEnum

from .config import Config
from .logging_config import get_logger
from .models import ModerationSettings

logger = get_logger('preferences')


class RefreshInterval(IntEnum):
	"""How often the timeline polls for new posts, in seconds."""
	NEVER = 0
	ONE_SECOND = 1
	FIVE_SECONDS = 5
	FIFTEEN_SECONDS = 15
	THIRTY_SECONDS = 30
	ONE_MINUTE = 60
	FIVE_MINUTES = 300

	@property
	def label(self):
		if self is RefreshInterval.NEVER:
			return "Never"
		if self.value < 60:
			return f"{self.value} second{'s' if self.value != 1 else ''}"
		minutes = self.value // 60
		return f"{minutes} minute{'s' if minutes != 1 else ''}"


DEFAULT_REFRESH_INTERVAL = RefreshInterval.THIRTY_SECONDS


def load_preferences(config_home=None, prefs=None):
	"""Open the main config and fill in defaults for missing keys."""
	if prefs is None:
		prefs = Config(name="", autosave=True, config_home=config_home)
	prefs.refresh_interval = prefs.get("refresh_interval", int(DEFAULT_REFRESH_INTERVAL))
	prefs.auto_play_videos = prefs.get("auto_play_videos", True)
	prefs.request_timeout = prefs.get("request_timeout", 30)
	prefs.page_size = prefs.get("page_size", 50)
	prefs.timeline_cache_enabled = prefs.get("timeline_cache_enabled", True)
	prefs.debug_logging = prefs.get("debug_logging", False)
	prefs.feed_order = prefs.get("feed_order", {})
	prefs.moderation = prefs.get("moderation", {})
	return prefs


def get_refresh_interval(prefs):
	value = prefs.get("refresh_interval", int(DEFAULT_REFRESH_INTERVAL))
	try:
		return RefreshInterval(value)
	except ValueError:
		logger.warning(f"Unsupported refresh interval {value!r}, using {DEFAULT_REFRESH_INTERVAL.label}")
		return DEFAULT_REFRESH_INTERVAL


def set_refresh_interval(prefs, interval):
	prefs.refresh_interval = int(RefreshInterval(interval))


def get_feed_order(prefs, account_id):
	"""Feed URIs in the order the user arranged them for this account."""
	return list((prefs.get("feed_order") or {}).get(account_id) or [])


def set_feed_order(prefs, account_id, feed_uris):
	order = dict(prefs.get("feed_order") or {})
	order[account_id] = list(feed_uris)
	prefs.feed_order = order


def get_moderation_settings(prefs, account_id):
	"""The account's moderation settings as last fetched from the server."""
	return ModerationSettings.from_dict((prefs.get("moderation") or {}).get(account_id))


def set_moderation_settings(prefs, account_id, settings):
	stored = dict(prefs.get("moderation") or {})
	stored[account_id] = settings.to_dict()
	prefs.moderation = stored
