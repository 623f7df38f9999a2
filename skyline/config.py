"""Simple JSON-based configuration module."""

import os
import json
import atexit
import platform
import tempfile
from collections.abc import MutableMapping

from .errors import ConfigError
from .logging_config import get_logger

logger = get_logger('config')

# Cache for portable mode detection
_portable_path = None
_portable_checked = False

APP_CONFIG_DIRNAME = "skyline"


def is_portable_mode():
	"""Check if running in portable mode (userdata folder exists in current directory)."""
	global _portable_path, _portable_checked
	if _portable_checked:
		return _portable_path is not None

	_portable_checked = True
	# Portable mode is not supported on macOS
	if platform.system() == "Darwin":
		return False

	userdata_path = os.path.join(os.getcwd(), "userdata")
	if os.path.isdir(userdata_path):
		_portable_path = userdata_path
		return True

	return False


def get_portable_path():
	"""Get the portable userdata path, or None if not in portable mode."""
	is_portable_mode()
	return _portable_path


def get_config_home():
	"""Get the user config directory based on platform.

	On Windows/Linux, if a 'userdata' folder exists in the current directory,
	that folder will be used instead (portable mode).
	"""
	portable = get_portable_path()
	if portable:
		return portable

	if platform.system() == "Windows":
		return os.environ.get("APPDATA", os.path.expanduser("~"))
	elif platform.system() == "Darwin":
		return os.path.expanduser("~/Library/Application Support")
	else:
		return os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))


def get_app_dir(config_home=None):
	"""Directory holding every Skyline file (config, accounts, cache, logs)."""
	home = config_home or get_config_home()
	if config_home is None and is_portable_mode():
		return home
	return os.path.join(home, APP_CONFIG_DIRNAME)


class Config(MutableMapping):
	"""A JSON-based configuration mapping with attribute access and autosave.

	Writes go to a temporary file in the same directory which then replaces
	the real file, so a crash mid-save leaves the previous version intact.
	"""

	def __init__(self, name, autosave=False, save_on_exit=True, config_home=None, _parent=None, _data=None):
		self._name = name
		self._autosave = autosave
		self._parent = _parent
		self._closed = False
		self._app_dir = get_app_dir(config_home)

		if _data is None:
			self._data = {}
			if _parent is None:
				self._load()
				if save_on_exit:
					atexit.register(self.save)
		else:
			self._data = _data

	@property
	def config_file(self):
		"""Get the path to the config file."""
		if self._name:
			return os.path.join(self._app_dir, self._name, "config.json")
		return os.path.join(self._app_dir, "config.json")

	def _load(self):
		"""Load configuration from file; a missing file is an empty config."""
		try:
			with open(self.config_file, 'r', encoding='utf-8') as f:
				self._data = json.load(f)
		except FileNotFoundError:
			return
		except (OSError, ValueError) as e:
			logger.error(f"Error loading config {self.config_file}: {e}")
			raise ConfigError(f"Could not read {self.config_file}: {e}") from e
		if not isinstance(self._data, dict):
			raise ConfigError(f"{self.config_file} does not contain a JSON object")

	def save(self):
		"""Save configuration to file."""
		if self._parent:
			return self._parent.save()

		config_file = self.config_file
		directory = os.path.dirname(config_file)
		os.makedirs(directory, exist_ok=True)

		fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".tmp", dir=directory)
		try:
			with os.fdopen(fd, 'w', encoding='utf-8') as f:
				json.dump(self._data, f, indent=1, default=self._serialize)
				f.flush()
				os.fsync(f.fileno())
			os.replace(tmp_path, config_file)
		except (OSError, TypeError, ValueError) as e:
			logger.error(f"Error saving config {config_file}: {e}")
			try:
				os.unlink(tmp_path)
			except OSError:
				pass
			raise ConfigError(f"Could not write {config_file}: {e}") from e

	def _serialize(self, obj):
		"""Custom serializer for nested Config objects."""
		if hasattr(obj, '_data'):
			return obj._data
		return str(obj)

	def get(self, key, default=None):
		"""Get a value with a default."""
		return self._data.get(key, default)

	def __getitem__(self, key):
		return self._data[key]

	def __setitem__(self, key, value):
		if isinstance(value, dict):
			value = Config(name=self._name, autosave=self._autosave, _parent=self, _data=value)
		self._data[key] = value
		if self._autosave:
			self.save()

	def set_many(self, values):
		"""Set several keys with a single save."""
		for key, value in values.items():
			if isinstance(value, dict):
				value = Config(name=self._name, autosave=self._autosave, _parent=self, _data=value)
			self._data[key] = value
		if self._autosave:
			self.save()

	def __delitem__(self, key):
		del self._data[key]
		if self._autosave:
			self.save()

	def __iter__(self):
		return iter(self._data)

	def __len__(self):
		return len(self._data)

	def __repr__(self):
		return repr(self._data)

	def __getattr__(self, name):
		if name.startswith('_'):
			raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")
		try:
			return self[name]
		except KeyError:
			raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

	def __setattr__(self, name, value):
		if name.startswith('_'):
			super().__setattr__(name, value)
		else:
			self[name] = value

	def __delattr__(self, name):
		if name.startswith('_'):
			super().__delattr__(name)
		else:
			del self[name]

	def close(self):
		"""Save and close the config."""
		if not self._closed:
			self._closed = True
			self.save()
			atexit.unregister(self.save)
			return True
		return False
