"""Durable storage for signed-in accounts and the active account pointer."""

import threading
from dataclasses import replace

from .config import Config
from .logging_config import get_logger
from .models import Account

logger = get_logger('accounts')


class SessionStore(object):
	"""Keeps every signed-in account and which one is active.

	The store is backed by an autosaving Config, so each mutation is on disk
	before the method returns. Switch listeners are called (outside the
	store's lock) with the newly active Account, or None once the last
	account is removed.
	"""

	def __init__(self, config=None, config_home=None):
		if config is None:
			config = Config(name="accounts", autosave=True, save_on_exit=False, config_home=config_home)
		self.config = config
		self._lock = threading.RLock()
		self._listeners = []

	def _accounts_data(self):
		return dict(self.config.get("accounts") or {})

	def _write(self, accounts, active_id):
		# One write for both keys so the file never holds a dangling pointer
		self.config.set_many({
			"accounts": {key: dict(value) for key, value in accounts.items()},
			"active_account": active_id,
		})

	def add_listener(self, callback):
		if callback not in self._listeners:
			self._listeners.append(callback)

	def remove_listener(self, callback):
		if callback in self._listeners:
			self._listeners.remove(callback)

	def _notify(self, account):
		for callback in list(self._listeners):
			callback(account)

	def accounts(self):
		with self._lock:
			return [Account.from_dict(data) for data in self._accounts_data().values()]

	def get_account(self, account_id):
		with self._lock:
			data = self._accounts_data().get(account_id)
			return Account.from_dict(data) if data else None

	def active_account_id(self):
		return self.config.get("active_account")

	def active_account(self):
		with self._lock:
			active_id = self.active_account_id()
			if active_id is None:
				return None
			return self.get_account(active_id)

	def add_account(self, account):
		"""Store an account and return its id.

		The first account becomes active. Adding an id that already exists
		replaces the stored credentials without touching the active pointer.
		"""
		with self._lock:
			accounts = self._accounts_data()
			existing = account.id in accounts
			accounts[account.id] = account.to_dict()
			active_id = self.active_account_id()
			became_active = active_id is None
			if became_active:
				active_id = account.id
			self._write(accounts, active_id)
		logger.info(f"{'Updated' if existing else 'Added'} account {account.handle}")
		if became_active:
			self._notify(account)
		return account.id

	def switch_account(self, account_id):
		"""Make `account_id` active. Unknown ids are ignored."""
		with self._lock:
			accounts = self._accounts_data()
			if account_id not in accounts:
				logger.debug(f"Ignoring switch to unknown account {account_id}")
				return False
			if account_id == self.active_account_id():
				return False
			self._write(accounts, account_id)
			account = Account.from_dict(accounts[account_id])
		logger.info(f"Switched to account {account.handle}")
		self._notify(account)
		return True

	def update_tokens(self, account_id, access_token, refresh_token):
		"""Persist refreshed tokens; returns the updated Account or None."""
		with self._lock:
			accounts = self._accounts_data()
			data = accounts.get(account_id)
			if data is None:
				return None
			account = replace(Account.from_dict(data), access_token=access_token, refresh_token=refresh_token)
			accounts[account_id] = account.to_dict()
			self._write(accounts, self.active_account_id())
			return account

	def update_profile(self, account_id, **changes):
		"""Update handle, display_name or avatar_url of a stored account."""
		allowed = {"handle", "display_name", "avatar_url"}
		unknown = set(changes) - allowed
		if unknown:
			raise ValueError(f"Cannot update {', '.join(sorted(unknown))}")
		with self._lock:
			accounts = self._accounts_data()
			data = accounts.get(account_id)
			if data is None:
				return None
			account = replace(Account.from_dict(data), **changes)
			accounts[account_id] = account.to_dict()
			self._write(accounts, self.active_account_id())
			return account

	def remove_account(self, account_id):
		"""Forget an account (sign-out).

		Removing the active account activates the first remaining one.
		"""
		with self._lock:
			accounts = self._accounts_data()
			if account_id not in accounts:
				return False
			removed = Account.from_dict(accounts.pop(account_id))
			active_id = self.active_account_id()
			switched = active_id == account_id
			if switched:
				active_id = next(iter(accounts), None)
			self._write(accounts, active_id)
			new_active = Account.from_dict(accounts[active_id]) if active_id else None
		logger.info(f"Removed account {removed.handle}")
		if switched:
			self._notify(new_active)
		return True
