"""Exception types shared across Skyline."""

from atproto.exceptions import AtProtocolError


class ConfigError(Exception):
	"""A configuration file could not be read or written."""


class ProtocolError(AtProtocolError):
	"""Base class for every failure surfaced by the protocol client."""

	def __init__(self, message="", status=None, error=None):
		super().__init__(message)
		self.message = message
		self.status = status
		self.error = error

	def __str__(self):
		if self.error and self.message:
			return f"{self.error}: {self.message}"
		return self.message or self.error or type(self).__name__


class AuthenticationError(ProtocolError):
	"""No usable session: not signed in, or the refresh token was rejected."""


class NetworkError(ProtocolError):
	"""The request never produced an HTTP response (connection, timeout)."""


class APIError(ProtocolError):
	"""The server answered with a non-success XRPC response."""


class DecodeError(ProtocolError):
	"""The response body did not have the expected shape."""


def describe_error(error):
	"""Build a short user-facing message for an error."""
	if isinstance(error, AuthenticationError):
		return "Your session has expired. Please sign in again."
	if isinstance(error, NetworkError):
		return "Could not reach the server. Check your connection and try again."
	error_msg = str(error)
	if not error_msg or error_msg == "None":
		if getattr(error, 'args', None):
			error_msg = str(error.args[0])
		else:
			error_msg = type(error).__name__
	return error_msg
