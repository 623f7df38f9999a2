"""Skyline: the client core of a Bluesky application."""

APP_NAME = "Skyline"
APP_VERSION = "0.1.0"

from .application import Application  # noqa: E402
from .session_store import SessionStore  # noqa: E402
from .thread import ThreadController, ThreadState  # noqa: E402
from .timeline import TimelineController, TimelineState  # noqa: E402
