"""On-disk caches."""

from .timeline_cache import TimelineCache

__all__ = ["TimelineCache"]
