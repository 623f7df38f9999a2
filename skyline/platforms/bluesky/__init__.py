"""Bluesky (AT Protocol) platform support."""

from .client import BlueskyClient, DEFAULT_PDS, normalize_pds_host

__all__ = ['BlueskyClient', 'DEFAULT_PDS', 'normalize_pds_host']
