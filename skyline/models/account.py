"""Stored account credentials."""

from dataclasses import dataclass, asdict, fields
from typing import Optional


@dataclass(frozen=True)
class Account:
    """A signed-in Bluesky account.

    `id` is the opaque key the session store files the account under; the
    DID is used so signing in again to the same account updates it in place.
    """
    id: str
    did: str
    handle: str
    access_token: str
    refresh_token: str
    pds_host: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data) -> 'Account':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in dict(data).items() if k in known})

    def __repr__(self):
        # Keep tokens out of logs
        return f"Account(id={self.id!r}, handle={self.handle!r}, pds_host={self.pds_host!r})"
