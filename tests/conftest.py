"""Shared fixtures and JSON builders for the Skyline tests."""

import pytest

from skyline.models import Account
from skyline.platforms.bluesky.models import (
    bluesky_feed_item_from_json,
    bluesky_feed_page_from_json,
    bluesky_thread_from_json,
)
from skyline.session_store import SessionStore


def make_author_json(did="did:plc:alice", handle="alice.bsky.social", display_name="Alice", labels=None,
                     following=None):
    author = {"did": did, "handle": handle, "displayName": display_name}
    if labels:
        author["labels"] = [make_label_json(did, value) for value in labels]
    if following:
        author["viewer"] = {"following": following}
    return author


def make_label_json(uri, value):
    return {"src": "did:plc:labeler", "uri": uri, "val": value, "cts": "2024-05-01T12:00:00.000Z"}


def post_uri(rkey, did="did:plc:alice"):
    return f"at://{did}/app.bsky.feed.post/{rkey}"


def make_post_json(rkey="p1", text="hello", did="did:plc:alice", like_count=0, repost_count=0,
                   reply_count=0, like=None, repost=None, embed=None, labels=None, author_labels=None,
                   created_at="2024-05-01T12:00:00.000Z", tags=None, following=None):
    post = {
        "$type": "app.bsky.feed.defs#postView",
        "uri": post_uri(rkey, did),
        "cid": f"cid-{rkey}",
        "author": make_author_json(did=did, handle=f"{did.split(':')[-1]}.bsky.social", labels=author_labels,
                                   following=following),
        "record": {
            "$type": "app.bsky.feed.post",
            "text": text,
            "createdAt": created_at,
        },
        "replyCount": reply_count,
        "repostCount": repost_count,
        "likeCount": like_count,
        "indexedAt": created_at,
        "viewer": {},
    }
    if like:
        post["viewer"]["like"] = like
    if repost:
        post["viewer"]["repost"] = repost
    if embed:
        post["embed"] = embed
    if labels:
        post["labels"] = [make_label_json(post["uri"], value) for value in labels]
    if tags:
        post["record"]["tags"] = list(tags)
    return post


def make_feed_item_json(rkey="p1", reposted_by=None, **kwargs):
    item = {"post": make_post_json(rkey, **kwargs)}
    if reposted_by:
        item["reason"] = {
            "$type": "app.bsky.feed.defs#reasonRepost",
            "by": make_author_json(did=reposted_by, handle=f"{reposted_by.split(':')[-1]}.bsky.social"),
            "indexedAt": "2024-05-01T13:00:00.000Z",
        }
    return item


def make_generator_json(uri, display_name, creator_handle="x.test"):
    return {
        "uri": uri,
        "cid": f"cid-{display_name.lower()}",
        "did": "did:web:feeds.example.com",
        "creator": {"did": "did:plc:x", "handle": creator_handle},
        "displayName": display_name,
        "indexedAt": "2024-05-01T12:00:00.000Z",
    }


def make_feed_items(prefix, count, start=0):
    """FeedViewPosts with rkeys prefix0, prefix1, ..."""
    return [bluesky_feed_item_from_json(make_feed_item_json(f"{prefix}{i}")) for i in range(start, start + count)]


def make_feed_page(rkeys, cursor=None):
    return bluesky_feed_page_from_json({
        "feed": [make_feed_item_json(rkey) for rkey in rkeys],
        "cursor": cursor,
    })


def make_thread_json(rkey, reply_count=0, replies=None, parent=None):
    node = {
        "$type": "app.bsky.feed.defs#threadViewPost",
        "post": make_post_json(rkey, reply_count=reply_count),
    }
    if replies is not None:
        node["replies"] = replies
    if parent is not None:
        node["parent"] = parent
    return node


def make_thread(rkey, reply_count=0, replies=None, parent=None):
    return bluesky_thread_from_json({"thread": make_thread_json(rkey, reply_count, replies, parent)})


def make_account(did="did:plc:alice", handle="alice.bsky.social", access="access-1", refresh="refresh-1",
                 pds_host="https://pds.example.com"):
    return Account(
        id=did,
        did=did,
        handle=handle,
        access_token=access,
        refresh_token=refresh,
        pds_host=pds_host,
    )


def sync_runner(fn, *args):
    """Runs background work inline so tests are deterministic."""
    fn(*args)


@pytest.fixture
def store(tmp_path):
    return SessionStore(config_home=str(tmp_path))


@pytest.fixture
def alice():
    return make_account()


@pytest.fixture
def bob():
    return make_account(did="did:plc:bob", handle="bob.bsky.social", access="bob-access", refresh="bob-refresh")


class DeferredRunner:
    """Queues background work so a test decides when it runs."""

    def __init__(self):
        self.pending = []

    def __call__(self, fn, *args):
        self.pending.append((fn, args))

    def run_all(self):
        while self.pending:
            fn, args = self.pending.pop(0)
            fn(*args)
