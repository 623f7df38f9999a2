"""Thread trees and the pure functions that rewrite them.

Trees are immutable. Every rewrite returns a new tree that shares all
untouched subtrees with the old one, and returns the old tree itself when
nothing matched, so callers can cheaply tell whether anything changed.
A node is identified by its post URI.
"""

from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from .post import Post


@dataclass(frozen=True)
class ThreadViewPost:
    """A node of a post thread: the post, its ancestor chain and its replies.

    `replies` is None when the server did not descend this far.
    """
    post: Post
    parent: Optional['ThreadViewPost'] = None
    replies: Optional[Tuple['ThreadViewPost', ...]] = None

    @property
    def uri(self) -> str:
        return self.post.uri


def _map_replies(node: ThreadViewPost, fn) -> Optional[Tuple[ThreadViewPost, ...]]:
    """Apply fn to each reply; None when no reply changed."""
    if not node.replies:
        return None
    changed = False
    result = []
    for reply in node.replies:
        new_reply = fn(reply)
        if new_reply is not reply:
            changed = True
        result.append(new_reply)
    return tuple(result) if changed else None


def find_node(tree: Optional[ThreadViewPost], uri: str) -> Optional[ThreadViewPost]:
    """Find the node for `uri` among tree, its replies and its ancestors."""
    if tree is None:
        return None
    if tree.post.uri == uri:
        return tree
    for reply in tree.replies or ():
        found = find_node(reply, uri)
        if found is not None:
            return found
    parent = tree.parent
    while parent is not None:
        if parent.post.uri == uri:
            return parent
        parent = parent.parent
    return None


def merge_replies(tree: ThreadViewPost, fetched: ThreadViewPost, uri: str) -> ThreadViewPost:
    """Give the node for `uri` the replies of `fetched`; nothing else changes."""
    if tree.post.uri == uri:
        return replace(tree, replies=fetched.replies)
    replies = _map_replies(tree, lambda reply: merge_replies(reply, fetched, uri))
    if replies is None:
        return tree
    return replace(tree, replies=replies)


def update_post_in_tree(tree: ThreadViewPost, uri: str,
                        transform: Callable[[Post], Post]) -> ThreadViewPost:
    """Rewrite the post for `uri` wherever it appears, ancestors included."""
    post = transform(tree.post) if tree.post.uri == uri else tree.post
    parent = tree.parent
    if parent is not None:
        parent = update_post_in_tree(parent, uri, transform)
    replies = _map_replies(tree, lambda reply: update_post_in_tree(reply, uri, transform))

    if post is tree.post and parent is tree.parent and replies is None:
        return tree
    return replace(
        tree,
        post=post,
        parent=parent,
        replies=tree.replies if replies is None else replies,
    )


def limit_replies(tree: ThreadViewPost, count: int) -> ThreadViewPost:
    """Keep only the first `count` top-level replies."""
    if tree.replies is None or len(tree.replies) <= count:
        return tree
    return replace(tree, replies=tree.replies[:count])


def has_more_replies(node: ThreadViewPost) -> bool:
    """True when the server knows of replies that were not fetched inline."""
    fetched = len(node.replies or ())
    return node.post.reply_count > fetched and fetched > 0
