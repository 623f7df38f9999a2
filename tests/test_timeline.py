"""Tests for the timeline controller."""

from unittest.mock import Mock

import pytest

from skyline.cache import TimelineCache
from skyline.errors import APIError, NetworkError
from skyline.models import (
    FOLLOWING,
    PENDING_RECORD_URI,
    FeedInfo,
    FeedPage,
    FeedViewFilter,
    ModerationSettings,
    MutedWord,
)
from skyline.platforms.bluesky.models import bluesky_feed_item_from_json
from skyline.preferences import load_preferences, set_feed_order, set_moderation_settings
from skyline.timeline import TimelineController, TimelineState

from conftest import DeferredRunner, make_feed_item_json, make_feed_items, make_feed_page, post_uri, sync_runner

CATS = FeedInfo(uri="at://did:plc:x/app.bsky.feed.generator/cats", display_name="Cats")
DOGS = FeedInfo(uri="at://did:plc:x/app.bsky.feed.generator/dogs", display_name="Dogs")


@pytest.fixture
def client():
    client = Mock()
    client.get_saved_feeds.return_value = [FOLLOWING]
    client.get_moderation_settings.return_value = ModerationSettings()
    return client


@pytest.fixture
def signed_in(store, alice):
    store.add_account(alice)
    return store


def make_controller(client, store, runner=sync_runner, **kwargs):
    return TimelineController(client, store, runner=runner, poller=Mock(), **kwargs)


def uris(items):
    return [item.uri for item in items]


def feed_page(*items, cursor=None):
    """A page built from feed item JSON, for entries that need more than an rkey."""
    return FeedPage(items=tuple(bluesky_feed_item_from_json(item) for item in items), cursor=cursor)


class TestLoading:
    """Test first load and pagination."""

    def test_load_then_load_more(self, client, signed_in):
        """30 + 30 posts with the cursor exhausted, then load_more is a no-op."""
        client.get_feed_page.side_effect = [
            FeedPage(items=tuple(make_feed_items("a", 30)), cursor="c1"),
            FeedPage(items=tuple(make_feed_items("a", 30, start=30)), cursor=None),
        ]
        controller = make_controller(client, signed_in)

        controller.load_timeline()
        assert len(controller.state.posts) == 30
        assert controller.state.cursor == "c1"

        assert controller.load_more() is True
        assert len(controller.state.posts) == 60
        assert controller.state.cursor is None
        assert controller.state.has_more is False

        assert controller.load_more() is False
        assert client.get_feed_page.call_count == 2
        assert client.get_feed_page.call_args.kwargs["cursor"] == "c1"

    def test_load_more_drops_duplicates(self, client, signed_in):
        client.get_feed_page.side_effect = [
            make_feed_page(["a", "b"], cursor="c1"),
            make_feed_page(["b", "c"], cursor="c2"),
        ]
        controller = make_controller(client, signed_in)

        controller.load_timeline()
        controller.load_more()

        assert uris(controller.state.posts) == [post_uri("a"), post_uri("b"), post_uri("c")]

    def test_load_more_ignored_while_loading(self, client, signed_in):
        runner = DeferredRunner()
        client.get_feed_page.return_value = make_feed_page(["a"], cursor="c1")
        controller = make_controller(client, signed_in, runner=runner)
        controller.load_timeline()
        runner.run_all()

        assert controller.load_more() is True
        assert controller.state.is_loading_more is True
        assert controller.load_more() is False

    def test_status_transitions(self, client, signed_in):
        runner = DeferredRunner()
        client.get_feed_page.return_value = make_feed_page(["a"])
        controller = make_controller(client, signed_in, runner=runner)
        assert controller.state.status == "idle"

        controller.load_timeline()
        assert controller.state.status == "loading"

        runner.run_all()
        assert controller.state.status == "loaded"

    def test_load_failure_sets_error(self, client, signed_in):
        client.get_feed_page.side_effect = NetworkError("connection refused")
        controller = make_controller(client, signed_in)

        controller.load_timeline()

        assert controller.state.status == "errored"
        assert controller.state.error_message
        assert controller.state.is_loading is False

    def test_not_signed_in(self, client, store):
        controller = make_controller(client, store)

        assert controller.load_timeline() is False
        client.get_feed_page.assert_not_called()

    def test_subscribers_see_each_state(self, client, signed_in):
        client.get_feed_page.return_value = make_feed_page(["a"])
        controller = make_controller(client, signed_in)
        states = []
        unsubscribe = controller.subscribe(states.append)

        controller.load_timeline()
        unsubscribe()
        controller.load_timeline()

        assert [s.is_loading for s in states] == [True, False]
        assert all(isinstance(s, TimelineState) for s in states)

    def test_refresh_during_load_more_discards_older_page(self, client, signed_in):
        runner = DeferredRunner()
        client.get_feed_page.return_value = make_feed_page(["a", "b"], cursor="c1")
        controller = make_controller(client, signed_in, runner=runner)
        controller.load_timeline()
        runner.run_all()

        def by_cursor(feed, limit, cursor=None):
            if cursor == "c1":
                return make_feed_page(["old1", "old2"], cursor="c2")
            return make_feed_page(["new", "a"], cursor="c9")
        client.get_feed_page.side_effect = by_cursor

        assert controller.load_more() is True
        assert controller.refresh() is True
        assert controller.state.is_loading_more is False
        runner.run_all()

        assert uris(controller.state.posts) == [post_uri("new"), post_uri("a")]
        assert controller.state.cursor == "c9"
        assert controller.state.is_loading_more is False
        assert controller.state.status == "loaded"


class TestPolling:
    """Test background polling for new posts."""

    def loaded_controller(self, client, store, rkeys=("a", "b", "c"), **kwargs):
        client.get_feed_page.return_value = make_feed_page(list(rkeys), cursor="c1")
        controller = make_controller(client, store, **kwargs)
        controller.load_timeline()
        return controller

    def test_new_posts_go_to_pending_only(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in)
        before = controller.state.posts
        client.get_feed_page.return_value = make_feed_page(["n1", "n2", "a", "b"], cursor="c9")

        controller.poll_for_new_posts()

        assert controller.state.posts == before
        assert uris(controller.state.pending_new_posts) == [post_uri("n1"), post_uri("n2")]
        assert controller.state.unseen_posts_count == 2
        assert controller.state.should_auto_insert is True

    def test_no_auto_insert_when_scrolled_down(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in, rkeys=["a", "b", "c", "d", "e"])
        controller.set_visible_post(post_uri("e"))
        client.get_feed_page.return_value = make_feed_page(["n1", "a"])

        controller.poll_for_new_posts()

        assert controller.state.should_auto_insert is False
        assert len(controller.state.pending_new_posts) == 1

    def test_walks_back_until_overlap(self, client, signed_in):
        """A gap bigger than one page is filled by following the cursor."""
        controller = self.loaded_controller(client, signed_in)
        client.get_feed_page.side_effect = [
            make_feed_page(["n1", "n2"], cursor="older"),
            make_feed_page(["n3", "a"], cursor="older2"),
        ]

        controller.poll_for_new_posts()

        assert uris(controller.state.pending_new_posts) == [post_uri("n1"), post_uri("n2"), post_uri("n3")]
        assert client.get_feed_page.call_args_list[-1].kwargs["cursor"] == "older"

    def test_walk_is_bounded(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in, max_poll_batches=3)
        client.get_feed_page.side_effect = [
            make_feed_page([f"n{i}"], cursor=f"c{i}") for i in range(5)
        ]

        controller.poll_for_new_posts()

        assert len(controller.state.pending_new_posts) == 3

    def test_insert_pending_posts(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in)
        client.get_feed_page.return_value = make_feed_page(["n1", "a"])
        controller.poll_for_new_posts()

        inserted = controller.insert_pending_posts()

        assert inserted == 1
        assert uris(controller.state.posts)[:2] == [post_uri("n1"), post_uri("a")]
        assert controller.state.pending_new_posts == ()
        assert controller.state.should_auto_insert is False

    def test_repeated_polls_do_not_duplicate(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in)
        client.get_feed_page.return_value = make_feed_page(["n1", "a"])

        controller.poll_for_new_posts()
        controller.poll_for_new_posts()

        assert len(controller.state.pending_new_posts) == 1

    def test_mark_seen(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in)
        client.get_feed_page.return_value = make_feed_page(["n1", "n2", "a"])
        controller.poll_for_new_posts()

        controller.mark_post_as_seen(post_uri("n1"))
        controller.mark_post_as_seen(post_uri("n1"))

        assert controller.state.unseen_posts_count == 1
        controller.clear_new_posts_tracking()
        assert controller.state.unseen_posts_count == 0

    def test_failure_sets_background_error_only(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in)
        posts = controller.state.posts
        client.get_feed_page.side_effect = NetworkError("timed out")

        controller.poll_for_new_posts()

        assert controller.state.background_fetch_error
        assert controller.state.error_message is None
        assert controller.state.posts == posts

    def test_success_clears_background_error(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in)
        client.get_feed_page.side_effect = NetworkError("timed out")
        controller.poll_for_new_posts()
        client.get_feed_page.side_effect = None
        client.get_feed_page.return_value = make_feed_page(["a"])

        controller.poll_for_new_posts()

        assert controller.state.background_fetch_error is None

    def test_skipped_before_first_load(self, client, signed_in):
        controller = make_controller(client, signed_in)

        controller.poll_for_new_posts()

        client.get_feed_page.assert_not_called()

    def test_result_after_stop_is_discarded(self, client, signed_in):
        controller = self.loaded_controller(client, signed_in)

        def stop_mid_request(feed, limit, cursor):
            controller.stop_polling()
            return make_feed_page(["n1", "a"])
        client.get_feed_page.side_effect = stop_mid_request

        controller.poll_for_new_posts()

        assert controller.state.pending_new_posts == ()


class TestAccountSwitch:
    """Test that nothing from the previous account survives a switch."""

    def test_switch_resets_state(self, client, signed_in, bob):
        client.get_feed_page.return_value = make_feed_page(["a", "b"])
        controller = make_controller(client, signed_in)
        controller.load_timeline()
        signed_in.add_account(bob)

        signed_in.switch_account(bob.id)

        assert controller.account_id == bob.id
        assert controller.state == TimelineState()
        controller.poller.stop.assert_called()

    def test_result_for_previous_account_is_dropped(self, client, signed_in, bob):
        runner = DeferredRunner()
        client.get_feed_page.return_value = make_feed_page(["a", "b"])
        controller = make_controller(client, signed_in, runner=runner)
        signed_in.add_account(bob)

        controller.load_timeline()
        signed_in.switch_account(bob.id)
        runner.run_all()

        assert controller.state.posts == ()

    def test_attached_controller_reloads_for_new_account(self, client, signed_in, bob):
        client.get_feed_page.return_value = make_feed_page(["a"])
        controller = make_controller(client, signed_in)
        controller.attach()
        signed_in.add_account(bob)
        client.get_feed_page.reset_mock()

        signed_in.switch_account(bob.id)

        client.get_feed_page.assert_called_once()
        assert controller.state.has_loaded is True

    def test_sign_out_of_last_account(self, client, signed_in, alice):
        client.get_feed_page.return_value = make_feed_page(["a"])
        controller = make_controller(client, signed_in)
        controller.load_timeline()

        signed_in.remove_account(alice.id)

        assert controller.account_id is None
        assert controller.state.posts == ()


class TestFeeds:
    """Test feed selection and ordering."""

    def test_switch_to_feed(self, client, signed_in):
        client.get_feed_page.return_value = make_feed_page(["a"])
        controller = make_controller(client, signed_in)
        controller.load_timeline()
        client.get_feed_page.return_value = make_feed_page(["cat1"])

        assert controller.switch_to_feed(CATS) is True

        assert controller.state.selected_feed == CATS
        assert uris(controller.state.posts) == [post_uri("cat1")]
        assert client.get_feed_page.call_args.args[0] == CATS
        assert controller.switch_to_feed(CATS) is False

    def test_stale_page_from_previous_feed_is_dropped(self, client, signed_in):
        runner = DeferredRunner()
        controller = make_controller(client, signed_in, runner=runner)
        client.get_feed_page.side_effect = lambda feed, limit, cursor=None: make_feed_page(
            ["cat1"] if feed == CATS else ["home1"])

        controller.load_timeline()
        controller.switch_to_feed(CATS)
        runner.run_all()

        assert uris(controller.state.posts) == [post_uri("cat1")]

    def test_feeds_fall_back_to_following(self, client, signed_in):
        client.get_saved_feeds.side_effect = APIError("boom", status=500)
        controller = make_controller(client, signed_in)

        controller.load_available_feeds()

        assert controller.state.available_feeds == (FOLLOWING,)

    def test_saved_feed_order_is_applied(self, client, signed_in, alice, tmp_path):
        prefs = load_preferences(config_home=str(tmp_path))
        set_feed_order(prefs, alice.id, [DOGS.uri, FOLLOWING.uri])
        client.get_saved_feeds.return_value = [FOLLOWING, CATS, DOGS]
        controller = make_controller(client, signed_in, prefs=prefs)

        controller.load_available_feeds()

        assert controller.state.available_feeds == (DOGS, FOLLOWING, CATS)

    def test_move_feed_persists_order(self, client, signed_in, alice, tmp_path):
        prefs = load_preferences(config_home=str(tmp_path))
        client.get_saved_feeds.return_value = [FOLLOWING, CATS, DOGS]
        controller = make_controller(client, signed_in, prefs=prefs)
        controller.load_available_feeds()

        assert controller.move_feed(DOGS.uri, 0) is True

        assert controller.state.available_feeds == (DOGS, FOLLOWING, CATS)
        reloaded = load_preferences(config_home=str(tmp_path))
        assert reloaded["feed_order"][alice.id] == [DOGS.uri, FOLLOWING.uri, CATS.uri]

    def test_unsave_selected_feed_returns_to_following(self, client, signed_in):
        client.get_saved_feeds.return_value = [FOLLOWING, CATS]
        client.get_feed_page.return_value = make_feed_page(["a"])
        controller = make_controller(client, signed_in)
        controller.load_available_feeds()
        controller.switch_to_feed(CATS)

        assert controller.unsave_feed(CATS) is True

        client.unsave_feed.assert_called_once_with(CATS.uri)
        assert controller.state.available_feeds == (FOLLOWING,)
        assert controller.state.selected_feed == FOLLOWING

    def test_following_cannot_be_unsaved(self, client, signed_in):
        controller = make_controller(client, signed_in)

        assert controller.unsave_feed(FOLLOWING) is False
        client.unsave_feed.assert_not_called()


class TestOptimisticActions:
    """Test like and repost toggles."""

    def loaded(self, client, store, runner=sync_runner):
        client.get_feed_page.return_value = make_feed_page(["a", "b"])
        controller = make_controller(client, store, runner=runner)
        controller.load_timeline()
        if isinstance(runner, DeferredRunner):
            runner.run_all()
        return controller

    def test_like_shows_pending_then_record_uri(self, client, signed_in):
        client.like.return_value = "at://did:plc:alice/app.bsky.feed.like/l1"
        controller = self.loaded(client, signed_in)
        states = []
        controller.subscribe(states.append)

        controller.toggle_like(controller.state.posts[0])

        assert states[0].posts[0].post.viewer.like == PENDING_RECORD_URI
        assert states[0].posts[0].post.like_count == 1
        post = controller.state.posts[0].post
        assert post.viewer.like == "at://did:plc:alice/app.bsky.feed.like/l1"
        assert post.like_count == 1
        client.like.assert_called_once_with(post_uri("a"), "cid-a")

    def test_toggle_while_pending_is_ignored(self, client, signed_in):
        runner = DeferredRunner()
        controller = self.loaded(client, signed_in, runner=runner)
        item = controller.state.posts[0]

        assert controller.toggle_like(item) is True
        assert controller.toggle_like(controller.state.posts[0]) is False
        assert len(runner.pending) == 1

    def test_unlike_deletes_record(self, client, signed_in):
        controller = self.loaded(client, signed_in)
        client.like.return_value = "at://did:plc:alice/app.bsky.feed.like/l1"
        controller.toggle_like(controller.state.posts[0])

        controller.toggle_like(controller.state.posts[0])

        client.unlike.assert_called_once_with("at://did:plc:alice/app.bsky.feed.like/l1")
        assert controller.state.posts[0].post.viewer.like is None
        assert controller.state.posts[0].post.like_count == 0

    def test_failure_reloads_server_state(self, client, signed_in):
        controller = self.loaded(client, signed_in)
        client.repost.side_effect = APIError("nope", status=400)

        controller.toggle_repost(controller.state.posts[0])

        assert client.get_feed_page.call_count == 2
        assert controller.state.error_message
        assert controller.state.status == "loaded"
        assert controller.state.posts[0].post.viewer.repost is None
        assert controller.state.posts[0].post.repost_count == 0

    def test_accepts_a_bare_post(self, client, signed_in):
        controller = self.loaded(client, signed_in)
        client.repost.return_value = "at://repost/1"

        controller.toggle_repost(controller.state.posts[1].post)

        assert controller.state.posts[1].post.viewer.repost == "at://repost/1"
        assert controller.state.posts[1].post.repost_count == 1

    def test_pending_entries_are_updated_too(self, client, signed_in):
        controller = self.loaded(client, signed_in)
        client.get_feed_page.return_value = make_feed_page(["n1", "a"])
        controller.poll_for_new_posts()
        client.like.return_value = "at://like/1"

        controller.toggle_like(controller.state.pending_new_posts[0])

        assert controller.state.pending_new_posts[0].post.viewer.like == "at://like/1"

    def test_like_unlike_like_cycle(self, client, signed_in):
        controller = self.loaded(client, signed_in)
        client.like.side_effect = [
            "at://did:plc:alice/app.bsky.feed.like/l1",
            "at://did:plc:alice/app.bsky.feed.like/l2",
        ]
        original = controller.state.posts[0].post.like_count

        controller.toggle_like(controller.state.posts[0])
        controller.toggle_like(controller.state.posts[0])
        assert controller.state.posts[0].post.viewer.like is None
        assert controller.state.posts[0].post.like_count == original
        controller.toggle_like(controller.state.posts[0])

        post = controller.state.posts[0].post
        assert post.viewer.like == "at://did:plc:alice/app.bsky.feed.like/l2"
        assert post.like_count == original + 1
        client.unlike.assert_called_once_with("at://did:plc:alice/app.bsky.feed.like/l1")
        assert client.like.call_count == 2

    def test_toggle_during_unlike_is_ignored(self, client, signed_in):
        """The undo request is in flight while the post already shows unliked."""
        runner = DeferredRunner()
        controller = self.loaded(client, signed_in, runner=runner)
        client.like.return_value = "at://like/1"
        controller.toggle_like(controller.state.posts[0])
        runner.run_all()

        assert controller.toggle_like(controller.state.posts[0]) is True
        assert controller.state.posts[0].post.viewer.like is None
        assert controller.toggle_like(controller.state.posts[0]) is False
        assert len(runner.pending) == 1

        runner.run_all()
        client.unlike.assert_called_once_with("at://like/1")
        assert controller.toggle_like(controller.state.posts[0]) is True

    def test_failed_like_keeps_error_through_reload(self, client, signed_in):
        controller = self.loaded(client, signed_in)
        client.like.side_effect = NetworkError("connection reset")
        states = []
        controller.subscribe(states.append)

        controller.toggle_like(controller.state.posts[0])

        assert controller.state.error_message
        assert controller.state.posts[0].post.viewer.like is None
        assert controller.state.posts[0].post.like_count == 0
        assert states[-1].is_loading is False
        assert all(s.error_message for s in states[1:])


class TestCacheAndScroll:
    """Test the cached first paint and scroll restoration."""

    @pytest.fixture
    def cache(self, tmp_path):
        cache = TimelineCache(str(tmp_path / "cache"))
        yield cache
        cache.close()

    def test_cached_posts_shown_while_loading(self, client, signed_in, alice, cache):
        cache.save_feed(alice.id, FOLLOWING.uri, make_feed_items("old", 3), cursor="cc")
        runner = DeferredRunner()
        controller = make_controller(client, signed_in, runner=runner, cache=cache)

        controller.load_timeline()

        assert len(controller.state.posts) == 3
        assert controller.state.is_loading is True

    def test_load_saves_to_cache(self, client, signed_in, alice, cache):
        client.get_feed_page.return_value = make_feed_page(["a", "b"], cursor="c1")
        controller = make_controller(client, signed_in, cache=cache)

        controller.load_timeline()

        items, metadata = cache.load_feed(alice.id, FOLLOWING.uri)
        assert uris(items) == [post_uri("a"), post_uri("b")]
        assert metadata["cursor"] == "c1"

    def test_scroll_anchor_restored_once(self, client, signed_in, alice, cache):
        cache.save_scroll_anchor(alice.id, FOLLOWING.uri, post_uri("b"))
        client.get_feed_page.return_value = make_feed_page(["a", "b", "c"])
        controller = make_controller(client, signed_in, cache=cache)

        controller.load_timeline()

        assert controller.consume_scroll_anchor() == post_uri("b")
        assert controller.consume_scroll_anchor() is None

    def test_anchor_not_in_page_is_ignored(self, client, signed_in, alice, cache):
        cache.save_scroll_anchor(alice.id, FOLLOWING.uri, post_uri("zzz"))
        client.get_feed_page.return_value = make_feed_page(["a"])
        controller = make_controller(client, signed_in, cache=cache)

        controller.load_timeline()

        assert controller.state.saved_scroll_anchor is None

    def test_detach_persists_visible_post(self, client, signed_in, alice, cache):
        client.get_feed_page.return_value = make_feed_page(["a", "b"])
        controller = make_controller(client, signed_in, cache=cache)
        controller.attach()
        controller.set_visible_post(post_uri("b"))

        controller.detach()

        assert cache.load_scroll_anchor(alice.id, FOLLOWING.uri) == post_uri("b")
        assert cache.load_scroll_position(alice.id, FOLLOWING.uri)[1] == "2024-05-01T12:00:00+00:00"
        controller.poller.stop.assert_called()

    def test_failed_load_over_cached_posts_counts_as_loaded(self, client, signed_in, alice, cache):
        cache.save_feed(alice.id, FOLLOWING.uri, make_feed_items("old", 3), cursor="cc")
        client.get_feed_page.side_effect = NetworkError("offline")
        controller = make_controller(client, signed_in, cache=cache)

        controller.load_timeline()

        assert controller.state.status == "loaded"
        assert controller.state.has_loaded is True
        assert controller.state.error_message
        assert len(controller.state.posts) == 3

        client.get_feed_page.side_effect = None
        client.get_feed_page.return_value = make_feed_page(["n1", "old0"])
        controller.poll_for_new_posts()

        assert uris(controller.state.pending_new_posts) == [post_uri("n1")]

    def test_anchor_found_on_a_later_page(self, client, signed_in, alice, cache):
        cache.save_scroll_anchor(alice.id, FOLLOWING.uri, post_uri("p4"))
        client.get_feed_page.side_effect = [
            make_feed_page(["p1", "p2"], cursor="c1"),
            make_feed_page(["p3", "p4"], cursor="c2"),
        ]
        controller = make_controller(client, signed_in, cache=cache)

        controller.load_timeline()

        assert len(controller.state.posts) == 4
        assert controller.state.cursor == "c2"
        assert client.get_feed_page.call_args.kwargs["cursor"] == "c1"
        assert controller.consume_scroll_anchor() == post_uri("p4")

    def test_anchor_walk_is_bounded(self, client, signed_in, alice, cache):
        cache.save_scroll_anchor(alice.id, FOLLOWING.uri, post_uri("never"))
        client.get_feed_page.side_effect = lambda feed, limit, cursor=None: make_feed_page(
            [f"p{cursor or 0}"], cursor=f"{int(cursor or 0) + 1}")
        controller = make_controller(client, signed_in, cache=cache)

        controller.load_timeline()

        assert client.get_feed_page.call_count == 10
        assert len(controller.state.posts) == 10

    def test_missing_anchor_falls_back_to_closest_time(self, client, signed_in, alice, cache):
        cache.save_scroll_anchor(alice.id, FOLLOWING.uri, post_uri("deleted"), "2024-05-01T10:31:00+00:00")
        client.get_feed_page.return_value = feed_page(
            make_feed_item_json("x1", created_at="2024-05-01T12:00:00.000Z"),
            make_feed_item_json("x2", created_at="2024-05-01T10:30:00.000Z"),
            make_feed_item_json("x3", created_at="2024-05-01T09:00:00.000Z"),
        )
        controller = make_controller(client, signed_in, cache=cache)

        controller.load_timeline()

        assert controller.consume_scroll_anchor() == post_uri("x2")


class TestModeration:
    """Test that moderation settings filter what the feed shows."""

    def test_labeled_posts_are_hidden(self, client, signed_in):
        client.get_feed_page.return_value = feed_page(
            make_feed_item_json("a"),
            make_feed_item_json("b", labels=["gore"]),
            make_feed_item_json("c", text="big spoiler ahead"),
        )
        client.get_moderation_settings.return_value = ModerationSettings(muted_words=(MutedWord("spoiler"),))
        controller = make_controller(client, signed_in)

        controller.load_available_feeds()
        controller.load_timeline()

        assert uris(controller.state.posts) == [post_uri("a")]

    def test_poll_results_are_filtered(self, client, signed_in):
        client.get_feed_page.return_value = make_feed_page(["a"])
        controller = make_controller(client, signed_in)
        controller.load_timeline()
        client.get_feed_page.return_value = feed_page(
            make_feed_item_json("n1"),
            make_feed_item_json("n2", author_labels=["spam", "!hide"]),
            make_feed_item_json("a"),
        )

        controller.poll_for_new_posts()

        assert uris(controller.state.pending_new_posts) == [post_uri("n1")]

    def test_new_settings_filter_loaded_posts(self, client, signed_in):
        client.get_feed_page.return_value = feed_page(
            make_feed_item_json("a"),
            make_feed_item_json("b", reposted_by="did:plc:carol"),
        )
        controller = make_controller(client, signed_in)
        controller.load_timeline()
        states = []
        controller.subscribe(states.append)

        controller.set_moderation(ModerationSettings(feed_filters={"home": FeedViewFilter(hide_reposts=True)}))

        assert uris(controller.state.posts) == [post_uri("a")]
        assert len(states) == 1

    def test_feed_filter_only_applies_to_its_feed(self, client, signed_in):
        client.get_feed_page.return_value = feed_page(make_feed_item_json("b", reposted_by="did:plc:carol"))
        controller = make_controller(client, signed_in)
        controller.set_moderation(ModerationSettings(feed_filters={"home": FeedViewFilter(hide_reposts=True)}))

        controller.switch_to_feed(CATS)

        assert uris(controller.state.posts) == [post_uri("b")]

    def test_server_settings_are_saved_per_account(self, client, signed_in, alice, tmp_path):
        prefs = load_preferences(config_home=str(tmp_path))
        settings = ModerationSettings(muted_words=(MutedWord("spoiler"),))
        client.get_moderation_settings.return_value = settings
        controller = make_controller(client, signed_in, prefs=prefs)

        controller.load_available_feeds()

        assert controller.moderation == settings
        reloaded = load_preferences(config_home=str(tmp_path))
        assert reloaded["moderation"][alice.id] == settings.to_dict()

    def test_saved_settings_apply_before_the_server_answers(self, client, signed_in, alice, tmp_path):
        prefs = load_preferences(config_home=str(tmp_path))
        set_moderation_settings(prefs, alice.id, ModerationSettings(muted_words=(MutedWord("spoiler"),)))
        client.get_feed_page.return_value = feed_page(
            make_feed_item_json("a"),
            make_feed_item_json("b", text="spoiler"),
        )
        controller = make_controller(client, signed_in, prefs=prefs)

        controller.load_timeline()

        assert uris(controller.state.posts) == [post_uri("a")]

    def test_settings_failure_keeps_current(self, client, signed_in):
        client.get_moderation_settings.side_effect = NetworkError("offline")
        controller = make_controller(client, signed_in)

        controller.load_available_feeds()

        assert controller.moderation == ModerationSettings()
        assert controller.state.available_feeds == (FOLLOWING,)
