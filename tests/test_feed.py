"""Tests for src.notifier.feed - the user-facing notification list."""

from __future__ import annotations

from dataclasses import replace

import pytest

from src.contracts.notification import Notification
from src.notifier.feed import NotificationFeed
from src.realtime import NOTIFICATIONS_TOPIC, RealtimeBridge


@pytest.fixture
def feed(store):
    return NotificationFeed(store, RealtimeBridge())


def _add(store, **kw) -> Notification:
    n = Notification(user_id=kw.pop("user_id", "u1"), message=kw.pop("message", "m"),
                     severity=kw.pop("severity", "warning"), **kw)
    store.insert_notification(n)
    return n


class TestReadState:
    def test_mark_as_read_only_flips_is_read(self, feed, store):
        n = _add(store, type="event_alert")
        updated = feed.mark_as_read(n.id)
        assert updated == replace(n, is_read=True)
        assert feed.unread_count("u1") == 0

    def test_mark_as_read_republishes(self, feed, store):
        n = _add(store)
        with feed.bridge.subscribe(NOTIFICATIONS_TOPIC, "u1") as sub:
            feed.mark_as_read(n.id)
            assert sub.get(timeout=1)["is_read"] is True

    def test_mark_unknown(self, feed):
        assert feed.mark_as_read("ntf_missing") is None

    def test_mark_all(self, feed, store):
        for _ in range(3):
            _add(store)
        _add(store, user_id="u2")
        assert feed.mark_all_as_read("u1") == 3
        assert feed.unread_count("u1") == 0
        assert feed.unread_count("u2") == 1

    def test_list_limit(self, feed, store):
        for _ in range(5):
            _add(store)
        assert len(feed.list("u1", limit=3)) == 3


class TestDeleteTestNotification:
    @pytest.mark.parametrize("kind", ["test", "mock"])
    def test_ephemeral_deleted(self, feed, store, kind):
        n = _add(store, type=kind)
        assert feed.delete_test_notification(n.id)
        assert store.get_notification(n.id) is None

    @pytest.mark.parametrize("kind", ["event_alert", "system", None])
    def test_real_notification_protected(self, feed, store, kind):
        n = _add(store, type=kind)
        with pytest.raises(PermissionError):
            feed.delete_test_notification(n.id)
        assert store.get_notification(n.id) is not None

    def test_missing(self, feed):
        assert feed.delete_test_notification("ntf_missing") is False
