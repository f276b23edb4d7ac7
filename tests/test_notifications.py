import logging

import pytest

from changefeed import ChangeFeed
from errors import ActionInProgress
from inflight import InFlightGuard
from notifications import NotificationQueue


def test_drain_returns_live_notices_once():
    queue = NotificationQueue()
    queue.push("u1", "Added to cart!")
    queue.push("u1", "stale", ttl=-1)
    queue.push("u2", "Other user")

    assert [n.message for n in queue.peek("u1")] == ["Added to cart!"]
    assert [n.message for n in queue.drain("u1")] == ["Added to cart!"]
    assert queue.drain("u1") == []
    assert len(queue.drain("u2")) == 1


def test_failing_listener_does_not_block_others(caplog):
    feed = ChangeFeed()
    received = []

    def broken(event):
        raise RuntimeError("render failed")

    feed.subscribe("order", "u1", broken)
    feed.subscribe("order", "u1", received.append)
    with caplog.at_level(logging.ERROR, logger="changefeed"):
        feed.publish("order", "u1", "insert", "o1")

    assert [e.row_id for e in received] == ["o1"]
    assert "Change listener failed" in caplog.text


def test_events_are_scoped_by_table_and_user():
    feed = ChangeFeed()
    received = []
    feed.subscribe("cartitem", "u1", received.append)

    feed.publish("cartitem", "u2", "insert")
    feed.publish("wishlistitem", "u1", "insert")

    assert received == []


def test_guard_is_per_action_and_user():
    guard = InFlightGuard()

    with guard.hold("checkout", "u1"):
        assert guard.busy("checkout", "u1")
        with guard.hold("checkout", "u2"), guard.hold("add_to_cart", "u1"):
            pass
        with pytest.raises(ActionInProgress):
            with guard.hold("checkout", "u1"):
                pass

    assert not guard.busy("checkout", "u1")


def test_unread_notices_do_not_pile_up():
    queue = NotificationQueue(max_per_user=5)

    for i in range(5000):
        queue.push("u1", f"notice {i}", ttl=-1)
    assert queue.stored("u1") == 1

    for i in range(50):
        queue.push("u1", f"live {i}")
    assert queue.stored("u1") == 5
    assert [n.message for n in queue.peek("u1")] == [f"live {i}" for i in range(45, 50)]


def test_peek_prunes_expired_notices():
    queue = NotificationQueue()
    queue.push("u1", "gone", ttl=-1)

    assert queue.peek("u1") == []
    assert queue.stored("u1") == 0
