"""Unit tests for ChannelCounters."""
import random

import pytest

from livecount.ingest.counters import ChannelCounters
from livecount.schemas.events import DomainEvent, EventKind, SnapshotTotals


def follower(user_id):
    return DomainEvent(kind=EventKind.FOLLOWER, user_id=user_id, topic="channel.follow")


def subscriber(user_id):
    return DomainEvent(kind=EventKind.SUBSCRIBER, user_id=user_id, topic="channel.subscribe")


@pytest.mark.unit
class TestChannelCounters:
    def test_baseline_then_increments(self):
        counters = ChannelCounters()
        counters.set_baseline(SnapshotTotals(followers=100, subscribers=10))
        counters.apply(follower("1"))
        counters.apply(follower("2"))
        counters.apply(subscriber("3"))
        assert counters.followers == 102
        assert counters.subscribers == 11
        assert counters.gained(EventKind.FOLLOWER) == 2

    def test_unknown_totals_keep_current_value(self):
        counters = ChannelCounters()
        counters.set_baseline(SnapshotTotals(followers=5, subscribers=3))
        counters.apply(follower("1"))
        counters.set_baseline(SnapshotTotals(followers=None, subscribers=8))
        assert counters.followers == 6
        assert counters.subscribers == 8

    def test_totals_are_order_independent(self):
        events = [follower(str(i)) for i in range(5)] + [subscriber(str(i)) for i in range(3)]
        rng = random.Random(7)
        for _ in range(10):
            shuffled = events[:]
            rng.shuffle(shuffled)
            counters = ChannelCounters()
            counters.set_baseline(SnapshotTotals(followers=40, subscribers=4))
            for event in shuffled:
                counters.apply(event)
            assert (counters.followers, counters.subscribers) == (45, 7)

    def test_progress_against_goal(self):
        counters = ChannelCounters(follower_goal=200, subscriber_goal=0)
        counters.set_baseline(SnapshotTotals(followers=50, subscribers=1))
        assert counters.progress(EventKind.FOLLOWER) == 25.0
        assert counters.progress(EventKind.SUBSCRIBER) == 0.0

    def test_snapshot_shape(self):
        counters = ChannelCounters(follower_goal=10)
        counters.set_baseline(SnapshotTotals(followers=3, subscribers=0))
        counters.apply(follower("x"))
        snap = counters.snapshot()
        assert snap["followers"] == {
            "value": 4,
            "baseline": 3,
            "gained": 1,
            "goal": 10,
            "progress": 40.0,
        }
        assert snap["subscribers"]["value"] == 0
