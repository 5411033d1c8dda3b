from unittest.mock import MagicMock

import pytest

from battle_arena.services.leaderboard import LeaderboardAggregator, RedisLeaderboardCache
from battle_arena.storage import MemoryStorage


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.expiry = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value.encode("utf-8")
        self.expiry[key] = ex

    def delete(self, key):
        self.data.pop(key, None)


@pytest.fixture
def store():
    return MemoryStorage()


def _user(store, name):
    return store.create_user(name, "guest")


def test_record_outcome_counts(store):
    board = LeaderboardAggregator(store)
    alice = _user(store, "alice")
    board.record_outcome("alice", alice.id, True, 240)
    board.record_outcome("alice", alice.id, True, 200)
    entry = board.record_outcome("alice", alice.id, False, 160)
    assert (entry.total_battles, entry.wins, entry.win_rate) == (3, 2, 67)
    assert entry.avg_score == pytest.approx(200.0)


def test_record_outcome_without_score(store):
    board = LeaderboardAggregator(store)
    alice = _user(store, "alice")
    entry = board.record_outcome("alice", alice.id, True)
    assert entry.avg_score == 0


def test_list_orders_by_win_rate_then_average(store):
    board = LeaderboardAggregator(store)
    for name, outcomes in {
        "alice": [(True, 200), (False, 150)],
        "bob": [(True, 180)],
        "carol": [(True, 250)],
        "dave": [(False, 100)],
    }.items():
        user = _user(store, name)
        for is_win, score in outcomes:
            board.record_outcome(name, user.id, is_win, score)
    rows = board.list("alltime")
    assert [r.username for r in rows] == ["carol", "bob", "alice", "dave"]


@pytest.mark.parametrize("period", ["daily", "weekly", "monthly", "alltime", "fortnightly", ""])
def test_list_marks_current_user(store, period):
    board = LeaderboardAggregator(store)
    alice = _user(store, "alice")
    bob = _user(store, "bob")
    board.record_outcome("alice", alice.id, True, 240)
    board.record_outcome("bob", bob.id, False, 150)
    rows = board.list(period, username="alice")
    assert [(r.username, r.is_current_user) for r in rows] == [("alice", True), ("bob", False)]


@pytest.mark.parametrize("viewer", ["  alice  ", "alice" + " " * 40, "alice\t"])
def test_list_marks_current_user_by_normalized_name(store, viewer):
    board = LeaderboardAggregator(store)
    alice = _user(store, "alice")
    board.record_outcome("alice", alice.id, True, 240)
    assert board.list("weekly", username=viewer)[0].is_current_user is True


def test_list_guest_viewer_is_nobody(store):
    board = LeaderboardAggregator(store)
    guest = _user(store, "Guest")
    board.record_outcome("Guest", guest.id, True, 240)
    assert board.list(username="Guest")[0].is_current_user is False


def test_list_without_viewer(store):
    board = LeaderboardAggregator(store)
    alice = _user(store, "alice")
    board.record_outcome("alice", alice.id, True, 240)
    assert board.list()[0].is_current_user is False
    assert board.list()[0].model_dump(by_alias=True)["isCurrentUser"] is False


def test_cache_miss_reads_store_and_fills_cache(store):
    cache = MagicMock()
    cache.get.return_value = None
    board = LeaderboardAggregator(store, cache)
    alice = _user(store, "alice")
    board.record_outcome("alice", alice.id, True, 240)
    rows = board.list("weekly")
    assert rows[0].username == "alice"
    cache.put.assert_called_once()
    cache.invalidate.assert_called_once()


def test_cache_hit_skips_store():
    store = MagicMock()
    cache = MagicMock()
    cache.get.return_value = []
    board = LeaderboardAggregator(store, cache)
    assert board.list() == []
    store.get_leaderboard.assert_not_called()


def test_cache_failures_fall_back_to_store(store):
    cache = MagicMock()
    cache.get.side_effect = ConnectionError("redis down")
    cache.put.side_effect = ConnectionError("redis down")
    cache.invalidate.side_effect = ConnectionError("redis down")
    board = LeaderboardAggregator(store, cache)
    alice = _user(store, "alice")
    board.record_outcome("alice", alice.id, True, 240)
    assert board.list()[0].wins == 1


def test_redis_cache_is_invalidated_by_new_outcomes(store):
    cache = RedisLeaderboardCache("redis://unused", ttl_seconds=30, client=FakeRedis())
    board = LeaderboardAggregator(store, cache)
    alice = _user(store, "alice")
    board.record_outcome("alice", alice.id, True, 240)
    assert board.list()[0].total_battles == 1
    assert cache.redis_client.expiry["leaderboard:standings"] == 30
    assert cache.get()[0].username == "alice"

    board.record_outcome("alice", alice.id, False, 100)
    assert cache.get() is None
    assert board.list()[0].total_battles == 2
