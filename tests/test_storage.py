import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from battle_arena.core.errors import NotFound
from battle_arena.services.battles import BattleService
from battle_arena.storage import DatabaseStorage, FallbackStorage, MemoryStorage, build_storage
from battle_arena.storage.fallback import FALLBACK_ID_OFFSET
from battle_arena.storage.base import next_standing, sort_standings
from battle_arena.schemas import LeaderboardRecord

from conftest import LONG_SOLUTION, RiggedJudge


def _score_fields(**overrides):
    fields = dict(
        user_originality=80,
        user_logic=70,
        user_expression=75,
        ai_originality=60,
        ai_logic=55,
        ai_expression=65,
        judge_feedback="Close round.",
    )
    fields.update(overrides)
    return fields


def test_create_and_fetch_user(store):
    user = store.create_user("alice", "guest")
    assert user.id > 0
    assert store.get_user(user.id).username == "alice"
    assert store.get_user_by_username("alice").id == user.id
    assert store.get_user_by_username("bob") is None
    assert store.get_user(9999) is None


def test_duplicate_username_rejected(store):
    store.create_user("alice", "guest")
    with pytest.raises(ValueError):
        store.create_user("alice", "guest")


def test_battle_starts_open(store):
    user = store.create_user("alice", "guest")
    battle = store.create_battle("Design a floating library", user.id, "ai")
    assert battle.completed is False
    assert battle.user_solution is None
    assert battle.ai_solution is None
    assert battle.created_at is not None
    assert store.get_battle(battle.id).prompt == "Design a floating library"
    assert store.get_battle(9999) is None


def test_update_battle_is_partial(store):
    user = store.create_user("alice", "guest")
    battle = store.create_battle("prompt", user.id, "ai")
    updated = store.update_battle(battle.id, user_solution="my idea")
    assert updated.user_solution == "my idea"
    assert updated.prompt == "prompt"
    assert updated.ai_solution is None


def test_completed_never_reverts(store):
    user = store.create_user("alice", "guest")
    battle = store.create_battle("prompt", user.id, "ai")
    store.update_battle(battle.id, completed=True)
    after = store.update_battle(battle.id, completed=False)
    assert after.completed is True
    assert store.get_battle(battle.id).completed is True


def test_update_unknown_battle(store):
    with pytest.raises(NotFound):
        store.update_battle(424242, completed=True)


def test_update_rejects_fixed_fields(store):
    user = store.create_user("alice", "guest")
    battle = store.create_battle("prompt", user.id, "ai")
    with pytest.raises(ValueError):
        store.update_battle(battle.id, prompt="rewritten")


def test_one_score_per_battle(store):
    user = store.create_user("alice", "guest")
    battle = store.create_battle("prompt", user.id, "ai")
    score = store.create_score(battle.id, **_score_fields())
    assert store.get_score_by_battle_id(battle.id).id == score.id
    with pytest.raises(ValueError):
        store.create_score(battle.id, **_score_fields(user_logic=10))
    assert store.get_score_by_battle_id(battle.id).user_logic == 70


def test_leaderboard_upsert(store):
    user = store.create_user("alice", "guest")
    store.upsert_leaderboard_entry(user.id, "alice", True, 200)
    store.upsert_leaderboard_entry(user.id, "alice", False, 150)
    entry = store.upsert_leaderboard_entry(user.id, "alice", True, 220)
    assert entry.total_battles == 3
    assert entry.wins == 2
    assert entry.win_rate == 67
    assert entry.avg_score == pytest.approx(190.0)
    assert len(store.get_leaderboard()) == 1


def test_leaderboard_sorted(store):
    a = store.create_user("alice", "guest")
    b = store.create_user("bob", "guest")
    c = store.create_user("carol", "guest")
    store.upsert_leaderboard_entry(a.id, "alice", False, 100)
    store.upsert_leaderboard_entry(b.id, "bob", True, 150)
    store.upsert_leaderboard_entry(c.id, "carol", True, 210)
    assert [e.username for e in store.get_leaderboard()] == ["carol", "bob", "alice"]


def test_next_standing_without_score_keeps_average():
    assert next_standing(0, 0, 0.0, True) == (1, 1, 100, 0.0)
    assert next_standing(1, 1, 0.0, False) == (2, 1, 50, 0.0)


def test_sort_standings_tie_breaks_on_username():
    entries = [
        LeaderboardRecord(id=1, user_id=1, username="zed", total_battles=1, wins=1, win_rate=100, avg_score=200),
        LeaderboardRecord(id=2, user_id=2, username="amy", total_battles=1, wins=1, win_rate=100, avg_score=200),
    ]
    assert [e.username for e in sort_standings(entries)] == ["amy", "zed"]


@pytest.fixture
def unreachable_factory(tmp_path):
    # Parent directory does not exist, so every connection attempt fails
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'battles.db'}")
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def test_fallback_serves_from_memory_when_database_down(unreachable_factory):
    store = FallbackStorage(DatabaseStorage(unreachable_factory))
    user = store.create_user("alice", "guest")
    assert store.degraded is True
    # Writes made while degraded remain visible to later calls
    assert store.get_user_by_username("alice").id == user.id
    battle = store.create_battle("prompt", user.id, "ai")
    store.update_battle(battle.id, user_solution="idea", completed=True)
    assert store.get_battle(battle.id).completed is True


def test_fallback_passes_through_when_healthy(session_factory):
    store = FallbackStorage(DatabaseStorage(session_factory))
    store.create_user("alice", "guest")
    with pytest.raises(ValueError):
        store.create_user("alice", "guest")
    assert store.degraded is False


def test_fallback_recovers(session_factory, unreachable_factory):
    primary = DatabaseStorage(unreachable_factory)
    store = FallbackStorage(primary)
    store.get_leaderboard()
    assert store.degraded is True
    primary.session_factory = session_factory
    assert store.get_leaderboard() == []
    assert store.degraded is False


def test_build_storage():
    assert isinstance(build_storage("memory"), MemoryStorage)
    assert isinstance(build_storage("database"), FallbackStorage)


def test_memory_records_are_copies(memory_store):
    user = memory_store.create_user("alice", "guest")
    battle = memory_store.create_battle("prompt", user.id, "ai")
    battle.completed = True
    assert memory_store.get_battle(battle.id).completed is False


def test_fallback_mirrors_healthy_reads(session_factory):
    store = FallbackStorage(DatabaseStorage(session_factory))
    user = store.create_user("alice", "guest")
    mirrored = store.fallback.get_user_by_username("alice")
    assert mirrored is not None and mirrored.id == user.id
    assert store.fallback.get_user(user.id).username == "alice"


def _outage_service(session_factory):
    primary = DatabaseStorage(session_factory)
    store = FallbackStorage(primary)
    return primary, store, BattleService(store, RiggedJudge(user_wins=True))


def test_outage_battles_keep_their_own_ids(session_factory, unreachable_factory):
    primary, store, service = _outage_service(session_factory)
    carol_battle = service.create_battle("ai", "carol")

    primary.session_factory = unreachable_factory
    bob_battle = service.create_battle("ai", "bob")
    assert store.degraded is True
    assert bob_battle.id >= FALLBACK_ID_OFFSET
    assert bob_battle.id != carol_battle.id

    primary.session_factory = session_factory
    dave_battle = service.create_battle("ai", "dave")
    assert store.degraded is False
    assert dave_battle.id < FALLBACK_ID_OFFSET

    fetched = service.get_battle(bob_battle.id)
    assert fetched.prompt == bob_battle.prompt
    assert fetched.created_at == bob_battle.created_at
    assert service.get_battle(carol_battle.id).user_id == carol_battle.user_id
    assert service.get_battle(carol_battle.id).created_at == carol_battle.created_at

    service.submit_solution(bob_battle.id, LONG_SOLUTION)
    _, score = service.get_results(bob_battle.id)
    assert score.battle_id == bob_battle.id


def test_battle_started_before_outage_completes_during_it(session_factory, unreachable_factory):
    primary, store, service = _outage_service(session_factory)
    battle = service.create_battle("ai", "alice")

    primary.session_factory = unreachable_factory
    service.submit_solution(battle.id, LONG_SOLUTION)
    assert store.degraded is True

    done, score = service.get_results(battle.id)
    assert done.completed is True
    assert done.user_solution == LONG_SOLUTION
    assert done.user_score == score.user_originality + score.user_logic + score.user_expression

    rows = service.leaderboard.list(username="alice")
    assert [(r.username, r.wins, r.is_current_user) for r in rows] == [("alice", 1, True)]

    # Still served from memory once the database is back
    primary.session_factory = session_factory
    assert service.get_battle(battle.id).completed is True
    assert service.get_results(battle.id)[1].id == score.id


def test_leaderboard_merges_outage_entries(session_factory, unreachable_factory):
    primary, store, service = _outage_service(session_factory)
    carol = service.create_battle("ai", "carol")
    service.submit_solution(carol.id, LONG_SOLUTION)

    primary.session_factory = unreachable_factory
    bob = service.create_battle("ai", "bob")
    service.submit_solution(bob.id, LONG_SOLUTION)

    primary.session_factory = session_factory
    names = sorted(e.username for e in store.get_leaderboard())
    assert names == ["bob", "carol"]


def test_memory_first_id(memory_store):
    store = MemoryStorage(first_id=500)
    user = store.create_user("alice", "guest")
    battle = store.create_battle("prompt", user.id, "ai")
    assert (user.id, battle.id) == (500, 500)
    assert memory_store.create_user("alice", "guest").id == 1


def test_memory_remember_keeps_foreign_ids():
    source = MemoryStorage(first_id=7)
    user = source.create_user("alice", "guest")
    battle = source.create_battle("prompt", user.id, "ai")

    store = MemoryStorage(first_id=100)
    store.remember(user)
    store.remember(battle)
    assert store.get_user_by_username("alice").id == 7
    assert store.get_battle(battle.id).prompt == "prompt"
    assert store.create_user("bob", "guest").id == 100
    with pytest.raises(TypeError):
        store.remember({"id": 1})
