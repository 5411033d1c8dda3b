import random

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from battle_arena.db.session import init_db
from battle_arena.main import create_app
from battle_arena.services.battles import BattleService, RoundPolicy
from battle_arena.services.judge import (
    OPPONENT_FAILURE_SENTINEL,
    OfflineJudge,
    synthetic_evaluation,
)
from battle_arena.storage import DatabaseStorage, MemoryStorage

LONG_SOLUTION = (
    "A rooftop garden network where each building trades surplus vegetables "
    "through a shared neighbourhood ledger."
)


class RiggedJudge(OfflineJudge):
    """Offline judge whose outcome the test chooses."""

    def __init__(self, user_wins=True, opponent_fails=False, rng=None):
        super().__init__(rng=rng or random.Random(3))
        self.user_wins = user_wins
        self.opponent_fails = opponent_fails
        self.evaluate_calls = 0
        self.opponent_calls = 0

    def generate_opponent_response(self, prompt):
        self.opponent_calls += 1
        if self.opponent_fails:
            return OPPONENT_FAILURE_SENTINEL
        return super().generate_opponent_response(prompt)

    def evaluate(self, prompt, user_solution, opponent_solution):
        self.evaluate_calls += 1
        # Seeds 0..n until the synthetic draw matches the requested winner
        wanted = "user" if self.user_wins else "ai"
        for seed in range(1000):
            result = synthetic_evaluation(LONG_SOLUTION, random.Random(seed))
            if result.winner == wanted:
                return result
        raise AssertionError("no seed produced the requested winner")


@pytest.fixture
def memory_store():
    return MemoryStorage()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db_store(session_factory):
    return DatabaseStorage(session_factory)


@pytest.fixture(params=["memory", "database"])
def store(request, memory_store, session_factory):
    if request.param == "memory":
        return memory_store
    return DatabaseStorage(session_factory)


@pytest.fixture
def judge():
    return RiggedJudge(user_wins=True)


@pytest.fixture
def service(memory_store, judge):
    return BattleService(memory_store, judge)


@pytest.fixture
def client(memory_store, judge):
    app = create_app(storage=memory_store, judge=judge)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def timed_service(memory_store, judge):
    policy = RoundPolicy(enforced=True)
    return BattleService(memory_store, judge, policy=policy)
