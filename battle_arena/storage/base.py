from abc import ABC, abstractmethod
from typing import Any, Optional

from battle_arena.schemas import (
    BattleRecord,
    LeaderboardRecord,
    ScoreRecord,
    UserRecord,
)

# Fields update_battle accepts. Everything else on a battle is fixed at creation.
BATTLE_UPDATABLE_FIELDS = frozenset({
    "user_solution",
    "ai_solution",
    "user_score",
    "ai_score",
    "user_won",
    "completed",
})


def clean_battle_updates(updates: dict[str, Any]) -> dict[str, Any]:
    """Validate a partial battle update.

    ``completed`` may only move from False to True, so an explicit
    ``completed=False`` is dropped rather than applied.
    """
    unknown = set(updates) - BATTLE_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update battle fields: {sorted(unknown)}")
    cleaned = dict(updates)
    if cleaned.get("completed") is False:
        cleaned.pop("completed")
    return cleaned


def next_standing(
    total_battles: int,
    wins: int,
    avg_score: float,
    is_win: bool,
    score: Optional[int] = None,
) -> tuple[int, int, int, float]:
    """Apply one battle outcome to a standing.

    Returns ``(total_battles, wins, win_rate, avg_score)``. ``avg_score`` is a
    running mean of the scores passed in; outcomes recorded without a score
    leave it untouched.
    """
    total = total_battles + 1
    won = wins + (1 if is_win else 0)
    win_rate = round(won / total * 100)
    if score is not None:
        avg = round(avg_score + (score - avg_score) / total, 2)
    else:
        avg = avg_score
    return total, won, win_rate, avg


def sort_standings(entries: list[LeaderboardRecord]) -> list[LeaderboardRecord]:
    """Win rate desc, then average score desc, then username for stability."""
    return sorted(entries, key=lambda e: (-e.win_rate, -e.avg_score, e.username))


class Storage(ABC):
    """CRUD contract over users, battles, scores and leaderboard entries."""

    # Users
    @abstractmethod
    def get_user(self, user_id: int) -> Optional[UserRecord]: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[UserRecord]: ...

    @abstractmethod
    def create_user(self, username: str, password: str) -> UserRecord: ...

    # Battles
    @abstractmethod
    def get_battle(self, battle_id: int) -> Optional[BattleRecord]: ...

    @abstractmethod
    def create_battle(self, prompt: str, user_id: int, opponent_type: str) -> BattleRecord: ...

    @abstractmethod
    def update_battle(self, battle_id: int, **updates: Any) -> BattleRecord:
        """Partially update a battle. Raises NotFound for unknown ids."""

    # Scores
    @abstractmethod
    def get_score_by_battle_id(self, battle_id: int) -> Optional[ScoreRecord]: ...

    @abstractmethod
    def create_score(self, battle_id: int, **fields: Any) -> ScoreRecord: ...

    # Leaderboard
    @abstractmethod
    def get_leaderboard(self) -> list[LeaderboardRecord]:
        """All entries, sorted by :func:`sort_standings`."""

    @abstractmethod
    def upsert_leaderboard_entry(
        self,
        user_id: int,
        username: str,
        is_win: bool,
        score: Optional[int] = None,
    ) -> LeaderboardRecord:
        """Add one outcome to the user's entry, creating it if absent."""
