import threading
from datetime import datetime
from typing import Any, Optional

from battle_arena.core.errors import NotFound
from battle_arena.schemas import (
    BattleRecord,
    LeaderboardRecord,
    ScoreRecord,
    UserRecord,
)
from battle_arena.storage.base import (
    Storage,
    clean_battle_updates,
    next_standing,
    sort_standings,
)


class MemoryStorage(Storage):
    """Volatile store. Nothing survives a process restart.

    A single lock guards every read-modify-write, so updates to one entity are
    atomic with respect to each other. Records are copied on the way in and
    out; callers never hold a reference into the store.
    """

    def __init__(self, first_id: int = 1):
        self._lock = threading.RLock()
        self._users: dict[int, UserRecord] = {}
        self._battles: dict[int, BattleRecord] = {}
        self._scores: dict[int, ScoreRecord] = {}
        self._leaderboard: dict[int, LeaderboardRecord] = {}
        self._user_id = first_id
        self._battle_id = first_id
        self._score_id = first_id
        self._leaderboard_id = first_id

    def remember(self, record) -> None:
        """Keep a copy of a record owned by another store, under its own id."""
        with self._lock:
            if isinstance(record, UserRecord):
                self._users[record.id] = record.model_copy()
            elif isinstance(record, BattleRecord):
                self._battles[record.id] = record.model_copy()
            elif isinstance(record, ScoreRecord):
                self._scores[record.id] = record.model_copy()
            elif isinstance(record, LeaderboardRecord):
                self._leaderboard[record.id] = LeaderboardRecord.model_validate(record.model_dump())
            else:
                raise TypeError(f"Cannot remember {type(record).__name__}")

    # Users

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self._users.values():
                if user.username == username:
                    return user.model_copy()
            return None

    def create_user(self, username: str, password: str) -> UserRecord:
        with self._lock:
            if any(u.username == username for u in self._users.values()):
                raise ValueError(f"Username already taken: {username}")
            user = UserRecord(id=self._user_id, username=username, password=password)
            self._users[user.id] = user
            self._user_id += 1
            return user.model_copy()

    # Battles

    def get_battle(self, battle_id: int) -> Optional[BattleRecord]:
        with self._lock:
            battle = self._battles.get(battle_id)
            return battle.model_copy() if battle else None

    def create_battle(self, prompt: str, user_id: int, opponent_type: str) -> BattleRecord:
        with self._lock:
            battle = BattleRecord(
                id=self._battle_id,
                prompt=prompt,
                user_id=user_id,
                opponent_type=opponent_type,
                completed=False,
                created_at=datetime.utcnow(),
            )
            self._battles[battle.id] = battle
            self._battle_id += 1
            return battle.model_copy()

    def update_battle(self, battle_id: int, **updates: Any) -> BattleRecord:
        cleaned = clean_battle_updates(updates)
        with self._lock:
            battle = self._battles.get(battle_id)
            if battle is None:
                raise NotFound(f"Battle with ID {battle_id} not found")
            updated = battle.model_copy(update=cleaned)
            self._battles[battle_id] = updated
            return updated.model_copy()

    # Scores

    def get_score_by_battle_id(self, battle_id: int) -> Optional[ScoreRecord]:
        with self._lock:
            for score in self._scores.values():
                if score.battle_id == battle_id:
                    return score.model_copy()
            return None

    def create_score(self, battle_id: int, **fields: Any) -> ScoreRecord:
        with self._lock:
            if any(s.battle_id == battle_id for s in self._scores.values()):
                raise ValueError(f"Score already exists for battle {battle_id}")
            score = ScoreRecord(id=self._score_id, battle_id=battle_id, **fields)
            self._scores[score.id] = score
            self._score_id += 1
            return score.model_copy()

    # Leaderboard

    def get_leaderboard(self) -> list[LeaderboardRecord]:
        with self._lock:
            entries = [e.model_copy() for e in self._leaderboard.values()]
        return sort_standings(entries)

    def upsert_leaderboard_entry(
        self,
        user_id: int,
        username: str,
        is_win: bool,
        score: Optional[int] = None,
    ) -> LeaderboardRecord:
        with self._lock:
            entry = next((e for e in self._leaderboard.values() if e.user_id == user_id), None)
            if entry is None:
                total, wins, win_rate, avg = next_standing(0, 0, 0.0, is_win, score)
                entry = LeaderboardRecord(
                    id=self._leaderboard_id,
                    user_id=user_id,
                    username=username,
                    total_battles=total,
                    wins=wins,
                    win_rate=win_rate,
                    avg_score=avg,
                )
                self._leaderboard_id += 1
            else:
                total, wins, win_rate, avg = next_standing(
                    entry.total_battles, entry.wins, entry.avg_score, is_win, score
                )
                entry = entry.model_copy(update={
                    "total_battles": total,
                    "wins": wins,
                    "win_rate": win_rate,
                    "avg_score": avg,
                })
            self._leaderboard[entry.id] = entry
            return entry.model_copy()
