import logging
import threading
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from battle_arena.core.errors import StorageDegraded
from battle_arena.core.metrics import STORAGE_DEGRADED, STORAGE_FALLBACK_TOTAL
from battle_arena.schemas import (
    BattleRecord,
    LeaderboardRecord,
    ScoreRecord,
    UserRecord,
)
from battle_arena.storage.base import Storage, sort_standings
from battle_arena.storage.memory import MemoryStorage

logger = logging.getLogger(__name__)

# Ids handed out while degraded start here so they never collide with durable ids
FALLBACK_ID_OFFSET = 1_000_000_000


class FallbackStorage(Storage):
    """Durable store with a volatile safety net.

    Calls go to ``primary``. Every record the primary returns is mirrored
    into ``fallback``, one MemoryStorage kept for the lifetime of this
    object, so an outage in the middle of a battle can still serve the
    battle. When the primary raises a database error the call is replayed
    against ``fallback``.

    Anything written while degraded is owned by the fallback from then on:
    later calls for it are served from memory even after the primary
    recovers. Those writes are lost on restart, which is why every fallback
    is logged.
    """

    def __init__(self, primary: Storage, fallback: Optional[MemoryStorage] = None):
        self.primary = primary
        self.fallback = fallback if fallback is not None else MemoryStorage(first_id=FALLBACK_ID_OFFSET)
        self.degraded = False
        self._owned: set[tuple[str, Any]] = set()
        self._owned_lock = threading.Lock()

    def _call(self, operation: str, *args: Any, **kwargs: Any) -> tuple[Any, bool]:
        """Run ``operation`` on the primary, or on the fallback if it fails.

        Returns ``(result, from_fallback)``.
        """
        try:
            result = getattr(self.primary, operation)(*args, **kwargs)
        except IntegrityError:
            # Constraint violations are real answers, not an outage
            raise
        except SQLAlchemyError as e:
            self._mark_degraded(operation, e)
            return getattr(self.fallback, operation)(*args, **kwargs), True
        if self.degraded:
            self.degraded = False
            STORAGE_DEGRADED.set(0)
            logger.info("storage_recovered", extra={"operation": operation})
        return result, False

    def _mark_degraded(self, operation: str, error: Exception) -> None:
        self.degraded = True
        STORAGE_DEGRADED.set(1)
        STORAGE_FALLBACK_TOTAL.labels(operation=operation).inc()
        degraded = StorageDegraded(f"{operation} failed on durable store: {error}")
        logger.warning(
            f"storage_degraded: {degraded.message}",
            extra={"operation": operation, "stage": "storage_fallback"},
        )

    def _owns(self, kind: str, key: Any) -> bool:
        with self._owned_lock:
            return (kind, key) in self._owned

    def _claim(self, kind: str, key: Any) -> None:
        with self._owned_lock:
            self._owned.add((kind, key))

    def _mirror(self, record) -> None:
        if record is not None:
            self.fallback.remember(record)

    # Users

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        if self._owns("user", user_id):
            return self.fallback.get_user(user_id)
        user, _ = self._call("get_user", user_id)
        self._mirror(user)
        return user

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        local = self.fallback.get_user_by_username(username)
        if local is not None and self._owns("user", local.id):
            return local
        user, _ = self._call("get_user_by_username", username)
        self._mirror(user)
        return user

    def create_user(self, username: str, password: str) -> UserRecord:
        user, from_fallback = self._call("create_user", username, password)
        if from_fallback:
            self._claim("user", user.id)
        else:
            self._mirror(user)
        return user

    # Battles

    def get_battle(self, battle_id: int) -> Optional[BattleRecord]:
        if self._owns("battle", battle_id):
            return self.fallback.get_battle(battle_id)
        battle, _ = self._call("get_battle", battle_id)
        self._mirror(battle)
        return battle

    def create_battle(self, prompt: str, user_id: int, opponent_type: str) -> BattleRecord:
        if self._owns("user", user_id):
            # The durable store has never seen this user
            battle = self.fallback.create_battle(prompt, user_id, opponent_type)
            self._claim("battle", battle.id)
            return battle
        battle, from_fallback = self._call("create_battle", prompt, user_id, opponent_type)
        if from_fallback:
            self._claim("battle", battle.id)
        else:
            self._mirror(battle)
        return battle

    def update_battle(self, battle_id: int, **updates: Any) -> BattleRecord:
        if self._owns("battle", battle_id):
            return self.fallback.update_battle(battle_id, **updates)
        battle, from_fallback = self._call("update_battle", battle_id, **updates)
        if from_fallback:
            self._claim("battle", battle_id)
        else:
            self._mirror(battle)
        return battle

    # Scores

    def get_score_by_battle_id(self, battle_id: int) -> Optional[ScoreRecord]:
        if self._owns("score", battle_id):
            return self.fallback.get_score_by_battle_id(battle_id)
        score, _ = self._call("get_score_by_battle_id", battle_id)
        self._mirror(score)
        return score

    def create_score(self, battle_id: int, **fields: Any) -> ScoreRecord:
        if self._owns("battle", battle_id) or self._owns("score", battle_id):
            score = self.fallback.create_score(battle_id, **fields)
            self._claim("score", battle_id)
            return score
        score, from_fallback = self._call("create_score", battle_id, **fields)
        if from_fallback:
            self._claim("score", battle_id)
        else:
            self._mirror(score)
        return score

    # Leaderboard

    def get_leaderboard(self) -> list[LeaderboardRecord]:
        entries, from_fallback = self._call("get_leaderboard")
        if from_fallback:
            return entries
        local = {
            e.user_id: e
            for e in self.fallback.get_leaderboard()
            if self._owns("leaderboard", e.user_id)
        }
        merged = list(local.values())
        for entry in entries:
            if entry.user_id in local:
                continue
            self._mirror(entry)
            merged.append(entry)
        return sort_standings(merged)

    def upsert_leaderboard_entry(
        self,
        user_id: int,
        username: str,
        is_win: bool,
        score: Optional[int] = None,
    ) -> LeaderboardRecord:
        if self._owns("leaderboard", user_id) or self._owns("user", user_id):
            entry = self.fallback.upsert_leaderboard_entry(user_id, username, is_win, score)
            self._claim("leaderboard", user_id)
            return entry
        entry, from_fallback = self._call("upsert_leaderboard_entry", user_id, username, is_win, score)
        if from_fallback:
            self._claim("leaderboard", user_id)
        else:
            self._mirror(entry)
        return entry
