import logging
import threading
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from battle_arena.core.errors import NotFound
from battle_arena.models import Battle, LeaderboardEntry, Score, User
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

logger = logging.getLogger(__name__)


class DatabaseStorage(Storage):
    """SQLAlchemy-backed store.

    Every method opens its own session and commits before returning, so a
    record handed back to the caller is already durable. Database errors are
    propagated; FallbackStorage decides what to do with them.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from battle_arena.db.session import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        # SQLite ignores FOR UPDATE; serialize upserts within this process too
        self._upsert_lock = threading.Lock()

    def ping(self) -> None:
        """Round-trip to the database; raises when it is unreachable."""
        db = self.session_factory()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

    # Users

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        db = self.session_factory()
        try:
            user = db.get(User, user_id)
            return UserRecord.model_validate(user) if user else None
        finally:
            db.close()

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        db = self.session_factory()
        try:
            user = db.query(User).filter(User.username == username).first()
            return UserRecord.model_validate(user) if user else None
        finally:
            db.close()

    def create_user(self, username: str, password: str) -> UserRecord:
        db = self.session_factory()
        try:
            user = User(username=username, password=password)
            db.add(user)
            db.commit()
            db.refresh(user)
            return UserRecord.model_validate(user)
        except IntegrityError as e:
            db.rollback()
            raise ValueError(f"Username already taken: {username}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Battles

    def get_battle(self, battle_id: int) -> Optional[BattleRecord]:
        db = self.session_factory()
        try:
            battle = db.get(Battle, battle_id)
            return BattleRecord.model_validate(battle) if battle else None
        finally:
            db.close()

    def create_battle(self, prompt: str, user_id: int, opponent_type: str) -> BattleRecord:
        db = self.session_factory()
        try:
            battle = Battle(
                prompt=prompt,
                user_id=user_id,
                opponent_type=opponent_type,
                completed=False,
            )
            db.add(battle)
            db.commit()
            db.refresh(battle)
            return BattleRecord.model_validate(battle)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_battle(self, battle_id: int, **updates: Any) -> BattleRecord:
        cleaned = clean_battle_updates(updates)
        db = self.session_factory()
        try:
            battle = (
                db.query(Battle)
                .filter(Battle.id == battle_id)
                .with_for_update()
                .first()
            )
            if battle is None:
                raise NotFound(f"Battle with ID {battle_id} not found")
            for field, value in cleaned.items():
                setattr(battle, field, value)
            db.commit()
            db.refresh(battle)
            return BattleRecord.model_validate(battle)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Scores

    def get_score_by_battle_id(self, battle_id: int) -> Optional[ScoreRecord]:
        db = self.session_factory()
        try:
            score = db.query(Score).filter(Score.battle_id == battle_id).first()
            return ScoreRecord.model_validate(score) if score else None
        finally:
            db.close()

    def create_score(self, battle_id: int, **fields: Any) -> ScoreRecord:
        db = self.session_factory()
        try:
            score = Score(battle_id=battle_id, **fields)
            db.add(score)
            db.commit()
            db.refresh(score)
            return ScoreRecord.model_validate(score)
        except IntegrityError as e:
            db.rollback()
            raise ValueError(f"Score already exists for battle {battle_id}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Leaderboard

    def get_leaderboard(self) -> list[LeaderboardRecord]:
        db = self.session_factory()
        try:
            rows = db.query(LeaderboardEntry).all()
            return sort_standings([LeaderboardRecord.model_validate(r) for r in rows])
        finally:
            db.close()

    def upsert_leaderboard_entry(
        self,
        user_id: int,
        username: str,
        is_win: bool,
        score: Optional[int] = None,
    ) -> LeaderboardRecord:
        with self._upsert_lock:
            return self._upsert_leaderboard_entry(user_id, username, is_win, score)

    def _upsert_leaderboard_entry(self, user_id, username, is_win, score):
        db = self.session_factory()
        try:
            # Row lock keeps the read-modify-write atomic per user
            entry = (
                db.query(LeaderboardEntry)
                .filter(LeaderboardEntry.user_id == user_id)
                .with_for_update()
                .first()
            )
            if entry is None:
                total, wins, win_rate, avg = next_standing(0, 0, 0.0, is_win, score)
                entry = LeaderboardEntry(
                    user_id=user_id,
                    username=username,
                    total_battles=total,
                    wins=wins,
                    win_rate=win_rate,
                    avg_score=avg,
                )
                db.add(entry)
            else:
                total, wins, win_rate, avg = next_standing(
                    entry.total_battles, entry.wins, entry.avg_score or 0.0, is_win, score
                )
                entry.total_battles = total
                entry.wins = wins
                entry.win_rate = win_rate
                entry.avg_score = avg
            db.commit()
            db.refresh(entry)
            logger.debug(
                "leaderboard_entry_saved",
                extra={"user_id": user_id, "username": username},
            )
            return LeaderboardRecord.model_validate(entry)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
