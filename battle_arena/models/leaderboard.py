from sqlalchemy import Column, Float, ForeignKey, Integer, String
from battle_arena.db.base import Base


class LeaderboardEntry(Base):
    __tablename__ = "leaderboard"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)
    username = Column(String(30), nullable=False)
    total_battles = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    win_rate = Column(Integer, nullable=False, default=0)
    avg_score = Column(Float, nullable=False, default=0.0)
