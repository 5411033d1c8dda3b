from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from battle_arena.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), unique=True, nullable=False, index=True)
    password = Column(String, nullable=False)


class Battle(Base):
    __tablename__ = "battles"

    id = Column(Integer, primary_key=True, index=True)
    prompt = Column(Text, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    opponent_type = Column(String(8), nullable=False, default="ai")  # ai | human
    user_solution = Column(Text, nullable=True)
    ai_solution = Column(Text, nullable=True)
    user_score = Column(Integer, nullable=True)
    ai_score = Column(Integer, nullable=True)
    user_won = Column(Boolean, nullable=True)
    completed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Score(Base):
    __tablename__ = "scores"

    id = Column(Integer, primary_key=True, index=True)
    battle_id = Column(Integer, ForeignKey("battles.id"), unique=True, nullable=False, index=True)
    user_originality = Column(Integer, nullable=False)
    user_logic = Column(Integer, nullable=False)
    user_expression = Column(Integer, nullable=False)
    ai_originality = Column(Integer, nullable=False)
    ai_logic = Column(Integer, nullable=False)
    ai_expression = Column(Integer, nullable=False)
    judge_feedback = Column(Text, nullable=False)
    user_originality_feedback = Column(Text, nullable=True)
    user_logic_feedback = Column(Text, nullable=True)
    user_expression_feedback = Column(Text, nullable=True)
    ai_originality_feedback = Column(Text, nullable=True)
    ai_logic_feedback = Column(Text, nullable=True)
    ai_expression_feedback = Column(Text, nullable=True)
