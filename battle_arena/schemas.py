from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


OpponentType = Literal["ai", "human"]
Winner = Literal["user", "ai"]

MAX_USERNAME_LENGTH = 30


def normalize_username(username: Optional[str]) -> Optional[str]:
    """Trimmed name capped at 30 chars, or None when no real name was given."""
    if username is None:
        return None
    name = username.strip()[:MAX_USERNAME_LENGTH].strip()
    if not name or name == "Guest":
        return None
    return name


class CamelModel(BaseModel):
    """snake_case attributes, camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ========== Stored records ==========


class UserRecord(CamelModel):
    id: int
    username: str
    password: str


class BattleRecord(CamelModel):
    id: int
    prompt: str
    user_id: int
    opponent_type: OpponentType = "ai"
    user_solution: Optional[str] = None
    ai_solution: Optional[str] = None
    user_score: Optional[int] = None
    ai_score: Optional[int] = None
    user_won: Optional[bool] = None
    completed: bool = False
    created_at: datetime


class ScoreRecord(CamelModel):
    id: int
    battle_id: int
    user_originality: int
    user_logic: int
    user_expression: int
    ai_originality: int
    ai_logic: int
    ai_expression: int
    judge_feedback: str
    user_originality_feedback: Optional[str] = None
    user_logic_feedback: Optional[str] = None
    user_expression_feedback: Optional[str] = None
    ai_originality_feedback: Optional[str] = None
    ai_logic_feedback: Optional[str] = None
    ai_expression_feedback: Optional[str] = None


class LeaderboardRecord(CamelModel):
    id: int
    user_id: int
    username: str
    total_battles: int
    wins: int
    win_rate: int
    avg_score: float = 0.0


class LeaderboardRow(LeaderboardRecord):
    """Leaderboard entry as returned to a specific viewer."""

    is_current_user: bool = False


# ========== Judge results ==========


class SideScore(CamelModel):
    """One side's scores as produced by the judge."""

    originality: int = Field(ge=0, le=100)
    logic: int = Field(ge=0, le=100)
    expression: int = Field(ge=0, le=100)
    originality_feedback: str = ""
    logic_feedback: str = ""
    expression_feedback: str = ""

    @property
    def total(self) -> int:
        return self.originality + self.logic + self.expression


class EvaluationResult(CamelModel):
    user_score: SideScore
    ai_score: SideScore
    judge_feedback: str
    winner: Winner


# ========== Request / response bodies ==========


class UserCreateRequest(CamelModel):
    """POST /users body. Emptiness is checked by the service."""

    username: Optional[str] = None


class BattleCreateRequest(CamelModel):
    opponent_type: OpponentType = "ai"
    username: Optional[str] = None


class SubmitRequest(CamelModel):
    solution: str
    is_auto_submit: bool = False


class SubmitResponse(BaseModel):
    success: bool = True


class BattleResults(BaseModel):
    battle: BattleRecord
    scores: ScoreRecord


class RoundPolicyResponse(CamelModel):
    duration_seconds: int
    min_elapsed_seconds: int
    min_solution_length: int
    enforced: bool
