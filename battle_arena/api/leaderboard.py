from typing import Optional

from fastapi import APIRouter, Depends, Query

from battle_arena.api.deps import get_battle_service, http_errors
from battle_arena.schemas import LeaderboardRow
from battle_arena.services.battles import BattleService

router = APIRouter()


@router.get("/leaderboard", response_model=list[LeaderboardRow])
@router.get("/leaderboard/{period}", response_model=list[LeaderboardRow])
def get_leaderboard(
    period: str = "alltime",
    username: Optional[str] = Query(None, description="Marks this user's row with isCurrentUser"),
    service: BattleService = Depends(get_battle_service),
):
    """
    Standings sorted by win rate, then average score.
    Falls back to the store when the Redis cache is unavailable.
    """
    with http_errors("Failed to fetch leaderboard", operation=period):
        return service.leaderboard.list(period, username)
