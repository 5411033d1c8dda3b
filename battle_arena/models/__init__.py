from battle_arena.models.battle import Battle, Score, User
from battle_arena.models.leaderboard import LeaderboardEntry

__all__ = ["User", "Battle", "Score", "LeaderboardEntry"]
