import json
import logging
from typing import Optional

import redis

from battle_arena.core.metrics import (
    LEADERBOARD_QUERIES_TOTAL,
    LEADERBOARD_QUERY_DURATION_SECONDS,
    DurationTimer,
)
from battle_arena.schemas import LeaderboardRecord, LeaderboardRow, normalize_username
from battle_arena.storage.base import Storage, sort_standings

logger = logging.getLogger(__name__)

PERIODS = ("daily", "weekly", "monthly", "alltime")


class RedisLeaderboardCache:
    """Redis copy of the sorted standings, rebuilt from the store on a miss."""

    def __init__(self, redis_url: str, ttl_seconds: int = 60, client=None):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.redis_client = client
        self.standings_key = "leaderboard:standings"

    def connect(self):
        """Connect to Redis with proper configuration"""
        try:
            self.redis_client = redis.from_url(
                self.redis_url,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True
            )
            self.redis_client.ping()
            logger.info("Connected to Redis leaderboard cache")
        except Exception as e:
            logger.critical(f"Failed to connect to Redis: {str(e)}")
            raise

    def get(self) -> Optional[list[LeaderboardRecord]]:
        if not self.redis_client:
            self.connect()
        raw = self.redis_client.get(self.standings_key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return [LeaderboardRecord.model_validate(item) for item in json.loads(raw)]

    def put(self, entries: list[LeaderboardRecord]) -> None:
        if not self.redis_client:
            self.connect()
        payload = json.dumps([e.model_dump() for e in entries])
        self.redis_client.set(self.standings_key, payload, ex=self.ttl_seconds)

    def invalidate(self) -> None:
        if not self.redis_client:
            self.connect()
        self.redis_client.delete(self.standings_key)


class LeaderboardAggregator:
    """Per-user win/loss standings, updated after every completed battle."""

    def __init__(self, store: Storage, cache: Optional[RedisLeaderboardCache] = None):
        self.store = store
        self.cache = cache

    def record_outcome(
        self,
        username: str,
        user_id: int,
        is_win: bool,
        score: Optional[int] = None,
    ) -> LeaderboardRecord:
        """Add one battle to the user's standing.

        ``score`` feeds the running average; without it avgScore is left as is.
        """
        entry = self.store.upsert_leaderboard_entry(user_id, username, is_win, score)
        logger.info(
            f"Leaderboard updated for {username}: {entry.wins}/{entry.total_battles} ({entry.win_rate}%)",
            extra={"user_id": user_id, "username": username},
        )
        if self.cache is not None:
            try:
                self.cache.invalidate()
            except Exception as e:
                # A stale cache expires on its own TTL
                logger.error(f"Failed to invalidate leaderboard cache: {str(e)}")
        return entry

    def _standings(self) -> tuple[list[LeaderboardRecord], str]:
        if self.cache is not None:
            try:
                cached = self.cache.get()
                if cached is not None:
                    return cached, "cache"
            except Exception as e:
                logger.error(f"Leaderboard cache read failed, using store: {str(e)}")
        entries = self.store.get_leaderboard()
        if self.cache is not None:
            try:
                self.cache.put(entries)
            except Exception as e:
                logger.error(f"Leaderboard cache write failed: {str(e)}")
        return entries, "store"

    def list(self, period: str = "alltime", username: Optional[str] = None) -> list[LeaderboardRow]:
        """Standings by win rate, then average score.

        Standings are all-time aggregates; ``period`` is recorded for metrics
        but does not filter. ``username`` only marks the viewer's own row.
        """
        period = (period or "alltime").lower()
        if period not in PERIODS:
            period = "alltime"
        viewer = normalize_username(username)
        with DurationTimer() as t:
            entries, source = self._standings()
            rows = [
                LeaderboardRow(
                    **entry.model_dump(),
                    is_current_user=viewer is not None and entry.username == viewer,
                )
                for entry in sort_standings(entries)
            ]
        LEADERBOARD_QUERIES_TOTAL.labels(period=period, source=source).inc()
        LEADERBOARD_QUERY_DURATION_SECONDS.observe(t.seconds)
        logger.info("leaderboard_query", extra={"operation": period})
        return rows
