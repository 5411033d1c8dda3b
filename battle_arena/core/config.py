import os
from dataclasses import dataclass
from typing import Optional

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class JudgeConfig:
    """Everything a judging provider needs, passed in at construction."""

    backend: str = "offline"
    api_key: Optional[str] = None
    offline_mode: bool = True
    base_url: Optional[str] = None
    model: str = "gpt-4o"
    timeout_seconds: float = 60.0
    max_attempts: int = 3

    @property
    def use_backend(self) -> bool:
        # Real calls only when a credential is present and offline mode is off
        return bool(self.api_key) and not self.offline_mode


class Settings(BaseSettings):
    # Storage configuration
    # SQLite by default; set DATABASE_URL for PostgreSQL.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./battles.db")
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "database")  # database | memory

    # Redis leaderboard cache (empty disables caching)
    REDIS_URL: str = os.getenv("REDIS_URL", "")
    LEADERBOARD_CACHE_TTL_SECONDS: int = int(os.getenv("LEADERBOARD_CACHE_TTL_SECONDS", "60"))

    # Judge configuration
    JUDGE_BACKEND: str = os.getenv("JUDGE_BACKEND", "openai")  # openai | perplexity | offline
    JUDGE_API_KEY: str = os.getenv("JUDGE_API_KEY", "")
    OFFLINE_MODE: bool = os.getenv("OFFLINE_MODE", "true").lower() == "true"
    JUDGE_BASE_URL: str = os.getenv("JUDGE_BASE_URL", "")
    JUDGE_MODEL: str = os.getenv("JUDGE_MODEL", "gpt-4o")
    JUDGE_TIMEOUT_SECONDS: float = float(os.getenv("JUDGE_TIMEOUT_SECONDS", "60"))
    JUDGE_MAX_ATTEMPTS: int = int(os.getenv("JUDGE_MAX_ATTEMPTS", "3"))

    # Round timing
    ROUND_DURATION_SECONDS: int = 180
    MIN_ELAPSED_SECONDS: int = 120
    MIN_SOLUTION_LENGTH: int = 10
    ENFORCE_ROUND_TIMING: bool = False

    # HTTP
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    class Config:
        # Let BaseSettings read from project .env if present (local dev).
        env_file = ".env"

    def judge_config(self) -> JudgeConfig:
        return JudgeConfig(
            backend=self.JUDGE_BACKEND.lower(),
            api_key=self.JUDGE_API_KEY or None,
            offline_mode=self.OFFLINE_MODE,
            base_url=self.JUDGE_BASE_URL or None,
            model=self.JUDGE_MODEL,
            timeout_seconds=self.JUDGE_TIMEOUT_SECONDS,
            max_attempts=self.JUDGE_MAX_ATTEMPTS,
        )


settings = Settings()
