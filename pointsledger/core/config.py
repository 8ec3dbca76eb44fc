from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./pointsledger.db"

    # Security
    secret_key: str
    algorithm: str = "HS256"

    # Ledger
    daily_point_limit: int = 300
    daily_limit_policy: str = "reject"  # or "partial": pay out only the remaining headroom
    rapid_action_threshold: int = 10
    rapid_action_window_seconds: int = 60
    ledger_max_retries: int = 3
    ledger_retry_backoff_seconds: float = 0.05

    # Streaks
    streak_weekly_days: int = 7
    streak_monthly_days: int = 30

    # Leaderboard
    leaderboard_refresh_seconds: int = 300  # 0 disables the background refresher
    leaderboard_max_limit: int = 100

    # App
    app_name: str = "Points Ledger"
    version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    class Config:
        env_file = ".env"

settings = Settings()
