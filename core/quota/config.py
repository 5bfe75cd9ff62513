"""Quota and rate limit configuration."""

import os
from dataclasses import dataclass


@dataclass
class QuotaConfig:
    """Daily quota and per-session rate limit settings."""

    default_daily_quota: int = 100
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 5

    @classmethod
    def from_env(cls) -> "QuotaConfig":
        """Load configuration from environment variables."""
        return cls(
            default_daily_quota=int(os.getenv("SEE_IT_NOW_DEFAULT_DAILY_QUOTA", "100")),
            rate_limit_window_seconds=int(os.getenv("SEE_IT_NOW_RATE_LIMIT_WINDOW_SECONDS", "60")),
            rate_limit_max_requests=int(os.getenv("SEE_IT_NOW_RATE_LIMIT_MAX_REQUESTS", "5")),
        )
