"""Daily quota and per-session rate limits."""

from .config import QuotaConfig
from .quota import QuotaExceededError, QuotaService
from .rate_limit import RateLimiter

__all__ = ["QuotaConfig", "QuotaExceededError", "QuotaService", "RateLimiter"]
