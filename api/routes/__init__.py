"""API Routes"""

from . import health, see_it_now

__all__ = ["health", "see_it_now"]
