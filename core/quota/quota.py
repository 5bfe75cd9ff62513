"""Per-shop daily usage counters and quota enforcement."""

import logging
import threading
from datetime import date, datetime, timezone
from typing import Dict, Optional, Tuple

from core.assets.store import AssetStore

from .config import QuotaConfig

logger = logging.getLogger(__name__)

# Counted for every resource, enforced only for these
ENFORCED_RESOURCES = {"render"}


class QuotaExceededError(Exception):
    """The shop has used up its daily allowance."""

    def __init__(self, shop_id: str, resource: str, used: int, limit: int):
        super().__init__(
            f"Daily {resource} quota exceeded for shop {shop_id} ({used}/{limit})"
        )
        self.shop_id = shop_id
        self.resource = resource
        self.used = used
        self.limit = limit


def _today() -> date:
    return datetime.now(timezone.utc).date()


class QuotaService:
    """Tracks daily usage per shop and resource."""

    def __init__(self, store: AssetStore, config: Optional[QuotaConfig] = None):
        """
        Initialize the quota service.

        Args:
            store: Asset store used to read each shop's daily quota
            config: Quota settings (defaults if omitted)
        """
        self.store = store
        self.config = config or QuotaConfig()
        self._usage: Dict[Tuple[str, date], Dict[str, int]] = {}
        self._lock = threading.Lock()

    async def get_limit(self, shop_id: str) -> int:
        shop = await self.store.get_shop(shop_id)
        if shop is None:
            return self.config.default_daily_quota
        return shop.daily_quota

    def get_usage(self, shop_id: str, resource: str = "render", day: Optional[date] = None) -> int:
        """Usage count for a shop, resource and day (today by default)."""
        with self._lock:
            return self._usage.get((shop_id, day or _today()), {}).get(resource, 0)

    async def check_quota(self, shop_id: str, resource: str = "render", amount: int = 1) -> None:
        """
        Verify the shop can spend ``amount`` more units today.

        Args:
            shop_id: Shop to check
            resource: "render", "prep" or "cleanup"
            amount: Units about to be used

        Raises:
            QuotaExceededError: If usage + amount would exceed the daily quota
        """
        if resource not in ENFORCED_RESOURCES:
            return

        limit = await self.get_limit(shop_id)
        used = self.get_usage(shop_id, resource)
        if used + amount > limit:
            logger.warning(f"Quota exceeded for shop {shop_id}: {used}+{amount} > {limit} ({resource})")
            raise QuotaExceededError(shop_id, resource, used, limit)

    async def increment_quota(self, shop_id: str, resource: str = "render", amount: int = 1) -> int:
        """
        Record usage for today.

        Counters from earlier days are dropped on the way; only today is enforced.

        Args:
            shop_id: Shop to charge
            resource: Resource name
            amount: Units used

        Returns:
            New usage count for today
        """
        today = _today()
        key = (shop_id, today)
        with self._lock:
            stale = [k for k in self._usage if k[1] < today]
            for old in stale:
                del self._usage[old]

            counters = self._usage.setdefault(key, {})
            counters[resource] = counters.get(resource, 0) + amount
            count = counters[resource]

        logger.info(f"Shop {shop_id} {resource} usage today: {count}")
        return count

    def clear_all(self) -> None:
        """Clear all counters (for testing/development)."""
        with self._lock:
            self._usage.clear()
