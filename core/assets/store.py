"""In-memory store for shops, product assets and room sessions."""

import logging
import threading
from dataclasses import fields
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .types import ProductAsset, RoomSession, Shop

logger = logging.getLogger(__name__)


class AssetStore:
    """Persistence for the records a render request reads and updates.

    Methods are coroutines so callers treat this like any other remote store.
    """

    def __init__(self):
        self._shops: Dict[str, Shop] = {}
        self._assets: Dict[str, ProductAsset] = {}
        self._rooms: Dict[str, RoomSession] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Shops
    # ------------------------------------------------------------------

    async def add_shop(self, shop: Shop) -> Shop:
        with self._lock:
            self._shops[shop.id] = shop
        logger.info(f"Registered shop {shop.shop_domain} ({shop.id})")
        return shop

    async def get_shop(self, shop_id: str) -> Optional[Shop]:
        with self._lock:
            return self._shops.get(shop_id)

    async def get_shop_by_domain(self, shop_domain: str) -> Optional[Shop]:
        with self._lock:
            for shop in self._shops.values():
                if shop.shop_domain == shop_domain:
                    return shop
        return None

    # ------------------------------------------------------------------
    # Product assets
    # ------------------------------------------------------------------

    async def add_product_asset(self, asset: ProductAsset) -> ProductAsset:
        with self._lock:
            self._assets[asset.id] = asset
        return asset

    async def get_product_asset(self, asset_id: str) -> Optional[ProductAsset]:
        with self._lock:
            return self._assets.get(asset_id)

    async def find_product_asset(self, shop_id: str, product_id: str) -> Optional[ProductAsset]:
        """
        Find a shop's asset for a storefront product id.

        Args:
            shop_id: Owning shop
            product_id: Storefront product id

        Returns:
            Most recently updated matching asset, or None
        """
        with self._lock:
            matches = [
                a for a in self._assets.values()
                if a.shop_id == shop_id and a.product_id == product_id
            ]
        if not matches:
            return None
        matches.sort(key=lambda a: a.updated_at, reverse=True)
        return matches[0]

    async def update_product_asset(self, asset_id: str, **changes) -> Optional[ProductAsset]:
        """
        Apply field updates to an asset.

        Args:
            asset_id: Asset to update
            **changes: Field names and new values

        Returns:
            Updated asset, or None if not found

        Raises:
            AttributeError: If a field name is unknown
        """
        with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None:
                return None
            self._apply(asset, changes)
            return asset

    # ------------------------------------------------------------------
    # Room sessions
    # ------------------------------------------------------------------

    async def add_room_session(self, room: RoomSession) -> RoomSession:
        with self._lock:
            self._rooms[room.id] = room
        return room

    async def get_room_session(self, room_session_id: str) -> Optional[RoomSession]:
        with self._lock:
            return self._rooms.get(room_session_id)

    async def update_room_session(self, room_session_id: str, **changes) -> Optional[RoomSession]:
        """Apply field updates to a room session; None if not found."""
        with self._lock:
            room = self._rooms.get(room_session_id)
            if room is None:
                return None
            self._apply(room, changes)
            return room

    def list_product_assets(self, shop_id: Optional[str] = None) -> List[ProductAsset]:
        with self._lock:
            assets = list(self._assets.values())
        if shop_id:
            assets = [a for a in assets if a.shop_id == shop_id]
        return assets

    def clear_all(self) -> None:
        """Clear all records (for testing/development)."""
        with self._lock:
            self._shops.clear()
            self._assets.clear()
            self._rooms.clear()

    @staticmethod
    def _apply(record, changes: dict) -> None:
        names = {f.name for f in fields(record)}
        for name, value in changes.items():
            if name not in names:
                raise AttributeError(f"{type(record).__name__} has no field '{name}'")
            setattr(record, name, value)
        record.updated_at = datetime.now(timezone.utc)
