"""Shop, product asset and room session records."""

from .store import AssetStore
from .types import ProductAsset, RoomSession, Shop

__all__ = ["AssetStore", "ProductAsset", "RoomSession", "Shop"]
