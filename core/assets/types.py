"""Records owned by the storefront: shops, prepared products, room sessions."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from core.facts.types import PromptPack


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Shop:
    """A merchant shop with its daily render allowance."""

    shop_domain: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    daily_quota: int = 100

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_domain": self.shop_domain,
            "daily_quota": self.daily_quota,
        }


@dataclass
class ProductAsset:
    """A prepared product ready (or becoming ready) for rendering."""

    shop_id: str
    product_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    status: str = "live"  # "preparing", "ready", "live", "failed", "archived"
    prepared_image_key: Optional[str] = None
    source_product: dict = field(default_factory=dict)

    # Fact pipeline
    extracted_facts: Optional[dict] = None
    merchant_overrides: Optional[dict] = None
    resolved_facts: Optional[dict] = None
    prompt_pack: Optional["PromptPack"] = None
    prompt_pack_version: int = 0
    extraction_error: Optional[dict] = None
    extracted_at: Optional[datetime] = None

    # Remote file handle for the prepared image
    gemini_file_uri: Optional[str] = None
    gemini_file_expires_at: Optional[datetime] = None
    gemini_file_source_key: Optional[str] = None

    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_renderable(self) -> bool:
        return self.status == "live"

    @property
    def pipeline_state(self) -> str:
        """Fact pipeline stage: "unextracted", "extracted" or "ready"."""
        if self.extracted_facts is None:
            return "unextracted"
        if self.resolved_facts is None or self.prompt_pack is None:
            return "extracted"
        return "ready"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "product_id": self.product_id,
            "status": self.status,
            "prepared_image_key": self.prepared_image_key,
            "pipeline_state": self.pipeline_state,
            "resolved_facts": self.resolved_facts,
            "prompt_pack_version": self.prompt_pack_version,
            "extraction_error": self.extraction_error,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class RoomSession:
    """A shopper's uploaded room photo and its derived images."""

    shop_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    original_room_image_key: Optional[str] = None
    cleaned_room_image_key: Optional[str] = None
    canonical_room_image_key: Optional[str] = None
    canonical_width: Optional[int] = None
    canonical_height: Optional[int] = None
    expires_at: Optional[datetime] = None

    gemini_file_uri: Optional[str] = None
    gemini_file_expires_at: Optional[datetime] = None
    gemini_file_source_key: Optional[str] = None

    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def room_image_key(self) -> Optional[str]:
        """Best available room image: canonical, then cleaned, then original."""
        return (
            self.canonical_room_image_key
            or self.cleaned_room_image_key
            or self.original_room_image_key
        )

    @property
    def uses_canonical_image(self) -> bool:
        return bool(self.canonical_room_image_key)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or _utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at
