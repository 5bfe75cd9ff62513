"""Shared fixtures and fakes for the render service tests."""

import asyncio
import io
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from core.assets import AssetStore, ProductAsset, RoomSession, Shop
from core.facts import FactPipeline, ProductFactsExtractor, build_prompt_pack, resolve_product_facts
from core.gemini import GeminiConfig, GeminiFilesService
from core.quota import QuotaConfig, QuotaService, RateLimiter
from core.render import (
    RenderConfig,
    RenderOrchestrator,
    RenderService,
    RunStore,
    VariantGenerator,
)

SHOP_DOMAIN = "test-shop.myshopify.com"


def make_image_bytes(fmt: str = "PNG", size=(64, 48), color=(200, 180, 160)) -> bytes:
    """Encode a small solid-color image."""
    output = io.BytesIO()
    Image.new("RGB", size, color).save(output, format=fmt)
    return output.getvalue()


# ============================================================================
# Fakes
# ============================================================================


class FakeStorage:
    """In-memory stand-in for the blob storage service."""

    def __init__(self):
        self.objects = {}
        self.uploads: List[str] = []
        self.downloads: List[str] = []
        self.fail_uploads = False

    async def upload_buffer(self, data, key, content_type, metadata=None):
        if self.fail_uploads:
            raise RuntimeError("storage unavailable")
        self.objects[key] = data
        self.uploads.append(key)
        return key

    async def download_buffer(self, key):
        self.downloads.append(key)
        return self.objects[key]

    async def get_signed_read_url(self, key, ttl_seconds=3600):
        return f"https://storage.test/{key}?se={ttl_seconds}"


class FakeImageService:
    """Image model stand-in; behaviours are consumed in call order.

    Behaviours: "ok" returns an image, "none" returns no image, "hang"
    sleeps past any test timeout, "error" raises.
    """

    model = "fake-image-model"

    def __init__(self, behaviours: Optional[List[str]] = None, delay: float = 0.0):
        self.behaviours = list(behaviours or [])
        self.delay = delay
        self.calls = []
        self.image = make_image_bytes("PNG")

    async def generate_composite(self, prompt, images):
        index = len(self.calls)
        self.calls.append({"prompt": prompt, "images": images})
        behaviour = self.behaviours[index] if index < len(self.behaviours) else "ok"

        if self.delay:
            await asyncio.sleep(self.delay)
        if behaviour == "hang":
            await asyncio.sleep(10)
        if behaviour == "error":
            raise RuntimeError("503 Service Unavailable")
        if behaviour == "none":
            return None
        return self.image


def make_files_client(expires_in: Optional[timedelta] = timedelta(hours=48)) -> MagicMock:
    """Gemini client mock whose Files API upload returns numbered handles."""
    client = MagicMock()
    counter = {"n": 0}

    async def upload(file, config):
        counter["n"] += 1
        n = counter["n"]
        return SimpleNamespace(
            uri=f"https://files.test/{n}",
            name=f"files/{n}",
            mime_type=config.mime_type,
            expiration_time=(datetime.now(timezone.utc) + expires_in) if expires_in else None,
        )

    client.aio.files.upload = AsyncMock(side_effect=upload)
    return client


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def sample_facts():
    """Valid extractor output for a floor mirror."""
    return {
        "identity": {
            "title": "Arched Floor Mirror",
            "product_kind": "floor mirror",
            "category_path": ["Home", "Mirrors"],
            "style_cues": ["minimal", "arched"],
        },
        "dimensions_cm": {"h": 180, "w": 80, "d": 4, "diameter": None, "thickness": None},
        "weight_class": "heavy",
        "deformability": "rigid",
        "placement": {
            "allowed_modes": [
                {"mode": "wall_mounted", "confidence": 0.6, "evidence": "description"},
                {"mode": "floor_leaning", "confidence": 0.9, "evidence": "title"},
            ],
            "support_surfaces": [{"surface": "floor", "confidence": 0.9, "evidence": "leaning"}],
            "constraints": ["Lean against a wall"],
            "do_not_do": ["place on a table"],
        },
        "orientation": {"constraint": "upright_only", "notes": None},
        "scale": {"priority": "prefer_true_to_dimensions", "notes": None},
        "relative_scale": {"class": "oversized", "evidence": "floor mirror"},
        "material_profile": {
            "primary": "mirror",
            "sheen": "gloss",
            "transparency": "opaque",
            "notes": None,
        },
        "render_behavior": {"cropping_policy": "never_crop_product", "interaction_rules": []},
        "affordances": ["reflects light"],
        "unknowns": [],
    }


@pytest.fixture
def source_product():
    """Storefront product data the extractor reads."""
    return {
        "title": "Arched Floor Mirror",
        "description": "A 180cm tall arched mirror that leans against the wall.",
        "product_type": "Mirror",
        "vendor": "Acme Home",
        "tags": ["mirror", "oversized"],
        "image_urls": ["https://cdn.test/mirror-1.jpg"],
    }


@pytest.fixture
def render_env(sample_facts):
    """A RenderService wired to fakes, plus handles on every collaborator."""
    store = AssetStore()
    storage = FakeStorage()
    image_service = FakeImageService()
    openai_service = MagicMock()
    openai_service.vision_json = AsyncMock(return_value=json.dumps(sample_facts))
    files_client = make_files_client()

    config = RenderConfig(
        variant_timeout_seconds=0.2,
        heartbeat_interval_seconds=0.05,
        progress_interval_seconds=0.05,
    )
    quota_config = QuotaConfig()
    run_store = RunStore()
    quota = QuotaService(store, quota_config)

    service = RenderService(
        store=store,
        pipeline=FactPipeline(ProductFactsExtractor(openai_service), store),
        files_service=GeminiFilesService(GeminiConfig(api_key="test-key"), client=files_client),
        storage=storage,
        orchestrator=RenderOrchestrator(VariantGenerator(image_service, storage, config), run_store),
        quota=quota,
        rate_limiter=RateLimiter(quota_config),
        config=config,
    )

    return SimpleNamespace(
        service=service,
        store=store,
        storage=storage,
        image_service=image_service,
        openai_service=openai_service,
        files_client=files_client,
        run_store=run_store,
        quota=quota,
        config=config,
    )


@pytest.fixture
def seed(render_env, sample_facts, source_product):
    """Coroutine function that registers a shop, a room session and a live asset."""

    async def _seed(with_facts: bool = True, daily_quota: int = 100, **asset_fields):
        store, storage = render_env.store, render_env.storage

        shop = await store.add_shop(Shop(shop_domain=SHOP_DOMAIN, daily_quota=daily_quota))

        storage.objects["rooms/room-1/canonical.jpg"] = make_image_bytes("JPEG", (96, 64))
        room = await store.add_room_session(RoomSession(
            shop_id=shop.id,
            id="room-1",
            canonical_room_image_key="rooms/room-1/canonical.jpg",
        ))

        storage.objects["products/prod-1/prepared.png"] = make_image_bytes("PNG", (48, 96))
        fields = {
            "shop_id": shop.id,
            "product_id": "prod-1",
            "prepared_image_key": "products/prod-1/prepared.png",
            "source_product": source_product,
        }
        if with_facts:
            resolved = resolve_product_facts(sample_facts)
            fields.update(
                extracted_facts=sample_facts,
                resolved_facts=resolved,
                prompt_pack=build_prompt_pack(resolved, version=1),
                prompt_pack_version=1,
            )
        fields.update(asset_fields)
        asset = await store.add_product_asset(ProductAsset(**fields))

        return SimpleNamespace(shop=shop, room=room, asset=asset)

    return _seed
