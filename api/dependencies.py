"""Process-wide service singletons, built lazily from the environment."""

import logging
from typing import Optional

from fastapi import HTTPException
from google import genai

from core.assets import AssetStore
from core.azure import AzureBlobStorageService, AzureConfig, AzureOpenAIService
from core.facts import FactPipeline, ProductFactsExtractor
from core.gemini import GeminiConfig, GeminiFilesService, GeminiImageService
from core.quota import QuotaConfig, QuotaService, RateLimiter
from core.render import (
    RenderConfig,
    RenderOrchestrator,
    RenderService,
    RunStore,
    VariantGenerator,
)

logger = logging.getLogger(__name__)

_asset_store = AssetStore()
_run_store = RunStore()
_fact_pipeline: Optional[FactPipeline] = None
_render_service: Optional[RenderService] = None


def get_asset_store() -> AssetStore:
    return _asset_store


def get_run_store() -> RunStore:
    return _run_store


def get_fact_pipeline() -> FactPipeline:
    """Get or create the fact pipeline."""
    global _fact_pipeline
    if _fact_pipeline is None:
        azure_config = AzureConfig.from_env()
        extractor = ProductFactsExtractor(AzureOpenAIService(azure_config))
        _fact_pipeline = FactPipeline(extractor, _asset_store)
    return _fact_pipeline


def get_render_service() -> RenderService:
    """Get or create the render service; 503 if required services are not configured."""
    global _render_service
    if _render_service is None:
        azure_config = AzureConfig.from_env()
        gemini_config = GeminiConfig.from_env()

        if not gemini_config.is_configured() or not azure_config.is_storage_configured():
            logger.warning("Render service unavailable: Gemini or Azure Storage not configured")
            raise HTTPException(
                status_code=503,
                detail="Render service not configured. Set GEMINI_API_KEY and Azure Storage credentials.",
            )

        render_config = RenderConfig.from_env()
        quota_config = QuotaConfig.from_env()

        # One long-lived client shared by generation and the Files API
        client = genai.Client(api_key=gemini_config.api_key)
        storage = AzureBlobStorageService(azure_config)
        generator = VariantGenerator(
            GeminiImageService(gemini_config, client=client),
            storage,
            render_config,
        )

        _render_service = RenderService(
            store=_asset_store,
            pipeline=get_fact_pipeline(),
            files_service=GeminiFilesService(gemini_config, client=client),
            storage=storage,
            orchestrator=RenderOrchestrator(generator, _run_store),
            quota=QuotaService(_asset_store, quota_config),
            rate_limiter=RateLimiter(quota_config),
            config=render_config,
        )
        logger.info(f"Render service ready (model={gemini_config.render_model})")

    return _render_service
