"""Health check routes."""

from fastapi import APIRouter

from core.azure import AzureConfig
from core.gemini import GeminiConfig

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@router.get("/health/services")
async def services_status():
    """Report which external services are configured."""
    azure_config = AzureConfig.from_env()
    gemini_config = GeminiConfig.from_env()

    return {
        "gemini_configured": gemini_config.is_configured(),
        "render_model": gemini_config.render_model,
        "openai_configured": azure_config.is_openai_configured(),
        "storage_configured": azure_config.is_storage_configured(),
    }
