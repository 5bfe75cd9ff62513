"""Azure services integration for See It Now."""

from .config import AzureConfig
from .openai_service import AzureOpenAIService
from .storage_service import AzureBlobStorageService

__all__ = ["AzureConfig", "AzureOpenAIService", "AzureBlobStorageService"]
