"""Gemini integration: image generation and the Files API handle cache."""

from .config import GeminiConfig
from .files_service import GeminiFilesService, RemoteFileHandle
from .image_service import GeminiImageService

__all__ = ["GeminiConfig", "GeminiFilesService", "GeminiImageService", "RemoteFileHandle"]
