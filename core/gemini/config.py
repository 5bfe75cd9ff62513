"""Gemini configuration management."""

import os
from dataclasses import dataclass


@dataclass
class GeminiConfig:
    """Gemini API configuration for image generation and the Files API."""

    api_key: str = ""
    render_model: str = "gemini-2.5-flash-image"

    # Files API: uploaded files live ~48h; used when the API omits expiration
    file_validity_hours: int = 47
    # Handles this close to expiry are treated as expired
    file_safety_margin_minutes: int = 60

    @classmethod
    def from_env(cls) -> "GeminiConfig":
        """Load configuration from environment variables."""
        return cls(
            api_key=os.getenv("GEMINI_API_KEY", ""),
            render_model=os.getenv("SEE_IT_NOW_RENDER_MODEL", "gemini-2.5-flash-image"),
            file_validity_hours=int(os.getenv("GEMINI_FILE_VALIDITY_HOURS", "47")),
            file_safety_margin_minutes=int(os.getenv("GEMINI_FILE_SAFETY_MARGIN_MINUTES", "60")),
        )

    def is_configured(self) -> bool:
        """Check if a Gemini API key is available."""
        return bool(self.api_key)
