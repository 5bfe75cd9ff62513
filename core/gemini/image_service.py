"""Gemini image model client for product-in-room composites."""

import logging
from typing import List, Optional

from google import genai
from google.genai import types

from .config import GeminiConfig
from .files_service import RemoteFileHandle

logger = logging.getLogger(__name__)


class GeminiImageService:
    """Calls the image model with file references plus a text prompt."""

    def __init__(self, config: GeminiConfig, client: Optional[genai.Client] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> genai.Client:
        """Get or create the Gemini client."""
        if self._client is None:
            if not self.config.is_configured():
                raise ValueError("Gemini is not configured. Set GEMINI_API_KEY.")
            self._client = genai.Client(api_key=self.config.api_key)
        return self._client

    @property
    def model(self) -> str:
        return self.config.render_model

    async def generate_composite(
        self,
        prompt: str,
        images: List[RemoteFileHandle],
    ) -> Optional[bytes]:
        """
        Generate one image from referenced input images and a prompt.

        Image parts are sent in the given order, followed by the prompt. The
        model takes its output aspect ratio from the last image.

        Args:
            prompt: Final assembled prompt
            images: File handles in content order

        Returns:
            Image bytes, or None when the response carries no image
        """
        parts = [
            types.Part.from_uri(file_uri=image.uri, mime_type=image.mime_type)
            for image in images
        ]
        parts.append(types.Part.from_text(text=prompt))

        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=[types.Content(role="user", parts=parts)],
            config=types.GenerateContentConfig(
                response_modalities=["TEXT", "IMAGE"],
            ),
        )

        # Extract generated image from response
        content = response.candidates[0].content if response.candidates else None
        if content is not None:
            for part in content.parts or []:
                if part.inline_data and part.inline_data.data:
                    return part.inline_data.data

        logger.warning(f"No image in {self.model} response")
        return None
