"""Azure OpenAI service for multimodal JSON extraction."""

import logging
from typing import Optional

from openai import AsyncAzureOpenAI

from .config import AzureConfig

logger = logging.getLogger(__name__)


class AzureOpenAIService:
    """Azure OpenAI chat service used for structured (JSON) extraction."""

    def __init__(self, config: AzureConfig):
        self.config = config
        self._client: Optional[AsyncAzureOpenAI] = None

    @property
    def client(self) -> AsyncAzureOpenAI:
        """Get or create Azure OpenAI client."""
        if self._client is None:
            if not self.config.is_openai_configured():
                raise ValueError("Azure OpenAI is not configured. Set AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY.")

            self._client = AsyncAzureOpenAI(
                azure_endpoint=self.config.openai_endpoint,
                api_key=self.config.openai_api_key,
                api_version=self.config.openai_api_version,
            )
        return self._client

    async def chat_completion(
        self,
        messages: list[dict],
        temperature: float = 0.2,
        max_tokens: int = 2000,
        json_mode: bool = False,
    ) -> str:
        """Get chat completion text from the extractor deployment."""
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(
                model=self.config.extractor_deployment,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs,
            )
            return response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"Chat completion failed: {e}")
            raise

    async def vision_json(
        self,
        system_prompt: str,
        user_text: str,
        image_urls: Optional[list[str]] = None,
        temperature: float = 0.2,
    ) -> str:
        """
        Send text plus image URLs and ask for a JSON object back.

        Args:
            system_prompt: Instructions for the model
            user_text: User message text
            image_urls: Publicly reachable image URLs attached after the text
            temperature: Sampling temperature

        Returns:
            Raw response text (expected to contain JSON)
        """
        content: list[dict] = [{"type": "text", "text": user_text}]
        for url in image_urls or []:
            content.append({
                "type": "image_url",
                "image_url": {"url": url},
            })

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": content},
        ]

        return await self.chat_completion(
            messages,
            temperature=temperature,
            json_mode=True,
        )
