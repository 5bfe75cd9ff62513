"""Variant generator: one model call per variant, classified into an outcome."""

import asyncio
import logging
import time

from core.azure.storage_service import AzureBlobStorageService
from core.facts.types import PromptPack, PromptPackVariant
from core.gemini.files_service import RemoteFileHandle
from core.gemini.image_service import GeminiImageService
from core.images import hash_buffer, to_jpeg

from .prompt_builder import assemble_final_prompt
from .types import RenderConfig, VariantOutcome

logger = logging.getLogger(__name__)


class RenderException(Exception):
    """Base exception for generation errors."""

    def __init__(self, message: str, error_type: str = "unknown", retryable: bool = False):
        super().__init__(message)
        self.error_type = error_type
        self.retryable = retryable


class ContentPolicyError(RenderException):
    """Content policy / safety block."""

    def __init__(self, message: str):
        super().__init__(message, error_type="content_policy", retryable=False)


class RateLimitError(RenderException):
    """Model provider rate limit."""

    def __init__(self, message: str):
        super().__init__(message, error_type="rate_limit", retryable=True)


def classify_error(error: Exception) -> RenderException:
    """
    Map a provider exception onto the RenderException hierarchy.

    Args:
        error: Exception raised by the model client

    Returns:
        RenderException carrying an error_type
    """
    if isinstance(error, RenderException):
        return error

    error_str = str(error).lower()

    if "safety" in error_str or "blocked" in error_str or "content_policy" in error_str:
        return ContentPolicyError(f"Content policy violation: {error}")
    elif "429" in error_str or "resource_exhausted" in error_str or "rate" in error_str:
        return RateLimitError(f"Rate limit exceeded: {error}")
    elif "500" in error_str or "502" in error_str or "503" in error_str:
        return RenderException(str(error), error_type="server_error", retryable=True)
    return RenderException(str(error), error_type="unknown", retryable=False)


class VariantGenerator:
    """Generates and stores one composite image per prompt pack variant."""

    def __init__(
        self,
        image_service: GeminiImageService,
        storage: AzureBlobStorageService,
        config: RenderConfig,
    ):
        """
        Initialize the variant generator.

        Args:
            image_service: Shared image model client
            storage: Object storage for output images
            config: Render configuration (timeout, JPEG quality, key prefix)
        """
        self.image_service = image_service
        self.storage = storage
        self.config = config

    @property
    def model(self) -> str:
        return self.image_service.model

    async def generate_variant(
        self,
        product_ref: RemoteFileHandle,
        room_ref: RemoteFileHandle,
        variant: PromptPackVariant,
        resolved_facts: dict,
        prompt_pack: PromptPack,
        run_id: str,
    ) -> VariantOutcome:
        """
        Generate one variant.

        The product image goes first and the room image last so the output
        keeps the room's aspect ratio. Errors never escape; they become a
        failed or timeout outcome. Task cancellation still propagates.

        Args:
            product_ref: Remote handle of the prepared product image
            room_ref: Remote handle of the room image
            variant: Variant to render
            resolved_facts: Resolved product facts
            prompt_pack: Pack supplying the shared product context
            run_id: Owning run (used for the output key)

        Returns:
            VariantOutcome with status success, failed or timeout
        """
        title = (resolved_facts.get("identity") or {}).get("title", "product")
        prompt = assemble_final_prompt(prompt_pack.product_context, variant.prompt)
        start = time.monotonic()

        logger.info(f"Run {run_id}: generating variant {variant.id} for {title}")
        logger.debug(f"Prompt: {prompt[:200]}...")

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            image = await asyncio.wait_for(
                self.image_service.generate_composite(prompt, [product_ref, room_ref]),
                timeout=self.config.variant_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return VariantOutcome.timeout(
                variant.id,
                elapsed_ms(),
                f"Generation exceeded {self.config.variant_timeout_seconds:g}s",
            )
        except Exception as e:
            error = classify_error(e)
            return VariantOutcome.failed(variant.id, elapsed_ms(), str(error), error.error_type)

        if not image:
            return VariantOutcome.failed(variant.id, elapsed_ms(), "No image in model response", "no_image")

        key = self.config.output_key(run_id, variant.id)
        try:
            jpeg = await asyncio.to_thread(to_jpeg, image, self.config.jpeg_quality)
            await self.storage.upload_buffer(
                jpeg,
                key,
                "image/jpeg",
                metadata={"run_id": run_id, "variant_id": variant.id},
            )
        except Exception as e:
            return VariantOutcome.failed(
                variant.id, elapsed_ms(), f"Failed to store output: {e}", "storage_error"
            )

        return VariantOutcome.success(variant.id, elapsed_ms(), key, hash_buffer(jpeg))
