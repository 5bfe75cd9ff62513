"""Fact pipeline: extract, resolve and build the prompt pack for an asset."""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pydantic import ValidationError

from core.assets.store import AssetStore
from core.assets.types import ProductAsset

from .extractor import ExtractorOutputError, ProductFactsExtractor, format_issues
from .prompt_pack import PromptPackBuilder, is_pack_current
from .resolver import resolve_product_facts
from .types import ExtractionInput, PromptPack, validate_overrides

logger = logging.getLogger(__name__)


class PipelineNotReadyError(Exception):
    """The asset's facts could not be produced for this request."""

    def __init__(self, message: str, asset_id: str, cause: Optional[ExtractorOutputError] = None):
        super().__init__(message)
        self.asset_id = asset_id
        self.cause = cause


class InvalidOverridesError(ValueError):
    """Merchant overrides do not fit the fact schema; nothing was stored."""

    def __init__(self, asset_id: str, issues: List[str]):
        super().__init__(f"Invalid overrides for asset {asset_id}: {'; '.join(issues)}")
        self.asset_id = asset_id
        self.issues = issues


class FactPipeline:
    """Brings a product asset to the resolved-with-pack state on demand."""

    def __init__(
        self,
        extractor: ProductFactsExtractor,
        store: AssetStore,
        builder: Optional[PromptPackBuilder] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            extractor: LLM fact extractor
            store: Asset persistence
            builder: Prompt pack builder (default instance if omitted)
        """
        self.extractor = extractor
        self.store = store
        self.builder = builder or PromptPackBuilder()

    async def ensure_ready(
        self,
        asset: ProductAsset,
        trace_id: str = "",
    ) -> Tuple[dict, PromptPack]:
        """
        Return resolved facts and a current prompt pack, backfilling inline.

        Missing stages run in order (extract, resolve, build) and each result
        is persisted on the asset. A stored pack built from different facts is
        rebuilt under the next version.

        Args:
            asset: Product asset to prepare
            trace_id: Request correlation id for logs

        Returns:
            Tuple of (resolved_facts, prompt_pack)

        Raises:
            PipelineNotReadyError: If extraction fails
        """
        state = asset.pipeline_state
        extracted = asset.extracted_facts

        if extracted is None:
            logger.info(f"[{trace_id}] Backfilling facts for asset {asset.id}: extracting")
            extracted = await self._extract(asset, trace_id)

        resolved = asset.resolved_facts
        if resolved is None:
            resolved = resolve_product_facts(extracted, asset.merchant_overrides)
            await self.store.update_product_asset(asset.id, resolved_facts=resolved)
            logger.info(f"[{trace_id}] Resolved facts for asset {asset.id}")

        pack = asset.prompt_pack
        if not is_pack_current(pack, resolved):
            pack = await self._rebuild_pack(asset, resolved, trace_id)

        if state != "ready":
            logger.info(f"[{trace_id}] Asset {asset.id} advanced from {state} to ready")

        return resolved, pack

    async def apply_overrides(
        self,
        asset_id: str,
        overrides: Optional[dict],
        trace_id: str = "",
    ) -> Tuple[dict, PromptPack]:
        """
        Store merchant overrides, re-resolve and rebuild the pack.

        Overrides are checked against the fact schema before anything is
        written. The pack is rebuilt under the next version only when the
        resolved facts change.

        Args:
            asset_id: Asset to update
            overrides: New override document (replaces the old one)
            trace_id: Request correlation id for logs

        Returns:
            Tuple of (resolved_facts, prompt_pack)

        Raises:
            KeyError: If the asset does not exist
            InvalidOverridesError: If the overrides do not fit the fact schema
            PipelineNotReadyError: If the asset has never been extracted and extraction fails
        """
        asset = await self.store.get_product_asset(asset_id)
        if asset is None:
            raise KeyError(asset_id)

        try:
            overrides = validate_overrides(overrides)
        except ValidationError as e:
            issues = format_issues(e)
            logger.warning(f"[{trace_id}] Rejected overrides for asset {asset_id}: {issues}")
            raise InvalidOverridesError(asset_id, issues) from e

        await self.store.update_product_asset(
            asset_id,
            merchant_overrides=overrides,
            resolved_facts=None,
        )
        return await self.ensure_ready(asset, trace_id)

    async def _extract(self, asset: ProductAsset, trace_id: str) -> dict:
        source = ExtractionInput.from_dict(asset.source_product)
        if not source.title:
            message = "Product has no source data to extract facts from"
            await self.store.update_product_asset(
                asset.id, extraction_error={"code": "missing_source_product", "message": message}
            )
            raise PipelineNotReadyError(message, asset.id)

        try:
            extracted = await self.extractor.extract_product_facts(source, trace_id)
        except ExtractorOutputError as e:
            logger.error(f"[{trace_id}] Fact extraction failed for asset {asset.id}: {e.code}")
            await self.store.update_product_asset(asset.id, extraction_error=e.to_dict())
            raise PipelineNotReadyError(str(e), asset.id, cause=e) from e
        except Exception as e:
            logger.error(f"[{trace_id}] Extractor call failed for asset {asset.id}: {e}")
            await self.store.update_product_asset(
                asset.id,
                extraction_error={"code": "extractor_request_failed", "message": str(e)},
            )
            raise PipelineNotReadyError(str(e), asset.id) from e

        await self.store.update_product_asset(
            asset.id,
            extracted_facts=extracted,
            extraction_error=None,
            extracted_at=datetime.now(timezone.utc),
            resolved_facts=None,
        )
        return extracted

    async def _rebuild_pack(self, asset: ProductAsset, resolved: dict, trace_id: str) -> PromptPack:
        version = asset.prompt_pack_version + 1
        pack = self.builder.build(resolved, trace_id=trace_id, version=version)
        await self.store.update_product_asset(
            asset.id,
            prompt_pack=pack,
            prompt_pack_version=version,
        )
        return pack
