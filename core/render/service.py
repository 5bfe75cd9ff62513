"""Request service shared by the batch and streaming render surfaces.

Control flow for one request:
    admit    -> validation, rate limit, shop lookup, quota check
    prepare  -> room/product lookups, fact pipeline, remote file handles
    run      -> orchestrator fan-out
    finish   -> quota incremented once, signed URLs, response or terminal event
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from core.assets.store import AssetStore
from core.assets.types import ProductAsset, RoomSession, Shop
from core.azure.storage_service import AzureBlobStorageService
from core.facts.pipeline import FactPipeline, PipelineNotReadyError
from core.gemini.files_service import GeminiFilesService, RemoteFileHandle
from core.images import detect_mime_type, hash_buffer, prepare_image
from core.quota.quota import QuotaExceededError, QuotaService
from core.quota.rate_limit import RateLimiter

from .background import spawn_detached
from .orchestrator import RenderOrchestrator
from .streaming import SerializedEventSender, StreamingObserver, keepalive
from .types import RenderConfig, RenderInput, RenderRunResult, RunStatus, VariantSelection

logger = logging.getLogger(__name__)

# Runs that produced at least one image are charged
BILLABLE_STATUSES = {RunStatus.COMPLETE, RunStatus.PARTIAL}


@dataclass
class RenderRequest:
    """Identifiers a storefront sends to start a render."""

    shop_domain: str
    room_session_id: str
    product_id: str


@dataclass
class SelectionRequest:
    """Identifiers a storefront sends when the customer picks a variant."""

    shop_domain: str
    room_session_id: str
    product_id: str
    run_id: str
    variant_id: str


class RenderRequestError(Exception):
    """Request-level failure with a machine code and HTTP status."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        run_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.run_id = run_id

    def to_dict(self, trace_id: str) -> dict:
        """Body for a JSON error response."""
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "trace_id": trace_id,
            "run_id": self.run_id,
        }

    def to_event(self, trace_id: str) -> dict:
        """Payload for a stream ``error`` event."""
        return {
            "code": self.code,
            "message": self.message,
            "trace_id": trace_id,
            "run_id": self.run_id,
        }


class RenderService:
    """Runs render requests end to end."""

    def __init__(
        self,
        store: AssetStore,
        pipeline: FactPipeline,
        files_service: GeminiFilesService,
        storage: AzureBlobStorageService,
        orchestrator: RenderOrchestrator,
        quota: QuotaService,
        rate_limiter: RateLimiter,
        config: RenderConfig,
    ):
        self.store = store
        self.pipeline = pipeline
        self.files_service = files_service
        self.storage = storage
        self.orchestrator = orchestrator
        self.quota = quota
        self.rate_limiter = rate_limiter
        self.config = config

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def admit(self, request: RenderRequest, trace_id: str) -> Shop:
        """
        Validate a request and check limits before any work is done.

        No state is created when this raises.

        Args:
            request: Incoming identifiers
            trace_id: Request correlation id

        Returns:
            The requesting shop

        Raises:
            RenderRequestError: missing ids (400), rate limit (429),
                unknown shop (404), quota (429)
        """
        if not request.shop_domain:
            raise RenderRequestError("missing_shop", "shop is required", 400)
        if not request.room_session_id:
            raise RenderRequestError("missing_room_session", "room_session_id is required", 400)
        if not request.product_id:
            raise RenderRequestError("missing_product_id", "product_id is required", 400)

        if not self.rate_limiter.check_rate_limit(request.room_session_id):
            raise RenderRequestError(
                "rate_limit_exceeded",
                "Too many requests. Please wait a moment.",
                429,
            )

        shop = await self.store.get_shop_by_domain(request.shop_domain)
        if shop is None:
            raise RenderRequestError("shop_not_found", f"Shop {request.shop_domain} not found", 404)

        try:
            await self.quota.check_quota(shop.id, "render", 1)
        except QuotaExceededError as e:
            raise RenderRequestError("quota_exceeded", str(e), 429) from e

        logger.info(
            f"[{trace_id}] Admitted render for {shop.shop_domain}: "
            f"room={request.room_session_id} product={request.product_id}"
        )
        return shop

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    async def prepare(self, shop: Shop, request: RenderRequest, trace_id: str) -> RenderInput:
        """
        Load records, make facts ready and ensure both remote file handles.

        Args:
            shop: Admitted shop
            request: Incoming identifiers
            trace_id: Request correlation id

        Returns:
            RenderInput for the orchestrator

        Raises:
            RenderRequestError: For any lookup, pipeline or upload failure
        """
        room = await self.store.get_room_session(request.room_session_id)
        if room is None or room.shop_id != shop.id:
            raise RenderRequestError("room_not_found", "Room session not found", 404)
        if room.is_expired():
            raise RenderRequestError("room_session_expired", "Room session has expired", 410)

        asset = await self.store.find_product_asset(shop.id, request.product_id)
        if asset is None or not asset.is_renderable:
            raise RenderRequestError(
                "product_not_enabled",
                "This product is not enabled for See It Now",
                404,
            )

        try:
            resolved_facts, prompt_pack = await self.pipeline.ensure_ready(asset, trace_id)
        except PipelineNotReadyError as e:
            raise RenderRequestError(
                "pipeline_not_ready",
                f"Product facts could not be extracted, please retry later: {e}",
                422,
            ) from e

        if not room.room_image_key:
            raise RenderRequestError("no_room_image", "Room session has no image", 400)
        if not asset.prepared_image_key:
            raise RenderRequestError(
                "no_prepared_product_image",
                "Product has no prepared image",
                422,
            )

        hashes: Dict[str, str] = {}
        try:
            product_ref, room_ref = await asyncio.gather(
                self._ensure_product_handle(asset, hashes, trace_id),
                self._ensure_room_handle(room, hashes, trace_id),
            )
        except Exception as e:
            logger.error(f"[{trace_id}] Could not prepare images for generation: {e}")
            raise RenderRequestError(
                "image_upload_failed",
                f"Could not prepare images for generation: {e}",
                502,
            ) from e

        return RenderInput(
            shop_id=shop.id,
            trace_id=trace_id,
            product_asset_id=asset.id,
            room_session_id=room.id,
            product_ref=product_ref,
            room_ref=room_ref,
            resolved_facts=resolved_facts,
            prompt_pack=prompt_pack,
            product_image_hash=hashes.get("product"),
            room_image_hash=hashes.get("room"),
        )

    async def _ensure_product_handle(
        self,
        asset: ProductAsset,
        hashes: Dict[str, str],
        trace_id: str,
    ) -> RemoteFileHandle:
        key = asset.prepared_image_key

        async def load() -> bytes:
            raw = await self.storage.download_buffer(key)
            prepared = await asyncio.to_thread(
                prepare_image, raw, "PNG", self.config.max_image_dimension
            )
            hashes["product"] = prepared.hash
            return prepared.data

        handle = await self.files_service.ensure_remote_handle(
            asset.gemini_file_uri,
            asset.gemini_file_expires_at,
            load,
            "image/png",
            f"product-{asset.product_id}.png",
            trace_id,
            existing_source_key=asset.gemini_file_source_key,
            source_key=key,
        )

        if handle.refreshed:
            spawn_detached(
                self.store.update_product_asset(
                    asset.id,
                    gemini_file_uri=handle.uri,
                    gemini_file_expires_at=handle.expires_at,
                    gemini_file_source_key=key,
                ),
                f"persist product file handle for asset {asset.id}",
            )
        return handle

    async def _ensure_room_handle(
        self,
        room: RoomSession,
        hashes: Dict[str, str],
        trace_id: str,
    ) -> RemoteFileHandle:
        key = room.room_image_key

        async def load() -> bytes:
            raw = await self.storage.download_buffer(key)
            # Canonical images are already normalised JPEGs; send them untouched
            if room.uses_canonical_image and detect_mime_type(raw) == "image/jpeg":
                data = raw
            else:
                prepared = await asyncio.to_thread(
                    prepare_image, raw, "JPEG", self.config.max_image_dimension
                )
                data = prepared.data
            hashes["room"] = hash_buffer(data)
            return data

        handle = await self.files_service.ensure_remote_handle(
            room.gemini_file_uri,
            room.gemini_file_expires_at,
            load,
            "image/jpeg",
            f"room-{room.id}.jpg",
            trace_id,
            existing_source_key=room.gemini_file_source_key,
            source_key=key,
        )

        if handle.refreshed:
            spawn_detached(
                self.store.update_room_session(
                    room.id,
                    gemini_file_uri=handle.uri,
                    gemini_file_expires_at=handle.expires_at,
                    gemini_file_source_key=key,
                ),
                f"persist room file handle for session {room.id}",
            )
        return handle

    # ------------------------------------------------------------------
    # Surfaces
    # ------------------------------------------------------------------

    async def render_batch(self, request: RenderRequest, trace_id: str) -> dict:
        """
        Run a render and return every successful variant at once.

        Args:
            request: Incoming identifiers
            trace_id: Request correlation id

        Returns:
            Response body with run id, status, variants and duration

        Raises:
            RenderRequestError: On admission/preparation failure, or
                all_variants_failed (422) when nothing succeeded
        """
        shop = await self.admit(request, trace_id)
        render_input = await self.prepare(shop, request, trace_id)

        result = await self.orchestrator.run(render_input)
        await self._record_usage(shop, result, trace_id)

        if not result.successful:
            raise RenderRequestError(
                "all_variants_failed",
                "All variants failed to generate",
                422,
                run_id=result.run_id,
            )

        urls = await self._sign_outputs(result)
        return {
            "run_id": result.run_id,
            "status": result.status.value,
            "variants": [
                {
                    "id": outcome.variant_id,
                    "image_url": urls[outcome.variant_id],
                    "latency_ms": outcome.latency_ms,
                }
                for outcome in result.successful
                if urls.get(outcome.variant_id)
            ],
            "duration_ms": result.duration_ms,
            "trace_id": trace_id,
        }

    async def render_stream(
        self,
        shop: Shop,
        request: RenderRequest,
        trace_id: str,
        sender: SerializedEventSender,
    ) -> Optional[RenderRunResult]:
        """
        Run a render reporting through a stream.

        Runs to completion even if the client goes away; only writes stop.
        Exactly one terminal event is sent.

        Args:
            shop: Admitted shop
            request: Incoming identifiers
            trace_id: Request correlation id
            sender: Stream channel

        Returns:
            The run result, or None if the run never started
        """
        observer = StreamingObserver(sender, self.storage, self.config)
        pulse = asyncio.create_task(
            keepalive(
                sender,
                observer,
                self.config.heartbeat_interval_seconds,
                self.config.progress_interval_seconds,
            )
        )

        try:
            render_input = await self.prepare(shop, request, trace_id)
            result = await self.orchestrator.run(render_input, observer)
            await self._record_usage(shop, result, trace_id)

            if not result.successful:
                raise RenderRequestError(
                    "all_variants_failed",
                    "All variants failed to generate",
                    422,
                    run_id=result.run_id,
                )

            sender.send("complete", {
                "run_id": result.run_id,
                "status": result.status.value,
                "duration_ms": result.duration_ms,
                "success_variant_ids": result.success_variant_ids,
            })
            return result

        except RenderRequestError as e:
            logger.warning(f"[{trace_id}] Stream render failed: {e.code} - {e.message}")
            sender.send("error", e.to_event(trace_id))
        except Exception as e:
            logger.error(f"[{trace_id}] Stream render crashed: {e}")
            sender.send("error", {
                "code": "generation_failed",
                "message": str(e),
                "trace_id": trace_id,
                "run_id": observer.run_id,
            })
        finally:
            pulse.cancel()
            sender.close()

        return None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_variant(self, request: SelectionRequest, trace_id: str) -> dict:
        """
        Record which variant of a finished run the customer picked.

        The image comes from the stored variant row; a URL held by the
        client is never trusted.

        Args:
            request: Run, variant and the shop/product/room it belongs to
            trace_id: Request correlation id

        Returns:
            Selection id with a freshly signed URL for the chosen image

        Raises:
            RenderRequestError: missing ids (400), unknown shop, run or
                variant (404), variant without an image (422)
        """
        required = (
            ("missing_shop", request.shop_domain, "shop"),
            ("missing_product_id", request.product_id, "product_id"),
            ("missing_room_session", request.room_session_id, "room_session_id"),
            ("missing_run_id", request.run_id, "run_id"),
            ("missing_variant_id", request.variant_id, "variant_id"),
        )
        for code, value, name in required:
            if not value:
                raise RenderRequestError(code, f"{name} is required", 400)

        shop = await self.store.get_shop_by_domain(request.shop_domain)
        if shop is None:
            raise RenderRequestError("shop_not_found", f"Shop {request.shop_domain} not found", 404)

        run_store = self.orchestrator.run_store
        run = run_store.get_run(request.run_id)
        asset = await self.store.get_product_asset(run.product_asset_id) if run else None
        if (
            run is None
            or asset is None
            or run.shop_id != shop.id
            or asset.product_id != request.product_id
            or run.room_session_id != request.room_session_id
        ):
            raise RenderRequestError("run_not_found", "Run not found", 404)

        variant = run.get_variant(request.variant_id)
        if variant is None:
            raise RenderRequestError("variant_not_found", "Variant not found", 404, run_id=run.id)
        if not variant.image_key:
            raise RenderRequestError(
                "variant_missing_image", "Variant has no stored image", 422, run_id=run.id
            )

        selection = run_store.record_selection(
            VariantSelection(
                shop_id=shop.id,
                product_asset_id=asset.id,
                room_session_id=run.room_session_id,
                run_id=run.id,
                variant_id=variant.variant_id,
                image_key=variant.image_key,
                trace_id=trace_id,
            )
        )

        try:
            image_url = await self.storage.get_signed_read_url(
                variant.image_key, self.config.signed_url_ttl_seconds
            )
        except Exception as e:
            logger.warning(f"[{trace_id}] Could not sign selected image {variant.image_key}: {e}")
            image_url = None

        return {
            "ok": True,
            "selection_id": selection.id,
            "run_id": run.id,
            "variant_id": variant.variant_id,
            "image_url": image_url,
            "trace_id": trace_id,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _record_usage(self, shop: Shop, result: RenderRunResult, trace_id: str) -> None:
        """Charge one render per billable run, once the fan-out has finished."""
        if result.status not in BILLABLE_STATUSES:
            logger.info(f"[{trace_id}] Run {result.run_id} {result.status.value}; not charged")
            return
        await self.quota.increment_quota(shop.id, "render", 1)

    async def _sign_outputs(self, result: RenderRunResult) -> Dict[str, str]:
        """Mint read URLs for successful variants, keyed by variant id."""
        outcomes = result.successful
        urls = await asyncio.gather(
            *[
                self.storage.get_signed_read_url(o.image_key, self.config.signed_url_ttl_seconds)
                for o in outcomes
            ],
            return_exceptions=True,
        )

        signed: Dict[str, str] = {}
        for outcome, url in zip(outcomes, urls):
            if isinstance(url, Exception):
                logger.warning(f"Run {result.run_id}: could not sign {outcome.image_key}: {url}")
                continue
            signed[outcome.variant_id] = url
        return signed
