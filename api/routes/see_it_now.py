"""See It Now routes: batch and streaming multi-variant renders."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, field_validator

from core.facts import FactPipeline, InvalidOverridesError, PipelineNotReadyError
from core.render import (
    SSE_HEADERS,
    RenderRequest,
    RenderRequestError,
    RenderService,
    RunStore,
    SelectionRequest,
    SerializedEventSender,
    spawn_detached,
)

from ..dependencies import get_fact_pipeline, get_render_service, get_run_store

logger = logging.getLogger(__name__)

router = APIRouter()


class RenderRequestBody(BaseModel):
    """Batch render request parameters."""

    shop: str = ""
    room_session_id: str = ""
    product_id: str = ""

    @field_validator("shop", "room_session_id", "product_id")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        """Trim identifiers so blank values count as missing."""
        return v.strip()


class VariantResponse(BaseModel):
    """One successful variant."""

    id: str
    image_url: str
    latency_ms: int


class BatchRenderResponse(BaseModel):
    """Batch render response."""

    run_id: str
    status: str
    variants: list[VariantResponse]
    duration_ms: int
    trace_id: str


class SelectVariantBody(BaseModel):
    """Variant pick from a finished run."""

    shop: str = ""
    room_session_id: str = ""
    product_id: str = ""
    run_id: str = ""
    variant_id: str = ""

    @field_validator("*")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()


class OverridesRequest(BaseModel):
    """Merchant overrides; keys set to null or "" reset to defaults."""

    overrides: Optional[dict] = None


def get_trace_id(request: Request) -> str:
    """Use the caller's X-Request-ID or mint a new one."""
    return request.headers.get("x-request-id") or uuid.uuid4().hex


def error_response(error: RenderRequestError, trace_id: str) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict(trace_id))


@router.post("/render", response_model=BatchRenderResponse)
async def render_batch(
    body: RenderRequestBody,
    request: Request,
    service: RenderService = Depends(get_render_service),
):
    """Render every variant and return the successful ones together."""
    trace_id = get_trace_id(request)
    render_request = RenderRequest(
        shop_domain=body.shop,
        room_session_id=body.room_session_id,
        product_id=body.product_id,
    )

    try:
        return await service.render_batch(render_request, trace_id)
    except RenderRequestError as e:
        logger.warning(f"[{trace_id}] Batch render rejected: {e.code} - {e.message}")
        return error_response(e, trace_id)


@router.get("/stream")
async def render_stream(
    request: Request,
    shop: str = "",
    room_session_id: str = "",
    product_id: str = "",
    service: RenderService = Depends(get_render_service),
):
    """Render every variant, streaming progress as Server-Sent Events.

    Admission failures are returned as plain HTTP errors before the stream
    opens; everything after that is reported as an ``error`` event.
    """
    trace_id = get_trace_id(request)
    render_request = RenderRequest(
        shop_domain=shop.strip(),
        room_session_id=room_session_id.strip(),
        product_id=product_id.strip(),
    )

    try:
        shop_record = await service.admit(render_request, trace_id)
    except RenderRequestError as e:
        logger.warning(f"[{trace_id}] Stream render rejected: {e.code} - {e.message}")
        return error_response(e, trace_id)

    sender = SerializedEventSender()
    sender.comment("connected")

    # Detached so a client disconnect never cancels the run
    spawn_detached(
        service.render_stream(shop_record, render_request, trace_id, sender),
        f"stream render {trace_id}",
    )

    return StreamingResponse(
        sender.frames(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Request-ID": trace_id},
    )


@router.get("/runs/{run_id}")
async def get_render_run(run_id: str, run_store: RunStore = Depends(get_run_store)):
    """Get a render run with its variant results."""
    run = run_store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Render run not found")
    return run.to_dict()


@router.put("/products/{asset_id}/overrides")
async def update_product_overrides(
    asset_id: str,
    body: OverridesRequest,
    request: Request,
    pipeline: FactPipeline = Depends(get_fact_pipeline),
):
    """Replace a product's merchant overrides and rebuild its prompt pack."""
    trace_id = get_trace_id(request)

    try:
        resolved, pack = await pipeline.apply_overrides(asset_id, body.overrides, trace_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Product asset not found")
    except InvalidOverridesError as e:
        raise HTTPException(
            status_code=422,
            detail={"error": "invalid_overrides", "issues": e.issues, "trace_id": trace_id},
        )
    except PipelineNotReadyError as e:
        raise HTTPException(status_code=422, detail=f"pipeline_not_ready: {e}")

    logger.info(f"[{trace_id}] Updated overrides for asset {asset_id}; pack v{pack.version}")
    return {
        "asset_id": asset_id,
        "resolved_facts": resolved,
        "prompt_pack_version": pack.version,
        "variant_count": pack.variant_count,
    }


@router.post("/select")
async def select_variant(
    body: SelectVariantBody,
    request: Request,
    service: RenderService = Depends(get_render_service),
):
    """Record the variant the customer picked, resolved against the stored run."""
    trace_id = get_trace_id(request)
    selection_request = SelectionRequest(
        shop_domain=body.shop,
        room_session_id=body.room_session_id,
        product_id=body.product_id,
        run_id=body.run_id,
        variant_id=body.variant_id,
    )

    try:
        return await service.select_variant(selection_request, trace_id)
    except RenderRequestError as e:
        logger.warning(f"[{trace_id}] Selection rejected: {e.code} - {e.message}")
        return error_response(e, trace_id)
