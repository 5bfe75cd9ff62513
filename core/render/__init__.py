"""Render pipeline for multi-variant product-in-room composites.

This module provides:
- VariantGenerator: One model call per variant, classified into an outcome
- RenderOrchestrator: Concurrent fan-out over a prompt pack with run tracking
- RunStore: In-memory run and variant records with state machine checks
- SerializedEventSender / StreamingObserver: SSE progress transport
- RenderService: Shared control flow for the batch and streaming surfaces

Example usage:
    from core.render import RenderOrchestrator, VariantGenerator, RenderConfig

    generator = VariantGenerator(image_service, storage, RenderConfig())
    orchestrator = RenderOrchestrator(generator)
    result = await orchestrator.run(render_input)
    print(f"{result.status.value}: {result.success_variant_ids}")
"""

from .background import drain_background_tasks, spawn_detached
from .generator import (
    ContentPolicyError,
    RateLimitError,
    RenderException,
    VariantGenerator,
    classify_error,
)
from .orchestrator import RenderObserver, RenderOrchestrator
from .prompt_builder import assemble_final_prompt
from .run_store import RunStore
from .service import RenderRequest, RenderRequestError, RenderService, SelectionRequest
from .streaming import SSE_HEADERS, SerializedEventSender, StreamingObserver
from .types import (
    InvalidTransitionError,
    RenderConfig,
    RenderInput,
    RenderRun,
    RenderRunResult,
    RunProgress,
    RunStatus,
    VariantOutcome,
    VariantResult,
    VariantSelection,
    VariantStatus,
    aggregate_run_status,
)

__all__ = [
    # Types
    "RenderConfig",
    "RenderInput",
    "RenderRun",
    "RenderRunResult",
    "RunProgress",
    "RunStatus",
    "VariantOutcome",
    "VariantResult",
    "VariantSelection",
    "VariantStatus",
    "aggregate_run_status",
    # Pipeline
    "VariantGenerator",
    "RenderOrchestrator",
    "RenderObserver",
    "RenderService",
    "RenderRequest",
    "SelectionRequest",
    # Support classes
    "RunStore",
    "SerializedEventSender",
    "StreamingObserver",
    "SSE_HEADERS",
    "assemble_final_prompt",
    "spawn_detached",
    "drain_background_tasks",
    "classify_error",
    # Exceptions
    "RenderException",
    "ContentPolicyError",
    "RateLimitError",
    "InvalidTransitionError",
    "RenderRequestError",
]
