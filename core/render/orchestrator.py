"""Render orchestrator: concurrent fan-out over a prompt pack's variants."""

import asyncio
import logging
import time
from typing import List, Optional

from core.facts.hashing import hash_json
from core.facts.types import PromptPackVariant

from .generator import VariantGenerator
from .run_store import RunStore
from .types import RenderInput, RenderRun, RenderRunResult, RunProgress, VariantOutcome

logger = logging.getLogger(__name__)


class RenderObserver:
    """Receives run lifecycle callbacks. Subclasses override what they need.

    Callbacks are awaited inside the run; anything they raise is logged and
    discarded so an observer can never fail a run.
    """

    async def on_run_started(self, run_id: str, total_variants: int) -> None:
        pass

    async def on_variant_completed(
        self,
        run_id: str,
        outcome: VariantOutcome,
        progress: RunProgress,
    ) -> None:
        pass


class RenderOrchestrator:
    """Runs every variant of a prompt pack concurrently and records the run."""

    def __init__(
        self,
        generator: VariantGenerator,
        run_store: Optional[RunStore] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            generator: Variant generator
            run_store: Optional run store instance (creates one if not provided)
        """
        self.generator = generator
        self.run_store = run_store or RunStore()

    async def run(
        self,
        render_input: RenderInput,
        observer: Optional[RenderObserver] = None,
    ) -> RenderRunResult:
        """
        Execute a render run to completion.

        All variants start at once and each is recorded as soon as it ends;
        one variant's failure never affects another. The run's terminal status
        is derived from the variant rows. Quota is left to the caller.

        Args:
            render_input: Handles, facts and prompt pack for the run
            observer: Optional lifecycle observer

        Returns:
            RenderRunResult with every variant outcome
        """
        pack = render_input.prompt_pack
        trace_id = render_input.trace_id

        run = RenderRun(
            shop_id=render_input.shop_id,
            product_asset_id=render_input.product_asset_id,
            room_session_id=render_input.room_session_id,
            trace_id=trace_id,
            prompt_pack_version=pack.version,
            model=self.generator.model,
            product_image_hash=render_input.product_image_hash,
            room_image_hash=render_input.room_image_hash,
            resolved_facts_hash=hash_json(render_input.resolved_facts),
            prompt_pack_hash=pack.content_hash,
        )
        self.run_store.create_run(run)
        self.run_store.start_run(run.id, [v.id for v in pack.variants])

        progress = RunProgress(total=pack.variant_count)
        start = time.monotonic()

        if observer:
            await self._notify(observer.on_run_started, run.id, pack.variant_count)

        async def run_variant(variant: PromptPackVariant) -> VariantOutcome:
            self.run_store.mark_variant_running(run.id, variant.id)
            variant_start = time.monotonic()

            try:
                outcome = await self.generator.generate_variant(
                    render_input.product_ref,
                    render_input.room_ref,
                    variant,
                    render_input.resolved_facts,
                    pack,
                    run.id,
                )
            except Exception as e:
                logger.error(f"[{trace_id}] Variant {variant.id} raised unexpectedly: {e}")
                outcome = VariantOutcome.failed(
                    variant.id,
                    int((time.monotonic() - variant_start) * 1000),
                    str(e),
                    "internal_error",
                )

            self.run_store.record_variant_result(run.id, outcome)
            progress.record(outcome)

            if observer:
                await self._notify(observer.on_variant_completed, run.id, outcome, progress)
            return outcome

        tasks = [asyncio.create_task(run_variant(v)) for v in pack.variants]
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except BaseException as e:
            # Cancelled from outside; close the records before propagating
            for task in tasks:
                task.cancel()
            self.run_store.abort_run(
                run.id,
                f"Render interrupted: {e!r}",
                int((time.monotonic() - start) * 1000),
            )
            raise

        outcomes: List[VariantOutcome] = []
        for variant, result in zip(pack.variants, results):
            if isinstance(result, BaseException):
                logger.error(f"[{trace_id}] Variant {variant.id} task failed: {result!r}")
                continue
            outcomes.append(result)

        duration_ms = int((time.monotonic() - start) * 1000)
        completed = self.run_store.complete_run(run.id, duration_ms)

        return RenderRunResult(
            run_id=run.id,
            status=completed.status,
            duration_ms=duration_ms,
            outcomes=outcomes,
        )

    async def _notify(self, callback, *args) -> None:
        try:
            await callback(*args)
        except Exception as e:
            logger.warning(f"Render observer callback failed: {e}")
