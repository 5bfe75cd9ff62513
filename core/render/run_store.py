"""Run store for tracking render runs and their variant results in memory."""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .types import (
    RenderRun,
    RunStatus,
    VariantOutcome,
    VariantResult,
    VariantSelection,
    VariantStatus,
    aggregate_run_status,
    transition_run_status,
    transition_variant_status,
    truncate_error,
)

logger = logging.getLogger(__name__)


class RunStore:
    """In-memory persistence for render runs.

    Every status write is validated against the run and variant state
    machines; illegal moves raise InvalidTransitionError.
    """

    def __init__(self):
        """Initialize the run store."""
        self._runs: Dict[str, RenderRun] = {}
        self._selections: Dict[str, VariantSelection] = {}
        self._lock = threading.Lock()

    def create_run(self, run: RenderRun) -> RenderRun:
        """
        Persist a new run in the pending state.

        Args:
            run: Run with provenance fields filled in

        Returns:
            The stored run
        """
        with self._lock:
            self._runs[run.id] = run

        logger.info(f"[{run.trace_id}] Created render run {run.id} for asset {run.product_asset_id}")
        return run

    def get_run(self, run_id: str) -> Optional[RenderRun]:
        """
        Get a run by ID.

        Args:
            run_id: Run ID to look up

        Returns:
            RenderRun if found, None otherwise
        """
        with self._lock:
            return self._runs.get(run_id)

    def start_run(self, run_id: str, variant_ids: List[str]) -> RenderRun:
        """
        Move a run to running and create one pending row per variant.

        Args:
            run_id: Run to start
            variant_ids: Variant ids from the prompt pack

        Returns:
            The updated run

        Raises:
            KeyError: If the run does not exist
            InvalidTransitionError: If the run is not pending
        """
        with self._lock:
            run = self._require(run_id)
            run.status = transition_run_status(run.status, RunStatus.RUNNING)
            run.variants = [VariantResult(variant_id=v) for v in variant_ids]

        logger.info(f"[{run.trace_id}] Started render run {run_id} with {len(variant_ids)} variants")
        return run

    def mark_variant_running(self, run_id: str, variant_id: str) -> VariantResult:
        """Move a pending variant to running."""
        with self._lock:
            variant = self._require_variant(run_id, variant_id)
            variant.status = transition_variant_status(variant.status, VariantStatus.RUNNING)
            return variant

    def record_variant_result(self, run_id: str, outcome: VariantOutcome) -> VariantResult:
        """
        Write a variant's terminal outcome.

        Args:
            run_id: Owning run
            outcome: Generator outcome

        Returns:
            The updated variant row

        Raises:
            InvalidTransitionError: If the variant is already terminal
        """
        with self._lock:
            variant = self._require_variant(run_id, outcome.variant_id)
            variant.status = transition_variant_status(variant.status, outcome.status)
            variant.latency_ms = outcome.latency_ms
            variant.completed_at = datetime.now(timezone.utc)
            if outcome.succeeded:
                variant.image_key = outcome.image_key
                variant.image_hash = outcome.image_hash
            else:
                variant.error_code = outcome.error_code
                variant.error_message = outcome.error_message
            run = self._runs[run_id]

        if outcome.succeeded:
            logger.info(
                f"Run {run_id}: variant {outcome.variant_id} succeeded in {outcome.latency_ms}ms "
                f"({run.success_count}/{run.total_variants})"
            )
        else:
            logger.warning(
                f"Run {run_id}: variant {outcome.variant_id} {outcome.status.value} - "
                f"{outcome.error_message}"
            )
        return variant

    def complete_run(self, run_id: str, duration_ms: int) -> RenderRun:
        """
        Move a run to its terminal status, derived from its variant rows.

        Args:
            run_id: Run to complete
            duration_ms: Wall-clock duration of the fan-out

        Returns:
            The completed run
        """
        with self._lock:
            run = self._require(run_id)
            status = aggregate_run_status([v.status for v in run.variants])
            run.status = transition_run_status(run.status, status)
            run.total_duration_ms = duration_ms
            run.completed_at = datetime.now(timezone.utc)

        logger.info(
            f"[{run.trace_id}] Completed render run {run_id} as {run.status.value}: "
            f"{run.success_count} succeeded, {run.fail_count} failed, "
            f"{run.timeout_count} timed out in {duration_ms}ms"
        )
        return run

    def abort_run(self, run_id: str, error_message: str, duration_ms: int) -> Optional[RenderRun]:
        """
        Close a run whose fan-out was interrupted before every variant ended.

        Variants still pending or running are marked failed with error code
        ``interrupted``; the run then takes the status its variant rows give it.

        Args:
            run_id: Run to close
            error_message: Reason recorded on the unfinished variants
            duration_ms: Wall-clock time until the interruption

        Returns:
            The closed run, or None if not found or already terminal
        """
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.is_complete:
                return None

            now = datetime.now(timezone.utc)
            for variant in run.variants:
                if variant.is_terminal:
                    continue
                variant.status = transition_variant_status(variant.status, VariantStatus.FAILED)
                variant.error_code = "interrupted"
                variant.error_message = truncate_error(error_message)
                variant.completed_at = now

            status = aggregate_run_status([v.status for v in run.variants])
            run.status = transition_run_status(run.status, status)
            run.total_duration_ms = duration_ms
            run.completed_at = now

        logger.error(
            f"[{run.trace_id}] Render run {run_id} interrupted as {run.status.value}: {error_message}"
        )
        return run

    def record_selection(self, selection: VariantSelection) -> VariantSelection:
        """
        Store a customer's variant pick.

        Args:
            selection: Selection resolved against a stored variant row

        Returns:
            The stored selection

        Raises:
            KeyError: If the run or variant does not exist
        """
        with self._lock:
            self._require_variant(selection.run_id, selection.variant_id)
            self._selections[selection.id] = selection

        logger.info(
            f"[{selection.trace_id}] Recorded selection of variant {selection.variant_id} "
            f"for run {selection.run_id}"
        )
        return selection

    def list_selections(self, run_id: Optional[str] = None) -> List[VariantSelection]:
        """List selections, oldest first, optionally for one run."""
        with self._lock:
            selections = list(self._selections.values())

        if run_id:
            selections = [s for s in selections if s.run_id == run_id]
        selections.sort(key=lambda s: s.created_at)
        return selections

    def list_runs(
        self,
        shop_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
    ) -> List[RenderRun]:
        """
        List all runs, optionally filtered.

        Args:
            shop_id: Filter by shop
            status: Filter by status

        Returns:
            Matching runs, newest first
        """
        with self._lock:
            runs = list(self._runs.values())

        if shop_id:
            runs = [r for r in runs if r.shop_id == shop_id]

        if status:
            runs = [r for r in runs if r.status == status]

        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs

    def delete_run(self, run_id: str) -> bool:
        """
        Delete a run with its variant rows and selections.

        Args:
            run_id: Run ID to delete

        Returns:
            True if deleted, False if not found
        """
        with self._lock:
            if run_id in self._runs:
                del self._runs[run_id]
                for key in [k for k, s in self._selections.items() if s.run_id == run_id]:
                    del self._selections[key]
                logger.info(f"Deleted render run {run_id}")
                return True
            return False

    def clear_all(self) -> int:
        """
        Clear all runs (for testing/development).

        Returns:
            Number of runs cleared
        """
        with self._lock:
            count = len(self._runs)
            self._runs.clear()
            self._selections.clear()
            return count

    def _require(self, run_id: str) -> RenderRun:
        run = self._runs.get(run_id)
        if run is None:
            raise KeyError(f"Render run {run_id} not found")
        return run

    def _require_variant(self, run_id: str, variant_id: str) -> VariantResult:
        variant = self._require(run_id).get_variant(variant_id)
        if variant is None:
            raise KeyError(f"Variant {variant_id} not found in run {run_id}")
        return variant
