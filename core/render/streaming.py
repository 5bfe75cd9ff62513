"""Server-Sent Events transport for streaming render progress.

Wire format:
    event: <name>
    data: <json>

Comments (``: ping``) keep proxies from closing idle connections. Events,
in order: run_started, progress, variant, first_image, and exactly one
terminal event (complete or error).
"""

import asyncio
import json
import logging
import time
from typing import AsyncIterator, Optional

from core.azure.storage_service import AzureBlobStorageService

from .orchestrator import RenderObserver
from .types import RenderConfig, RunProgress, VariantOutcome

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

TERMINAL_EVENTS = {"complete", "error"}

_CLOSE = object()


def format_event(event: str, data: dict) -> str:
    """Encode one SSE event frame."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def format_comment(text: str) -> str:
    """Encode one SSE comment frame."""
    return f": {text}\n\n"


class SerializedEventSender:
    """Single ordered channel for every frame written to one stream.

    Frames are queued atomically and drained by one consumer, so concurrent
    producers can never interleave partial frames. After a terminal event,
    or once the client is gone, further sends are dropped.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._terminal_sent = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    @property
    def accepting(self) -> bool:
        return not self._closed and not self._terminal_sent

    def send(self, event: str, data: dict) -> bool:
        """
        Queue an event.

        Args:
            event: Event name
            data: JSON-serializable payload

        Returns:
            True if queued, False if dropped
        """
        if not self.accepting:
            logger.debug(f"Dropping '{event}' event on finished stream")
            return False

        self._queue.put_nowait(format_event(event, data))
        if event in TERMINAL_EVENTS:
            self._terminal_sent = True
            self._queue.put_nowait(_CLOSE)
        return True

    def comment(self, text: str) -> bool:
        """Queue a comment frame; False if dropped."""
        if not self.accepting:
            return False
        self._queue.put_nowait(format_comment(text))
        return True

    def close(self) -> None:
        """Stop accepting frames and end the response after queued ones."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSE)

    async def frames(self) -> AsyncIterator[str]:
        """
        Yield queued frames until the stream ends.

        When the client disconnects the server cancels this generator; the
        sender is then closed so later producers stop writing. Producers are
        not cancelled.
        """
        try:
            while True:
                frame = await self._queue.get()
                if frame is _CLOSE:
                    break
                yield frame
        finally:
            if not self._closed:
                logger.info("Stream consumer stopped; closing sender")
            self._closed = True


class StreamingObserver(RenderObserver):
    """Translates orchestrator callbacks into stream events."""

    def __init__(
        self,
        sender: SerializedEventSender,
        storage: AzureBlobStorageService,
        config: RenderConfig,
    ):
        self.sender = sender
        self.storage = storage
        self.config = config
        self.run_id: Optional[str] = None
        self.progress: Optional[RunProgress] = None
        self._first_image_sent = False

    async def on_run_started(self, run_id: str, total_variants: int) -> None:
        self.run_id = run_id
        self.progress = RunProgress(total=total_variants)
        self.sender.send("run_started", {"run_id": run_id, "variant_count": total_variants})
        self.sender.send("progress", self.progress.to_dict())

    async def on_variant_completed(
        self,
        run_id: str,
        outcome: VariantOutcome,
        progress: RunProgress,
    ) -> None:
        self.progress = progress
        payload = {
            "id": outcome.variant_id,
            "status": outcome.status.value,
            "latency_ms": outcome.latency_ms,
        }

        if outcome.succeeded:
            payload["image_url"] = await self._sign(outcome)
        else:
            payload["error_message"] = outcome.error_message

        # Snapshot taken after the await so it reflects every completion so far
        snapshot = progress.to_dict()
        self.sender.send("variant", payload)

        if outcome.succeeded and payload["image_url"] and not self._first_image_sent:
            self._first_image_sent = True
            self.sender.send("first_image", {"run_id": run_id})

        self.sender.send("progress", snapshot)

    async def _sign(self, outcome: VariantOutcome) -> Optional[str]:
        try:
            return await self.storage.get_signed_read_url(
                outcome.image_key, self.config.signed_url_ttl_seconds
            )
        except Exception as e:
            logger.warning(f"Run {self.run_id}: could not sign {outcome.image_key}: {e}")
            return None


async def keepalive(
    sender: SerializedEventSender,
    observer: StreamingObserver,
    heartbeat_interval: float,
    progress_interval: float,
) -> None:
    """
    Emit heartbeat comments and progress snapshots until the stream ends.

    Args:
        sender: Stream to write to
        observer: Source of the live progress tally
        heartbeat_interval: Seconds between ``: ping`` comments
        progress_interval: Seconds between progress snapshots while variants are in flight
    """
    tick = min(heartbeat_interval, progress_interval)
    last_heartbeat = time.monotonic()

    while sender.accepting:
        await asyncio.sleep(tick)
        if not sender.accepting:
            break

        progress = observer.progress
        if progress is not None and progress.in_flight > 0:
            sender.send("progress", progress.to_dict())

        if time.monotonic() - last_heartbeat >= heartbeat_interval:
            sender.comment("ping")
            last_heartbeat = time.monotonic()
