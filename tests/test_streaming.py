"""Tests for the Server-Sent Events transport."""

import asyncio
import json

import pytest

from core.render import RenderConfig, RunProgress, SerializedEventSender, StreamingObserver, VariantOutcome
from core.render.streaming import format_comment, format_event, keepalive

from conftest import FakeStorage


async def collect(sender: SerializedEventSender) -> list:
    """Drain every frame until the stream ends."""
    return [frame async for frame in sender.frames()]


def parse_frames(frames: list) -> list:
    """Decode event frames into (event, data) pairs, skipping comments."""
    events = []
    for frame in frames:
        if frame.startswith(":"):
            continue
        event_line, data_line = frame.strip().split("\n")
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


# ============================================================================
# Frame Format Tests
# ============================================================================


class TestFrameFormat:
    """Tests for SSE frame encoding."""

    def test_event_frame(self):
        assert format_event("variant", {"id": "a"}) == 'event: variant\ndata: {"id": "a"}\n\n'

    def test_comment_frame(self):
        assert format_comment("ping") == ": ping\n\n"


# ============================================================================
# SerializedEventSender Tests
# ============================================================================


class TestSerializedEventSender:
    """Tests for SerializedEventSender."""

    @pytest.mark.asyncio
    async def test_frames_in_order_until_terminal(self):
        """Test that the stream ends right after the terminal event."""
        sender = SerializedEventSender()
        sender.comment("connected")
        sender.send("progress", {"total": 8})
        sender.send("complete", {"run_id": "r1"})

        frames = await collect(sender)

        assert frames[0] == ": connected\n\n"
        assert [e for e, _ in parse_frames(frames)] == ["progress", "complete"]
        assert sender.terminal_sent
        assert sender.closed

    @pytest.mark.asyncio
    async def test_single_terminal_event(self):
        """Test that nothing is written after the first terminal event."""
        sender = SerializedEventSender()
        assert sender.send("error", {"code": "x"})
        assert not sender.send("complete", {"run_id": "r1"})
        assert not sender.send("progress", {})
        assert not sender.comment("ping")

        events = parse_frames(await collect(sender))
        assert events == [("error", {"code": "x"})]

    @pytest.mark.asyncio
    async def test_close_ends_stream(self):
        sender = SerializedEventSender()
        sender.send("progress", {"total": 1})
        sender.close()

        assert not sender.send("complete", {})
        assert len(await collect(sender)) == 1

    @pytest.mark.asyncio
    async def test_consumer_cancel_closes_sender(self):
        """Test that a disconnected client stops further writes."""
        sender = SerializedEventSender()
        consumer = asyncio.ensure_future(collect(sender))
        await asyncio.sleep(0.01)

        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        assert sender.closed
        assert not sender.send("progress", {})

    @pytest.mark.asyncio
    async def test_concurrent_producers_do_not_interleave(self):
        """Test that frames from many producers stay whole."""
        sender = SerializedEventSender()

        async def produce(n: int):
            for i in range(10):
                sender.send("progress", {"producer": n, "i": i})
                await asyncio.sleep(0)

        await asyncio.gather(*(produce(n) for n in range(5)))
        sender.send("complete", {})

        events = parse_frames(await collect(sender))
        assert len(events) == 51
        assert events[-1][0] == "complete"


# ============================================================================
# StreamingObserver Tests
# ============================================================================


class TestStreamingObserver:
    """Tests for StreamingObserver."""

    @pytest.fixture
    def sender(self):
        return SerializedEventSender()

    @pytest.fixture
    def storage(self):
        return FakeStorage()

    @pytest.fixture
    def observer(self, sender, storage):
        return StreamingObserver(sender, storage, RenderConfig(signed_url_ttl_seconds=600))

    @pytest.mark.asyncio
    async def test_run_started(self, observer, sender):
        await observer.on_run_started("run-1", 8)
        sender.close()

        events = parse_frames(await collect(sender))
        assert events[0] == ("run_started", {"run_id": "run-1", "variant_count": 8})
        assert events[1] == ("progress", {"total": 8, "succeeded": 0, "failed": 0, "in_flight": 8})

    @pytest.mark.asyncio
    async def test_variant_events(self, observer, sender):
        """Test variant payloads, a single first_image and progress after each."""
        progress = RunProgress(total=3)
        await observer.on_run_started("run-1", 3)

        failed = VariantOutcome.failed("center-smaller", 900, "blocked", "content_policy")
        progress.record(failed)
        await observer.on_variant_completed("run-1", failed, progress)

        for variant_id in ("center-accurate", "prominent"):
            outcome = VariantOutcome.success(variant_id, 1200, f"see-it-now/run-1/{variant_id}.jpg", "h")
            progress.record(outcome)
            await observer.on_variant_completed("run-1", outcome, progress)
        sender.close()

        events = parse_frames(await collect(sender))
        names = [e for e, _ in events]
        assert names == [
            "run_started", "progress",
            "variant", "progress",
            "variant", "first_image", "progress",
            "variant", "progress",
        ]

        assert events[2][1] == {
            "id": "center-smaller",
            "status": "failed",
            "latency_ms": 900,
            "error_message": "blocked",
        }
        assert events[4][1]["image_url"] == "https://storage.test/see-it-now/run-1/center-accurate.jpg?se=600"
        assert events[5][1] == {"run_id": "run-1"}
        assert events[-1][1] == {"total": 3, "succeeded": 2, "failed": 1, "in_flight": 0}

    @pytest.mark.asyncio
    async def test_unsigned_image_has_no_first_image(self, observer, sender, storage):
        """Test that a signing failure leaves image_url empty."""

        async def broken_sign(key, ttl_seconds=3600):
            raise RuntimeError("sas failure")

        storage.get_signed_read_url = broken_sign
        progress = RunProgress(total=1)
        outcome = VariantOutcome.success("prominent", 100, "k", "h")
        progress.record(outcome)

        await observer.on_variant_completed("run-1", outcome, progress)
        sender.close()

        events = parse_frames(await collect(sender))
        assert events[0][1]["image_url"] is None
        assert "first_image" not in [e for e, _ in events]


# ============================================================================
# Keepalive Tests
# ============================================================================


class TestKeepalive:
    """Tests for heartbeat and periodic progress."""

    @pytest.mark.asyncio
    async def test_heartbeat_and_progress(self):
        sender = SerializedEventSender()
        observer = StreamingObserver(sender, FakeStorage(), RenderConfig())
        observer.progress = RunProgress(total=4, succeeded=1)

        pulse = asyncio.ensure_future(keepalive(sender, observer, 0.05, 0.02))
        await asyncio.sleep(0.15)
        sender.send("complete", {})
        await asyncio.wait_for(pulse, timeout=1)

        frames = await collect(sender)
        assert ": ping\n\n" in frames
        progress = [d for e, d in parse_frames(frames) if e == "progress"]
        assert progress and progress[0]["in_flight"] == 3

    @pytest.mark.asyncio
    async def test_no_progress_when_nothing_in_flight(self):
        sender = SerializedEventSender()
        observer = StreamingObserver(sender, FakeStorage(), RenderConfig())
        observer.progress = RunProgress(total=2, succeeded=2)

        pulse = asyncio.ensure_future(keepalive(sender, observer, 1, 0.02))
        await asyncio.sleep(0.1)
        sender.close()
        await asyncio.wait_for(pulse, timeout=1)

        assert parse_frames(await collect(sender)) == []
