"""End-to-end tests for RenderService over in-memory stores and fake models."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from core.assets import RoomSession, Shop
from core.facts import InvalidOverridesError
from core.render import (
    RenderRequest,
    RenderRequestError,
    RunStatus,
    SelectionRequest,
    SerializedEventSender,
    drain_background_tasks,
)

from conftest import SHOP_DOMAIN, make_image_bytes


def make_request(**overrides) -> RenderRequest:
    fields = {"shop_domain": SHOP_DOMAIN, "room_session_id": "room-1", "product_id": "prod-1"}
    fields.update(overrides)
    return RenderRequest(**fields)


async def collect(sender: SerializedEventSender) -> list:
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


def uploads_named(files_client, prefix: str) -> list:
    """Files API upload calls whose display name starts with prefix."""
    return [
        call for call in files_client.aio.files.upload.call_args_list
        if call.kwargs["config"].display_name.startswith(prefix)
    ]


# ============================================================================
# Batch Render Tests
# ============================================================================


class TestBatchRender:
    """Tests for render_batch."""

    @pytest.mark.asyncio
    async def test_all_variants_succeed(self, render_env, seed):
        """Test a complete run: eight signed images and one quota unit."""
        records = await seed()

        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        assert body["status"] == "complete"
        assert body["trace_id"] == "trace-1"
        assert len(body["variants"]) == 8
        assert all(v["image_url"].startswith("https://storage.test/see-it-now/") for v in body["variants"])
        assert render_env.quota.get_usage(records.shop.id) == 1

        run = render_env.run_store.get_run(body["run_id"])
        assert run.status == RunStatus.COMPLETE
        assert run.product_image_hash and run.room_image_hash

    @pytest.mark.asyncio
    async def test_handles_uploaded_and_persisted(self, render_env, seed):
        """Test that first use uploads both images and stores their handles."""
        records = await seed()

        await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        assert render_env.files_client.aio.files.upload.call_count == 2
        assert records.asset.gemini_file_uri.startswith("https://files.test/")
        assert records.asset.gemini_file_source_key == "products/prod-1/prepared.png"
        assert records.room.gemini_file_uri.startswith("https://files.test/")
        assert records.room.gemini_file_source_key == "rooms/room-1/canonical.jpg"

    @pytest.mark.asyncio
    async def test_valid_handles_skip_download(self, render_env, seed):
        """Test that cached handles avoid both storage reads and uploads."""
        expiry = datetime.now(timezone.utc) + timedelta(hours=30)
        records = await seed(
            gemini_file_uri="https://files.test/cached-product",
            gemini_file_expires_at=expiry,
            gemini_file_source_key="products/prod-1/prepared.png",
        )
        await render_env.store.update_room_session(
            records.room.id,
            gemini_file_uri="https://files.test/cached-room",
            gemini_file_expires_at=expiry,
            gemini_file_source_key="rooms/room-1/canonical.jpg",
        )

        body = await render_env.service.render_batch(make_request(), "trace-1")

        assert body["status"] == "complete"
        assert render_env.storage.downloads == []
        render_env.files_client.aio.files.upload.assert_not_called()
        images = render_env.image_service.calls[0]["images"]
        assert [h.uri for h in images] == ["https://files.test/cached-product", "https://files.test/cached-room"]

    @pytest.mark.asyncio
    async def test_changed_product_image_reuploads(self, render_env, seed):
        """Test that a handle made from an older prepared image is replaced."""
        await seed(
            gemini_file_uri="https://files.test/old-product",
            gemini_file_expires_at=datetime.now(timezone.utc) + timedelta(hours=30),
            gemini_file_source_key="products/prod-1/old.png",
        )

        await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        assert len(uploads_named(render_env.files_client, "product-")) == 1

    @pytest.mark.asyncio
    async def test_non_canonical_room_converted_to_jpeg(self, render_env, seed):
        """Test that an original PNG room photo is uploaded as JPEG."""
        records = await seed()
        render_env.storage.objects["rooms/room-1/original.png"] = make_image_bytes("PNG", (120, 80))
        await render_env.store.update_room_session(
            records.room.id,
            canonical_room_image_key=None,
            original_room_image_key="rooms/room-1/original.png",
        )

        await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        (room_upload,) = uploads_named(render_env.files_client, "room-")
        assert room_upload.kwargs["config"].mime_type == "image/jpeg"
        assert room_upload.kwargs["file"].getvalue()[:3] == b"\xff\xd8\xff"

    @pytest.mark.asyncio
    async def test_backfills_missing_facts(self, render_env, seed):
        """Test that an asset without facts is extracted inline and rendered."""
        records = await seed(with_facts=False)

        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        assert body["status"] == "complete"
        render_env.openai_service.vision_json.assert_awaited_once()
        assert records.asset.pipeline_state == "ready"
        assert records.asset.prompt_pack_version == 1

    @pytest.mark.asyncio
    async def test_extraction_failure_not_charged(self, render_env, seed):
        """Test that a failed backfill rejects the request without a run or charge."""
        records = await seed(with_facts=False)
        render_env.openai_service.vision_json.return_value = "I am not JSON"

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(), "trace-1")

        assert exc_info.value.code == "pipeline_not_ready"
        assert exc_info.value.status_code == 422
        assert records.asset.extraction_error is not None
        assert render_env.quota.get_usage(records.shop.id) == 0
        assert render_env.run_store.list_runs() == []

    @pytest.mark.asyncio
    async def test_partial_run_charged_once(self, render_env, seed):
        """Test five successes and three timeouts: partial, one quota unit."""
        records = await seed()
        render_env.image_service.behaviours = ["ok"] * 5 + ["hang"] * 3

        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        assert body["status"] == "partial"
        assert len(body["variants"]) == 5
        assert render_env.quota.get_usage(records.shop.id) == 1

        run = render_env.run_store.get_run(body["run_id"])
        assert run.status == RunStatus.PARTIAL
        assert run.timeout_count == 3

    @pytest.mark.asyncio
    async def test_renders_after_rejected_overrides(self, render_env, seed):
        """Test that a rejected override leaves the product renderable."""
        records = await seed()

        with pytest.raises(InvalidOverridesError):
            await render_env.service.pipeline.apply_overrides(
                records.asset.id, {"dimensions_cm": {"h": "forty"}, "identity": "Mirror"}, "trace-0"
            )

        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        assert body["status"] == "complete"
        assert records.asset.merchant_overrides is None
        assert records.asset.prompt_pack_version == 1

    @pytest.mark.asyncio
    async def test_all_variants_failed(self, render_env, seed):
        """Test that a run with no images is a 422 carrying the run id, uncharged."""
        records = await seed()
        render_env.image_service.behaviours = ["error"] * 8

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        error = exc_info.value
        assert error.code == "all_variants_failed"
        assert error.status_code == 422
        assert render_env.run_store.get_run(error.run_id).status == RunStatus.FAILED
        assert render_env.quota.get_usage(records.shop.id) == 0


# ============================================================================
# Admission and Preparation Error Tests
# ============================================================================


class TestRequestErrors:
    """Tests for request validation, limits and lookups."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,code", [
        ("shop_domain", "missing_shop"),
        ("room_session_id", "missing_room_session"),
        ("product_id", "missing_product_id"),
    ])
    async def test_missing_fields(self, render_env, field, code):
        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.admit(make_request(**{field: ""}), "trace-1")
        assert exc_info.value.code == code
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_shop(self, render_env):
        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.admit(make_request(shop_domain="nope.myshopify.com"), "trace-1")
        assert exc_info.value.code == "shop_not_found"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_rate_limited(self, render_env, seed):
        """Test that the sixth request for one room session in a minute is refused."""
        await seed()
        for _ in range(5):
            await render_env.service.admit(make_request(), "trace-1")

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.admit(make_request(), "trace-1")
        assert exc_info.value.code == "rate_limit_exceeded"
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, render_env, seed):
        records = await seed(daily_quota=1)
        await render_env.quota.increment_quota(records.shop.id, "render", 1)

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.admit(make_request(), "trace-1")
        assert exc_info.value.code == "quota_exceeded"
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_room_not_found(self, render_env, seed):
        await seed()
        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(room_session_id="missing"), "trace-1")
        assert exc_info.value.code == "room_not_found"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_room_of_another_shop(self, render_env, seed):
        """Test that a shop cannot render into another shop's room session."""
        await seed()
        other = await render_env.store.add_shop(Shop(shop_domain="other.myshopify.com"))
        await render_env.store.add_room_session(RoomSession(shop_id=other.id, id="room-2"))

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(room_session_id="room-2"), "trace-1")
        assert exc_info.value.code == "room_not_found"

    @pytest.mark.asyncio
    async def test_room_expired(self, render_env, seed):
        records = await seed()
        records.room.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(), "trace-1")
        assert exc_info.value.code == "room_session_expired"
        assert exc_info.value.status_code == 410

    @pytest.mark.asyncio
    async def test_product_not_enabled(self, render_env, seed):
        await seed(status="archived")
        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(), "trace-1")
        assert exc_info.value.code == "product_not_enabled"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_product(self, render_env, seed):
        await seed()
        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(product_id="prod-404"), "trace-1")
        assert exc_info.value.code == "product_not_enabled"

    @pytest.mark.asyncio
    async def test_no_prepared_image(self, render_env, seed):
        await seed(prepared_image_key=None)
        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(), "trace-1")
        assert exc_info.value.code == "no_prepared_product_image"
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_no_room_image(self, render_env, seed):
        records = await seed()
        records.room.canonical_room_image_key = None

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(), "trace-1")
        assert exc_info.value.code == "no_room_image"

    @pytest.mark.asyncio
    async def test_upload_failure(self, render_env, seed):
        """Test that a Files API failure is a 502 and nothing is charged."""
        records = await seed()
        render_env.files_client.aio.files.upload.side_effect = RuntimeError("files api down")

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.render_batch(make_request(), "trace-1")

        assert exc_info.value.code == "image_upload_failed"
        assert exc_info.value.status_code == 502
        assert render_env.quota.get_usage(records.shop.id) == 0

    def test_error_body(self):
        error = RenderRequestError("all_variants_failed", "All variants failed", 422, run_id="run-1")
        assert error.to_dict("trace-1") == {
            "success": False,
            "error": "all_variants_failed",
            "message": "All variants failed",
            "trace_id": "trace-1",
            "run_id": "run-1",
        }
        assert error.to_event("trace-1")["code"] == "all_variants_failed"


# ============================================================================
# Stream Render Tests
# ============================================================================


class TestStreamRender:
    """Tests for render_stream."""

    @pytest.mark.asyncio
    async def test_event_sequence(self, render_env, seed):
        """Test run_started first, one variant event each, complete last."""
        records = await seed()
        sender = SerializedEventSender()
        consumer = asyncio.ensure_future(collect(sender))

        result = await render_env.service.render_stream(records.shop, make_request(), "trace-1", sender)
        events = parse_frames(await consumer)
        await drain_background_tasks()

        names = [e for e, _ in events]
        assert names[0] == "run_started"
        assert names[-1] == "complete"
        assert names.count("variant") == 8
        assert names.count("first_image") == 1
        assert names.count("complete") + names.count("error") == 1
        assert names.index("first_image") > names.index("variant")

        complete = events[-1][1]
        assert complete["run_id"] == result.run_id
        assert complete["status"] == "complete"
        assert len(complete["success_variant_ids"]) == 8
        assert render_env.quota.get_usage(records.shop.id) == 1

    @pytest.mark.asyncio
    async def test_all_failed_sends_error(self, render_env, seed):
        records = await seed()
        render_env.image_service.behaviours = ["none"] * 8
        sender = SerializedEventSender()
        consumer = asyncio.ensure_future(collect(sender))

        await render_env.service.render_stream(records.shop, make_request(), "trace-1", sender)
        events = parse_frames(await consumer)
        await drain_background_tasks()

        name, data = events[-1]
        assert name == "error"
        assert data["code"] == "all_variants_failed"
        assert data["run_id"]
        assert "first_image" not in [e for e, _ in events]
        assert render_env.quota.get_usage(records.shop.id) == 0

    @pytest.mark.asyncio
    async def test_preparation_failure_sends_error(self, render_env, seed):
        """Test that failures after the stream opens become one error event."""
        records = await seed(with_facts=False)
        render_env.openai_service.vision_json.return_value = "nope"
        sender = SerializedEventSender()
        consumer = asyncio.ensure_future(collect(sender))

        result = await render_env.service.render_stream(records.shop, make_request(), "trace-9", sender)
        events = parse_frames(await consumer)

        assert result is None
        assert events == [("error", {
            "code": "pipeline_not_ready",
            "message": events[0][1]["message"],
            "trace_id": "trace-9",
            "run_id": None,
        })]

    @pytest.mark.asyncio
    async def test_client_disconnect_run_continues(self, render_env, seed):
        """Test that a dropped client stops writes but the run still finishes and is charged."""
        records = await seed()
        render_env.image_service.delay = 0.1
        sender = SerializedEventSender()
        consumer = asyncio.ensure_future(collect(sender))

        render = asyncio.ensure_future(
            render_env.service.render_stream(records.shop, make_request(), "trace-1", sender)
        )
        await asyncio.sleep(0.02)
        consumer.cancel()

        result = await render
        await drain_background_tasks()

        assert sender.closed
        assert not sender.terminal_sent
        assert result.status == RunStatus.COMPLETE
        assert render_env.run_store.get_run(result.run_id).status == RunStatus.COMPLETE
        assert render_env.quota.get_usage(records.shop.id) == 1


# ============================================================================
# Variant Selection Tests
# ============================================================================


def make_selection(run_id: str, variant_id: str = "center-accurate", /, **overrides) -> SelectionRequest:
    fields = {
        "shop_domain": SHOP_DOMAIN,
        "room_session_id": "room-1",
        "product_id": "prod-1",
        "run_id": run_id,
        "variant_id": variant_id,
    }
    fields.update(overrides)
    return SelectionRequest(**fields)


class TestSelectVariant:
    """Tests for select_variant."""

    @pytest.mark.asyncio
    async def test_records_selection(self, render_env, seed):
        """Test that a pick is stored and signed from the stored image key."""
        records = await seed()
        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        result = await render_env.service.select_variant(make_selection(body["run_id"]), "trace-2")

        variant = render_env.run_store.get_run(body["run_id"]).get_variant("center-accurate")
        assert result["ok"] is True
        assert result["run_id"] == body["run_id"]
        assert result["variant_id"] == "center-accurate"
        assert result["image_url"] == f"https://storage.test/{variant.image_key}?se={render_env.config.signed_url_ttl_seconds}"
        assert result["trace_id"] == "trace-2"

        [selection] = render_env.run_store.list_selections(body["run_id"])
        assert selection.id == result["selection_id"]
        assert selection.image_key == variant.image_key
        assert selection.shop_id == records.shop.id
        assert selection.product_asset_id == records.asset.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,code", [
        ("shop_domain", "missing_shop"),
        ("product_id", "missing_product_id"),
        ("room_session_id", "missing_room_session"),
        ("run_id", "missing_run_id"),
        ("variant_id", "missing_variant_id"),
    ])
    async def test_missing_fields(self, render_env, field, code):
        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.select_variant(make_selection("run-1", **{field: ""}), "trace-1")
        assert exc_info.value.code == code
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_run(self, render_env, seed):
        await seed()
        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.select_variant(make_selection("run-404"), "trace-1")
        assert exc_info.value.code == "run_not_found"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("room_session_id", "room-2"),
        ("product_id", "prod-2"),
    ])
    async def test_run_of_another_context(self, render_env, seed, field, value):
        """Test that a run is only selectable with its own room and product."""
        await seed()
        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.select_variant(
                make_selection(body["run_id"], **{field: value}), "trace-2"
            )
        assert exc_info.value.code == "run_not_found"
        assert render_env.run_store.list_selections() == []

    @pytest.mark.asyncio
    async def test_run_of_another_shop(self, render_env, seed):
        await seed()
        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()
        await render_env.store.add_shop(Shop(shop_domain="other.myshopify.com"))

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.select_variant(
                make_selection(body["run_id"], shop_domain="other.myshopify.com"), "trace-2"
            )
        assert exc_info.value.code == "run_not_found"

    @pytest.mark.asyncio
    async def test_unknown_variant(self, render_env, seed):
        await seed()
        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.select_variant(make_selection(body["run_id"], "no-such-variant"), "trace-2")
        assert exc_info.value.code == "variant_not_found"
        assert exc_info.value.status_code == 404
        assert exc_info.value.run_id == body["run_id"]

    @pytest.mark.asyncio
    async def test_failed_variant_has_no_image(self, render_env, seed):
        """Test that a variant that produced nothing cannot be picked."""
        await seed()
        render_env.image_service.behaviours = ["ok"] * 4 + ["error"] * 4
        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        run = render_env.run_store.get_run(body["run_id"])
        failed = next(v for v in run.variants if v.image_key is None)

        with pytest.raises(RenderRequestError) as exc_info:
            await render_env.service.select_variant(make_selection(run.id, failed.variant_id), "trace-2")
        assert exc_info.value.code == "variant_missing_image"
        assert exc_info.value.status_code == 422
        assert render_env.run_store.list_selections() == []

    @pytest.mark.asyncio
    async def test_signing_failure_still_records(self, render_env, seed):
        """Test that the pick is kept when the read URL cannot be minted."""
        await seed()
        body = await render_env.service.render_batch(make_request(), "trace-1")
        await drain_background_tasks()

        async def broken_sign(key, ttl_seconds=3600):
            raise RuntimeError("signing unavailable")

        render_env.storage.get_signed_read_url = broken_sign
        result = await render_env.service.select_variant(make_selection(body["run_id"]), "trace-2")

        assert result["image_url"] is None
        assert len(render_env.run_store.list_selections(body["run_id"])) == 1
