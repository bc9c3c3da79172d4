"""
Tests for ThumbnailPipeline

ffmpeg is never executed: FrameExtractor._run is replaced by a fake that
writes an output file of a scripted size for each attempt.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from thumbkeeper.models.media import MediaAsset, ThumbnailFormat, ThumbnailRole
from thumbkeeper.services.blob_store import BlobStoreError
from thumbkeeper.services.fallback_thumbnail import generate_fallback
from thumbkeeper.services.frame_extractor import FrameExtractor
from thumbkeeper.services.key_resolver import AssetNotFoundError
from thumbkeeper.services.thumbnail_pipeline import ThumbnailPipeline, ThumbnailStorageError, asset_lock

from tests.conftest import FAKE_MOV_BYTES, make_jpeg_bytes

OFFSETS = [1.0, 2.0, 0.5, 3.0, 5.0]


class ScriptedRun:
    """Replacement for FrameExtractor._run writing one scripted output per call."""

    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.commands = []

    async def __call__(self, cmd):
        self.commands.append(cmd)
        output = self.outputs.pop(0) if self.outputs else None
        if output is None:
            return 1, b"error"
        with open(cmd[-1], "wb") as f:
            f.write(output)
        return 0, b""

    @property
    def offsets(self):
        return [float(cmd[cmd.index("-ss") + 1]) for cmd in self.commands]


class FlakyStore:
    """Wraps a store and fails puts for selected keys."""

    def __init__(self, inner, failing_keys):
        self.inner = inner
        self.failing_keys = set(failing_keys)
        self.put_calls = []

    async def put(self, key, data, content_type):
        self.put_calls.append(key)
        if key in self.failing_keys:
            raise BlobStoreError(f"write failed: {key}")
        await self.inner.put(key, data, content_type)

    async def get(self, key):
        return await self.inner.get(key)


@pytest.fixture
def extractor():
    return FrameExtractor(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe", width=600, min_bytes=1024, timeout=5.0)


@pytest.fixture
def pipeline(local_store, extractor, resolver):
    return ThumbnailPipeline(
        store=local_store,
        extractor=extractor,
        resolver=resolver,
        offsets=OFFSETS,
        write_legacy_variants=True,
        probe_duration=False,
    )


@pytest.fixture
def asset():
    return MediaAsset.from_key("shared/uploads/clip.mov", len(FAKE_MOV_BYTES))


class TestExtraction:

    @pytest.mark.asyncio
    async def test_first_usable_offset_wins(self, pipeline, asset, sample_video_file, local_store):
        frame = make_jpeg_bytes()
        run = ScriptedRun([b"\xff\xd8\xff" + b"\x00" * 197, frame])

        with patch.object(pipeline.extractor, "_run", run):
            result = await pipeline.process(asset, sample_video_file)

        assert result.is_fallback is False
        assert result.offset_used == 2.0
        assert result.attempts == 2
        assert run.offsets == [1.0, 2.0]
        assert await local_store.get("shared/uploads/thumbnails/clip.jpg") == frame

    @pytest.mark.asyncio
    async def test_raster_variant_dimensions(self, pipeline, asset, sample_video_file):
        run = ScriptedRun([make_jpeg_bytes(640, 360)])

        with patch.object(pipeline.extractor, "_run", run):
            result = await pipeline.process(asset, sample_video_file)

        primary = result.primary
        assert primary.format == ThumbnailFormat.RASTER
        assert (primary.width, primary.height) == (640, 360)

    @pytest.mark.asyncio
    async def test_all_offsets_fail_uses_fallback(self, pipeline, asset, sample_video_file, local_store):
        run = ScriptedRun([b"tiny"] * 5)

        with patch.object(pipeline.extractor, "_run", run):
            result = await pipeline.process(asset, sample_video_file)

        assert result.is_fallback is True
        assert result.attempts == 5
        assert result.offset_used is None
        assert run.offsets == OFFSETS
        assert await local_store.get("shared/uploads/thumbnails/clip.svg") == generate_fallback()
        assert result.primary.format == ThumbnailFormat.VECTOR
        assert (result.primary.width, result.primary.height) == (600, 400)

    @pytest.mark.asyncio
    async def test_fallback_never_stored_under_video_extension(self, pipeline, asset, sample_video_file, local_store):
        with patch.object(pipeline.extractor, "_run", ScriptedRun([])):
            result = await pipeline.process(asset, sample_video_file)

        assert result.keys
        assert all(key.endswith(".svg") for key in result.keys)
        assert not any(key.endswith(".mov") for key in await local_store.list("shared/uploads/thumbnails"))

    @pytest.mark.asyncio
    async def test_missing_source_skips_extraction(self, local_store, resolver, asset, tmp_path):
        extractor = MagicMock()
        extractor.extract = AsyncMock()
        pipeline = ThumbnailPipeline(
            store=local_store, extractor=extractor, resolver=resolver,
            offsets=OFFSETS, write_legacy_variants=False, probe_duration=False,
        )

        result = await pipeline.process(asset, str(tmp_path / "gone.mov"))

        extractor.extract.assert_not_called()
        assert result.is_fallback is True
        assert result.attempts == 0

    @pytest.mark.asyncio
    async def test_empty_source_skips_extraction(self, local_store, resolver, asset, tmp_path):
        empty = tmp_path / "empty.mov"
        empty.write_bytes(b"")
        extractor = MagicMock()
        extractor.extract = AsyncMock()
        pipeline = ThumbnailPipeline(
            store=local_store, extractor=extractor, resolver=resolver,
            offsets=OFFSETS, write_legacy_variants=False, probe_duration=False,
        )

        result = await pipeline.process(asset, str(empty))

        extractor.extract.assert_not_called()
        assert result.is_fallback is True


class TestPlanOffsets:

    @pytest.mark.asyncio
    async def test_probing_disabled_keeps_all(self, pipeline):
        assert await pipeline.plan_offsets("clip.mov") == OFFSETS

    @pytest.mark.asyncio
    async def test_drops_offsets_past_clip_end(self, pipeline):
        pipeline.probe_duration = True
        with patch.object(pipeline.extractor, "probe_duration", AsyncMock(return_value=2.5)):
            assert await pipeline.plan_offsets("clip.mov") == [1.0, 2.0, 0.5]

    @pytest.mark.asyncio
    async def test_very_short_clip_tries_start(self, pipeline):
        pipeline.probe_duration = True
        with patch.object(pipeline.extractor, "probe_duration", AsyncMock(return_value=0.2)):
            assert await pipeline.plan_offsets("clip.mov") == [0.0]

    @pytest.mark.asyncio
    async def test_failed_probe_keeps_all(self, pipeline):
        pipeline.probe_duration = True
        with patch.object(pipeline.extractor, "probe_duration", AsyncMock(return_value=None)):
            assert await pipeline.plan_offsets("clip.mov") == OFFSETS


class TestStorage:

    @pytest.mark.asyncio
    async def test_writes_all_role_variants(self, pipeline, asset, sample_video_file, local_store):
        frame = make_jpeg_bytes()

        with patch.object(pipeline.extractor, "_run", ScriptedRun([frame])):
            result = await pipeline.process(asset, sample_video_file)

        assert sorted(result.keys) == sorted([
            "shared/uploads/thumbnails/clip.jpg",
            "shared/uploads/clip.poster.jpg",
            "shared/uploads/thumbnails/thumb-clip.jpg",
            "shared/uploads/clip.jpg",
        ])
        assert {v.role for v in result.variants} == set(ThumbnailRole)
        for key in result.keys:
            assert await local_store.get(key) == frame

    @pytest.mark.asyncio
    async def test_legacy_variants_disabled(self, pipeline, asset, sample_video_file, local_store):
        pipeline.write_legacy_variants = False

        with patch.object(pipeline.extractor, "_run", ScriptedRun([make_jpeg_bytes()])):
            result = await pipeline.process(asset, sample_video_file)

        assert result.keys == ["shared/uploads/thumbnails/clip.jpg"]
        assert await local_store.list("shared/uploads") == ["shared/uploads/thumbnails/clip.jpg"]

    @pytest.mark.asyncio
    async def test_primary_write_failure_raises_after_retries(self, pipeline, asset, sample_video_file, local_store):
        store = FlakyStore(local_store, {"shared/uploads/thumbnails/clip.jpg"})
        pipeline.store = store

        with patch.object(pipeline.extractor, "_run", ScriptedRun([make_jpeg_bytes()])), \
                patch("thumbkeeper.core.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ThumbnailStorageError):
                await pipeline.process(asset, sample_video_file)

        assert store.put_calls.count("shared/uploads/thumbnails/clip.jpg") == 3

    @pytest.mark.asyncio
    async def test_legacy_write_failure_is_tolerated(self, pipeline, asset, sample_video_file, local_store):
        store = FlakyStore(local_store, {"shared/uploads/clip.poster.jpg"})
        pipeline.store = store

        with patch.object(pipeline.extractor, "_run", ScriptedRun([make_jpeg_bytes()])):
            result = await pipeline.process(asset, sample_video_file)

        assert "shared/uploads/clip.poster.jpg" not in result.keys
        assert "shared/uploads/thumbnails/clip.jpg" in result.keys
        assert all(v.role != ThumbnailRole.POSTER for v in result.variants)


class TestIngestAndRegenerate:

    @pytest.mark.asyncio
    async def test_ingest_stores_video_and_thumbnail(self, pipeline, sample_video_file, local_store):
        with patch.object(pipeline.extractor, "_run", ScriptedRun([make_jpeg_bytes()])):
            result = await pipeline.ingest("C:\\Users\\me\\clip.mov", sample_video_file, "video/quicktime")

        assert result.asset.source_key == "shared/uploads/clip.mov"
        assert await local_store.get("shared/uploads/clip.mov") == FAKE_MOV_BYTES
        assert await local_store.exists("shared/uploads/thumbnails/clip.jpg")

    @pytest.mark.asyncio
    async def test_ingest_rejects_non_video(self, pipeline, sample_video_file):
        with pytest.raises(ValueError):
            await pipeline.ingest("notes.txt", sample_video_file)

    @pytest.mark.asyncio
    async def test_regenerate_from_legacy_root(self, pipeline, local_store):
        await local_store.put("uploads/clip.mov", FAKE_MOV_BYTES, "video/quicktime")

        with patch.object(pipeline.extractor, "_run", ScriptedRun([make_jpeg_bytes()])):
            result = await pipeline.regenerate("clip.mov")

        assert result.asset.source_key == "uploads/clip.mov"
        assert await local_store.exists("shared/uploads/thumbnails/clip.jpg")

    @pytest.mark.asyncio
    async def test_regenerate_ignores_image_candidates(self, pipeline, local_store):
        await local_store.put("shared/uploads/thumbnails/clip.jpg", make_jpeg_bytes(), "image/jpeg")

        with pytest.raises(AssetNotFoundError):
            await pipeline.regenerate("clip.mov")

    @pytest.mark.asyncio
    async def test_regenerate_waits_for_asset_lock(self, pipeline, local_store, resolver):
        await local_store.put("shared/uploads/clip.mov", FAKE_MOV_BYTES, "video/quicktime")

        with patch.object(pipeline.extractor, "_run", ScriptedRun([make_jpeg_bytes()])):
            async with asset_lock(resolver.asset_id("shared/uploads/clip.mov")):
                task = asyncio.create_task(pipeline.regenerate("clip.mov"))
                await asyncio.sleep(0.05)
                assert not task.done()
                assert await local_store.exists("shared/uploads/thumbnails/clip.jpg") is False

            result = await task

        assert result.is_fallback is False
        assert await local_store.exists("shared/uploads/thumbnails/clip.jpg")

    def test_asset_lock_shared_while_held(self):
        lock = asset_lock("clip")

        assert asset_lock("clip") is lock
        assert asset_lock("other") is not lock
