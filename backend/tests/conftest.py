"""Pytest fixtures and configuration for the test suite

This module provides:
1. Temporary filesystem blob stores
2. A key resolver with the standard naming conventions
3. Sample media bytes (JPEG frames, fake video containers)
4. Reset of every module-level service singleton between tests
"""
import io

import pytest
from PIL import Image

from thumbkeeper.services.blob_store import LocalBlobStore, reset_blob_store
from thumbkeeper.services.circuit_breaker import reset_circuit_breaker
from thumbkeeper.services.frame_extractor import reset_frame_extractor
from thumbkeeper.services.key_resolver import KeyResolver, reset_key_resolver
from thumbkeeper.services.repair_scanner import reset_repair_state
from thumbkeeper.services.thumbnail_pipeline import reset_thumbnail_pipeline


# Bytes that look like the head of a QuickTime container
FAKE_MOV_BYTES = b"\x00\x00\x00\x14ftypqt  \x00\x00\x00\x00qt  " + b"\x00" * 256


def make_jpeg_bytes(width: int = 640, height: int = 360) -> bytes:
    """
    Build a noisy JPEG comfortably above the minimum frame size.

    Args:
        width: Image width in pixels
        height: Image height in pixels

    Returns:
        JPEG-encoded bytes
    """
    image = Image.effect_noise((width, height), 64).convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test fresh service instances."""
    reset_blob_store()
    reset_circuit_breaker()
    reset_frame_extractor()
    reset_key_resolver()
    reset_thumbnail_pipeline()
    reset_repair_state()
    yield
    reset_blob_store()
    reset_circuit_breaker()
    reset_frame_extractor()
    reset_key_resolver()
    reset_thumbnail_pipeline()
    reset_repair_state()


@pytest.fixture
def local_store(tmp_path):
    """Filesystem blob store rooted in a temporary directory."""
    return LocalBlobStore(str(tmp_path / "storage"))


@pytest.fixture
def resolver():
    """Resolver with the production naming conventions."""
    return KeyResolver(primary_root="shared/uploads", legacy_roots=["uploads", "shared", ""])


@pytest.fixture
def sample_jpeg_bytes():
    return make_jpeg_bytes()


@pytest.fixture
def sample_video_file(tmp_path):
    """Non-empty local video file."""
    path = tmp_path / "clip.mov"
    path.write_bytes(FAKE_MOV_BYTES)
    return str(path)
