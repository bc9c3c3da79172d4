"""
Shared pytest fixtures for API tests.

Every API test gets a filesystem blob store in a temporary directory that
replaces the process-wide store, so requests never touch real storage.
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from main import app
from thumbkeeper.services.blob_store import LocalBlobStore


@pytest.fixture
def client():
    """Test client without the lifespan (no scheduler, no ffmpeg check)."""
    return TestClient(app)


@pytest.fixture
def store(tmp_path):
    """Temporary blob store installed as the global store."""
    blob_store = LocalBlobStore(str(tmp_path / "storage"))
    with patch("thumbkeeper.services.blob_store._blob_store", blob_store):
        yield blob_store
