"""
Tests for repair endpoints

Tests:
    - POST /api/v1/repair/scan runs a scan and returns counts
    - dry_run and explicit roots are honoured
    - 409 when a scan is already running
    - POST /api/v1/repair/cancel and GET /api/v1/repair/status
"""
import asyncio
from unittest.mock import AsyncMock, patch

from thumbkeeper.services.fallback_thumbnail import generate_fallback
from thumbkeeper.services.repair_scanner import RepairInProgressError, RepairStats


def put(store, key, data, content_type="application/octet-stream"):
    asyncio.run(store.put(key, data, content_type))


class TestRepairScan:

    def test_scan_fixes_misnamed_placeholder(self, client, store):
        put(store, "shared/uploads/clip.mov", generate_fallback(), "video/quicktime")

        with patch("thumbkeeper.services.repair_scanner.get_repair_stores", return_value=[store]):
            response = client.post("/api/v1/repair/scan")

        assert response.status_code == 200
        data = response.json()
        assert data["checked"] == 1
        assert data["fixed"] == 1
        assert data["errors"] == 0
        assert data["cancelled"] is False
        assert asyncio.run(store.exists("shared/uploads/clip.svg"))

    def test_dry_run(self, client, store):
        put(store, "shared/uploads/clip.mov", generate_fallback(), "video/quicktime")

        with patch("thumbkeeper.services.repair_scanner.get_repair_stores", return_value=[store]):
            response = client.post("/api/v1/repair/scan", json={"dry_run": True})

        assert response.status_code == 200
        assert response.json()["dry_run"] is True
        assert response.json()["fixed"] == 1
        assert asyncio.run(store.exists("shared/uploads/clip.mov"))

    def test_explicit_roots_passed_through(self, client):
        with patch("thumbkeeper.api.v1.repair.run_repair_scan", new_callable=AsyncMock) as mock_scan:
            mock_scan.return_value = RepairStats(checked=3, skipped=3)

            response = client.post("/api/v1/repair/scan", json={"roots": ["uploads"]})

        assert response.status_code == 200
        assert response.json()["checked"] == 3
        mock_scan.assert_awaited_once_with(roots=["uploads"], dry_run=False)

    def test_scan_in_progress_is_409(self, client):
        with patch(
            "thumbkeeper.api.v1.repair.run_repair_scan",
            new_callable=AsyncMock,
            side_effect=RepairInProgressError("A repair scan is already running"),
        ):
            response = client.post("/api/v1/repair/scan")

        assert response.status_code == 409


class TestRepairStatus:

    def test_idle_status(self, client):
        response = client.get("/api/v1/repair/status")

        assert response.status_code == 200
        assert response.json() == {"running": False, "last_scan": None}

    def test_status_after_scan(self, client, store):
        with patch("thumbkeeper.services.repair_scanner.get_repair_stores", return_value=[store]):
            client.post("/api/v1/repair/scan")

        response = client.get("/api/v1/repair/status")

        assert response.json()["running"] is False
        assert response.json()["last_scan"]["checked"] == 0

    def test_cancel_when_idle(self, client):
        response = client.post("/api/v1/repair/cancel")

        assert response.status_code == 200
        assert response.json() == {"cancelled": False}
