"""Tests for Prometheus metrics helpers."""

from thumbkeeper.core import metrics
from thumbkeeper.core.metrics import (
    REGISTRY,
    _normalize_path,
    get_content_type,
    get_metrics,
    record_breaker_short_circuit,
    record_breaker_transition,
    record_extraction_attempt,
    record_repair_action,
    record_resolution,
    record_thumbnail_generated,
)


def sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestPathNormalization:

    def test_file_references_are_collapsed(self):
        assert _normalize_path("/api/v1/files/shared/uploads/clip.mov") == "/api/v1/files/{ref}"
        assert _normalize_path("/api/v1/emergency/uploads/a.jpg") == "/api/v1/emergency/{ref}"
        assert _normalize_path("/api/v1/thumbnails/clip.mov") == "/api/v1/thumbnails/{ref}"

    def test_other_paths_untouched(self):
        assert _normalize_path("/api/v1/repair/scan") == "/api/v1/repair/scan"


class TestRecorders:

    def test_extraction_attempt_counter(self):
        before = sample("frame_extraction_attempts_total", {"result": "timeout"})
        record_extraction_attempt("timeout", 0.2)
        assert sample("frame_extraction_attempts_total", {"result": "timeout"}) == before + 1

    def test_thumbnail_source_counter(self):
        before = sample("thumbnails_generated_total", {"source": "fallback"})
        record_thumbnail_generated(is_fallback=True)
        assert sample("thumbnails_generated_total", {"source": "fallback"}) == before + 1

    def test_resolution_counts_probes(self):
        before = sample("storage_probes_total")
        record_resolution("hit", probes=4)
        assert sample("storage_probes_total") == before + 4

    def test_breaker_state_gauge(self):
        record_breaker_transition("metrics_test", "open")
        assert sample("circuit_breaker_state", {"name": "metrics_test"}) == 2
        record_breaker_transition("metrics_test", "half_open")
        assert sample("circuit_breaker_state", {"name": "metrics_test"}) == 1
        record_breaker_transition("metrics_test", "closed")
        assert sample("circuit_breaker_state", {"name": "metrics_test"}) == 0

    def test_short_circuit_counter(self):
        before = sample("circuit_breaker_short_circuits_total", {"name": "metrics_test"})
        record_breaker_short_circuit("metrics_test")
        assert sample("circuit_breaker_short_circuits_total", {"name": "metrics_test"}) == before + 1

    def test_zero_repair_count_is_ignored(self):
        before = sample("repair_actions_total", {"action": "conflict"})
        record_repair_action("conflict", 0)
        assert sample("repair_actions_total", {"action": "conflict"}) == before


class TestExposition:

    def test_metrics_output_contains_pipeline_series(self):
        metrics.init_metrics(version="test")
        output = get_metrics()
        assert b"frame_extraction_attempts_total" in output
        assert b"circuit_breaker_state" in output
        assert b"app_uptime_seconds" in output

    def test_content_type(self):
        assert get_content_type().startswith("text/plain")
