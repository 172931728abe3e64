from __future__ import annotations

from mediavault.metrics import Histogram, MetricsRegistry


def test_histogram_percentiles():
    histogram = Histogram()
    assert histogram.percentiles() == {"p50": 0.0, "p95": 0.0}
    for value in range(1, 101):
        histogram.add(value)
    result = histogram.percentiles()
    assert result["p50"] == 50.5
    assert round(result["p95"], 2) == 95.05


def test_histogram_keeps_most_recent_samples():
    histogram = Histogram(max_samples=3)
    for value in (1, 2, 3, 4, 5):
        histogram.add(value)
    assert list(histogram.samples) == [3.0, 4.0, 5.0]


def test_registry_snapshot():
    registry = MetricsRegistry()
    registry.record_probe(12.0)
    registry.record_probe(30.0)
    registry.record_page_fetch(retries=2)
    registry.record_job(True, "verify_links")
    registry.record_job(False)
    registry.record_dropped_events(4)

    snapshot = registry.snapshot()
    assert snapshot["links_checked"] == 2
    assert snapshot["probe_latency_ms"]["p50"] == 21.0
    assert snapshot["pages_fetched"] == 1
    assert snapshot["fetch_retries"] == 2
    assert snapshot["jobs_succeeded"] == 1
    assert snapshot["jobs_failed"] == 1
    assert snapshot["jobs_by_kind"] == {"verify_links": {"succeeded": 1}}
    assert snapshot["events_dropped"] == 4
