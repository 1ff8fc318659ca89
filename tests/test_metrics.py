"""In-memory metrics registry."""

from walkthrough.metrics import MAX_ERRORS, MetricsRegistry


def test_counters_and_gauges():
    metrics = MetricsRegistry()
    metrics.inc_counter("runs.started")
    metrics.inc_counter("runs.started", 2)
    metrics.add_gauge("active_runs", 1)
    metrics.add_gauge("active_runs", -1)
    metrics.set_gauge("start_time", 42.0)

    snapshot = metrics.get_snapshot()
    assert snapshot["counters"]["runs.started"] == 3
    assert snapshot["gauges"] == {"active_runs": 0, "start_time": 42.0}


def test_latency_percentiles():
    metrics = MetricsRegistry()
    for ms in range(1, 101):
        metrics.record_latency("generation_run", float(ms))

    stats = metrics.get_snapshot()["latency"]["generation_run"]
    assert stats["count"] == 100
    assert stats["p50"] == 51.0
    assert stats["p95"] == 96.0
    assert stats["avg"] == 50.5


def test_errors_are_counted_and_bounded():
    metrics = MetricsRegistry()
    for i in range(MAX_ERRORS + 5):
        metrics.record_error("room_video", "VIDEO_JOB_FAILED", f"failure {i}", "proj-1")

    snapshot = metrics.get_snapshot()
    assert snapshot["counters"]["errors.VIDEO_JOB_FAILED"] == MAX_ERRORS + 5
    assert len(snapshot["recent_errors"]) == 10
    assert snapshot["recent_errors"][-1]["message"] == f"failure {MAX_ERRORS + 4}"
    assert snapshot["error_patterns"] == {"room_video:VIDEO_JOB_FAILED": MAX_ERRORS}
