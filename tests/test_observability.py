from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from observability.logger import JsonFormatter, bind_trace_id, clear_trace_id, current_trace_id  # noqa: E402
from observability.metrics import Counter, Gauge, MetricsRegistry, Summary  # noqa: E402


def _record(message="job_transition", **extra):
    record = logging.LogRecord("genjobs.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    payload = json.loads(JsonFormatter().format(_record(job_id="abc", to_state="done")))

    assert payload["message"] == "job_transition"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "genjobs.test"
    assert payload["job_id"] == "abc"
    assert payload["to_state"] == "done"


def test_json_formatter_uses_bound_trace_id():
    bind_trace_id("trace-1")
    try:
        assert current_trace_id() == "trace-1"
        payload = json.loads(JsonFormatter().format(_record()))
        assert payload["trace_id"] == "trace-1"
    finally:
        clear_trace_id()
    assert current_trace_id() is None


def test_counter_rejects_negative_increment():
    counter = Counter("jobs.test_total")
    counter.inc()
    counter.inc(2)
    assert counter.snapshot() == 3.0
    with pytest.raises(ValueError):
        counter.inc(-1)


def test_gauge_and_summary():
    gauge = Gauge("jobs.active")
    gauge.set(4)
    gauge.add(-1)
    assert gauge.snapshot() == 3.0

    summary = Summary("jobs.provider_seconds")
    summary.observe(0.5)
    summary.observe(1.5)
    assert summary.snapshot() == {"count": 2.0, "sum": 2.0, "max": 1.5}


def test_registry_reuses_metrics_by_name():
    registry = MetricsRegistry()
    assert registry.counter("jobs.created_total") is registry.counter("jobs.created_total")
    registry.counter("jobs.created_total").inc()
    registry.summary("jobs.provider_seconds").observe(0.25)

    snapshot = registry.snapshot()
    assert snapshot["jobs.created_total"] == 1.0
    assert snapshot["jobs.provider_seconds"]["count"] == 1.0
    assert registry.get("missing") is None
