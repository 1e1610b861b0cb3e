# widelog/tests/test_metrics.py
from prometheus_client import generate_latest

from widelog.metrics import WidelogMetrics, default_metrics


def test_counters_on_private_registry(metrics, registry):
    metrics.mark_event("info", kept=True)
    metrics.mark_event("info", kept=False)
    metrics.mark_event("error", kept=True)
    metrics.enricher_failed("user_agent")
    metrics.drain_failed("axiom")
    metrics.override_failed()
    metrics.batch_dropped(3, "overflow")
    metrics.batch_dropped(0, "closed")

    assert registry.get_sample_value("widelog_events_total", {"level": "info", "outcome": "kept"}) == 1.0
    assert registry.get_sample_value("widelog_events_total", {"level": "info", "outcome": "dropped"}) == 1.0
    assert registry.get_sample_value("widelog_enricher_failures_total", {"enricher": "user_agent"}) == 1.0
    assert registry.get_sample_value("widelog_drain_failures_total", {"sink": "axiom"}) == 1.0
    assert registry.get_sample_value("widelog_keep_override_failures_total") == 1.0
    assert registry.get_sample_value("widelog_batch_dropped_events_total", {"reason": "overflow"}) == 3.0
    assert registry.get_sample_value("widelog_batch_dropped_events_total", {"reason": "closed"}) is None


def test_long_label_values_are_truncated(metrics, registry):
    metrics.drain_failed("x" * 100)
    text = generate_latest(registry).decode()
    assert "x" * 61 + "..." in text
    assert "x" * 62 not in text


def test_two_registries_do_not_collide(registry):
    from prometheus_client import CollectorRegistry

    a = WidelogMetrics(registry=registry)
    b = WidelogMetrics(registry=CollectorRegistry())
    a.mark_event("warn", kept=True)
    assert b.registry.get_sample_value("widelog_events_total", {"level": "warn", "outcome": "kept"}) is None


def test_default_metrics_is_a_singleton():
    assert default_metrics() is default_metrics()
