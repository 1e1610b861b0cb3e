# FILE: widelog/metrics.py
# Prometheus side channel for the wide-event pipeline.
#
# The pipeline never reports its own failures into events. Instead:
#   - kept / dropped decisions are counted per level;
#   - enricher, keep-override and drain failures are counted per component;
#   - events lost by the batching drain are counted per reason.
#
# Instruments live on an injectable CollectorRegistry so tests (and apps
# hosting several cores) do not collide on the global registry.

from __future__ import annotations

import logging
import threading
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter

logger = logging.getLogger(__name__)


def _safe_label(value: object) -> str:
    """Short label value; long names are truncated to limit cardinality."""
    if value is None:
        return ""
    s = str(value)
    if len(s) > 64:
        s = s[:61] + "..."
    return s


class WidelogMetrics:
    """
    Counters describing what the pipeline did with each event.

        metrics = WidelogMetrics(registry=CollectorRegistry())
        metrics.mark_event("info", kept=True)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else REGISTRY
        self._events = Counter(
            "widelog_events_total",
            "Finalized wide events by level and sampling outcome",
            ["level", "outcome"],
            registry=self.registry,
        )
        self._enricher_failures = Counter(
            "widelog_enricher_failures_total",
            "Enricher invocations that raised",
            ["enricher"],
            registry=self.registry,
        )
        self._drain_failures = Counter(
            "widelog_drain_failures_total",
            "Drain deliveries that raised or were rejected",
            ["sink"],
            registry=self.registry,
        )
        self._override_failures = Counter(
            "widelog_keep_override_failures_total",
            "Keep-override hook invocations that raised",
            registry=self.registry,
        )
        self._batch_dropped = Counter(
            "widelog_batch_dropped_events_total",
            "Events lost by the batching drain",
            ["reason"],
            registry=self.registry,
        )

    def mark_event(self, level: str, *, kept: bool) -> None:
        self._events.labels(level=_safe_label(level), outcome="kept" if kept else "dropped").inc()

    def enricher_failed(self, name: str) -> None:
        self._enricher_failures.labels(enricher=_safe_label(name)).inc()

    def drain_failed(self, name: str) -> None:
        self._drain_failures.labels(sink=_safe_label(name)).inc()

    def override_failed(self) -> None:
        self._override_failures.inc()

    def batch_dropped(self, count: int, reason: str) -> None:
        if count > 0:
            self._batch_dropped.labels(reason=_safe_label(reason)).inc(count)


# Singleton on the default registry; instruments can only be registered once.
_DEFAULT: Optional[WidelogMetrics] = None
_DEFAULT_LOCK = threading.Lock()


def default_metrics() -> WidelogMetrics:
    global _DEFAULT
    with _DEFAULT_LOCK:
        if _DEFAULT is None:
            _DEFAULT = WidelogMetrics()
        return _DEFAULT
