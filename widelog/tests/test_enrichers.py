# widelog/tests/test_enrichers.py
import pytest

from widelog.enrichers import (
    EnrichContext,
    GeoEnricher,
    RequestSizeEnricher,
    ResponseInfo,
    TraceContextEnricher,
    UserAgentEnricher,
    as_enricher,
    build_enrichers,
    parse_user_agent,
    run_enrichers,
)
from widelog.errors import ConfigError

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.6099.71 Safari/537.36"
)
IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)


def _ctx(event=None, headers=None, response=None):
    return EnrichContext(event=event or {}, headers=headers or {}, response=response or ResponseInfo())


def test_enrichers_run_in_order_and_see_earlier_fields():
    def first(ctx):
        ctx.merge({"a": 1})

    def second(ctx):
        ctx.merge({"b": ctx.event["a"] + 1})

    ctx = _ctx()
    event = run_enrichers([as_enricher(first), as_enricher(second)], ctx)
    assert event == {"a": 1, "b": 2}


def test_failing_enricher_is_isolated(metrics, registry):
    def partial_then_fail(ctx):
        ctx.event["half"] = True
        raise RuntimeError("enricher bug")

    def ok(ctx):
        ctx.event["ok"] = True

    ctx = _ctx({"start": 1})
    event = run_enrichers([as_enricher(partial_then_fail), as_enricher(ok)], ctx, metrics=metrics)
    assert event == {"start": 1, "ok": True}
    assert "error" not in event
    assert registry.get_sample_value(
        "widelog_enricher_failures_total", {"enricher": "partial_then_fail"}
    ) == 1.0


def test_parse_user_agent_desktop_and_mobile():
    desktop = parse_user_agent(CHROME_MAC)
    assert desktop["browser"] == {"name": "Chrome", "version": "120.0.6099.71"}
    assert desktop["os"] == {"name": "macOS", "version": "10.15.7"}
    assert desktop["device"] == {"type": "desktop"}

    phone = parse_user_agent(IPHONE)
    assert phone["os"]["name"] == "iOS"
    assert phone["device"]["type"] == "mobile"
    assert phone["browser"]["name"] == "Safari"

    assert parse_user_agent("Googlebot/2.1")["device"]["type"] == "bot"


def test_user_agent_enricher_preserves_user_fields():
    ctx = _ctx({"user_agent": {"device": {"type": "kiosk"}}}, {"user-agent": CHROME_MAC})
    UserAgentEnricher().enrich(ctx)
    assert ctx.event["user_agent"]["device"] == {"type": "kiosk"}
    assert ctx.event["user_agent"]["browser"]["name"] == "Chrome"

    ctx = _ctx({"user_agent": {"device": {"type": "kiosk"}}}, {"user-agent": CHROME_MAC})
    UserAgentEnricher(overwrite=True).enrich(ctx)
    assert ctx.event["user_agent"]["device"] == {"type": "desktop"}


def test_geo_enricher_from_vercel_and_cloudflare():
    ctx = _ctx(headers={"x-vercel-ip-country": "FR", "x-vercel-ip-city": "Paris", "x-vercel-ip-latitude": "48.85"})
    GeoEnricher().enrich(ctx)
    assert ctx.event["geo"] == {"country": "FR", "city": "Paris", "latitude": 48.85}

    ctx = _ctx(headers={"cf-ipcountry": "DE"})
    GeoEnricher().enrich(ctx)
    assert ctx.event["geo"] == {"country": "DE"}

    ctx = _ctx(headers={"accept": "*/*"})
    GeoEnricher().enrich(ctx)
    assert "geo" not in ctx.event


def test_request_size_enricher():
    ctx = _ctx(headers={"content-length": "128"}, response=ResponseInfo(status=200, headers={"content-length": "2048"}))
    RequestSizeEnricher().enrich(ctx)
    assert ctx.event["request_size"] == {"request_bytes": 128, "response_bytes": 2048}


def test_trace_context_enricher():
    tp = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"
    ctx = _ctx(headers={"traceparent": tp, "tracestate": "vendor=1"})
    TraceContextEnricher().enrich(ctx)
    assert ctx.event["trace_id"] == "4bf92f3577b34da6a3ce929d0e0e4736"
    assert ctx.event["span_id"] == "00f067aa0ba902b7"
    assert ctx.event["trace_context"]["tracestate"] == "vendor=1"


def test_trace_context_keeps_existing_trace_id():
    tp = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"
    ctx = _ctx({"trace_id": "mine"}, {"traceparent": tp})
    TraceContextEnricher().enrich(ctx)
    assert ctx.event["trace_id"] == "mine"


def test_build_enrichers_by_name():
    built = build_enrichers(["user_agent", "trace_context"])
    assert [type(e) for e in built] == [UserAgentEnricher, TraceContextEnricher]
    with pytest.raises(ConfigError):
        build_enrichers(["nope"])
