# widelog/tests/test_sampling.py
import random

from widelog.config import KeepRule, SamplingConfig
from widelog.sampling import KeepDecision, SamplingEngine, describe, rule_matches


def _drop_info(*rules):
    return SamplingConfig(rates={"info": 0}, keep=list(rules))


def test_default_rate_keeps_everything():
    engine = SamplingEngine(SamplingConfig())
    for level in ("debug", "info", "warn", "error", "custom"):
        assert engine.decide({"level": level}).keep


def test_head_rate_zero_drops():
    engine = SamplingEngine(_drop_info())
    result = engine.decide({"level": "info", "status": 200})
    assert result.keep is False
    assert result.reason == "dropped"


def test_head_rate_is_a_percentage():
    engine = SamplingEngine(SamplingConfig(rates={"info": 25}), rng=random.Random(7))
    kept = sum(engine.decide({"level": "info"}).keep for _ in range(4000))
    assert 800 < kept < 1200


def test_tail_status_overrides_head():
    engine = SamplingEngine(_drop_info(KeepRule(status=400)))
    result = engine.decide({"level": "info", "status": 400})
    assert result.keep
    assert result.reason == "tail:0"
    assert not engine.decide({"level": "info", "status": 401}).keep


def test_tail_duration_threshold_is_inclusive():
    engine = SamplingEngine(_drop_info(KeepRule(duration=500)))
    assert engine.decide({"level": "info", "duration": 500}).keep
    assert engine.decide({"level": "info", "duration": 750.5}).keep
    assert not engine.decide({"level": "info", "duration": 499.9}).keep


def test_tail_path_glob():
    engine = SamplingEngine(_drop_info(KeepRule(path="/api/test/critical/**")))
    assert engine.decide({"level": "info", "path": "/api/test/critical/foo/bar"}).keep
    assert not engine.decide({"level": "info", "path": "/api/test/other"}).keep


def test_rules_are_ored_and_first_match_is_reported():
    engine = SamplingEngine(_drop_info(KeepRule(status=500), KeepRule(duration=100), KeepRule(path="/api/**")))
    result = engine.decide({"level": "info", "status": 200, "duration": 150, "path": "/api/x"})
    assert result.keep
    assert result.reason == "tail:1"


def test_fields_within_a_rule_must_all_match():
    rule = KeepRule(status=500, path="/api/**")
    assert rule_matches(rule, {"status": 500, "path": "/api/x"})
    assert not rule_matches(rule, {"status": 500, "path": "/other"})


def test_non_numeric_fields_never_match():
    assert not rule_matches(KeepRule(duration=10), {"duration": "slow"})
    assert not rule_matches(KeepRule(status=400), {"status": "400"})
    assert not rule_matches(KeepRule(status=400), {})


def test_override_can_rescue_a_drop():
    def keep_premium(decision: KeepDecision):
        if decision.event.get("user", {}).get("plan") == "premium":
            decision.keep = True

    engine = SamplingEngine(_drop_info(), override=keep_premium)
    result = engine.decide({"level": "info", "user": {"plan": "premium"}})
    assert result.keep
    assert result.reason == "override"
    assert not engine.decide({"level": "info", "user": {"plan": "free"}}).keep


def test_override_cannot_drop_a_kept_event():
    def drop_all(decision):
        decision.keep = False

    engine = SamplingEngine(SamplingConfig(), override=drop_all)
    result = engine.decide({"level": "info"})
    assert result.keep
    assert result.reason == "head"


def test_override_sees_decision_fields():
    seen = []

    class Recorder:
        def should_keep(self, decision):
            seen.append((decision.keep, decision.status, decision.duration, decision.path, decision.method))

    SamplingEngine(_drop_info(), override=Recorder()).decide(
        {"level": "info", "status": 201, "duration": 12.5, "path": "/a", "method": "POST"}
    )
    assert seen == [(False, 201, 12.5, "/a", "POST")]


def test_failing_override_is_contained(metrics, registry):
    def broken(decision):
        raise RuntimeError("hook bug")

    engine = SamplingEngine(_drop_info(KeepRule(status=500)), override=broken, metrics=metrics)
    assert engine.decide({"level": "info", "status": 500}).keep
    assert not engine.decide({"level": "info", "status": 200}).keep
    assert registry.get_sample_value("widelog_keep_override_failures_total") == 2.0


def test_describe():
    cfg = SamplingConfig(rates={"info": 10}, keep=[KeepRule(status=500)])
    assert describe(cfg) == {"rates": {"info": 10.0}, "keep": [{"status": 500}]}


def test_override_cannot_reach_nested_event_data():
    def tamper(decision):
        decision.event["user"]["plan"] = "premium"
        decision.keep = True

    event = {"level": "info", "user": {"plan": "free"}}
    result = SamplingEngine(_drop_info(), override=tamper).decide(event)
    assert result.keep
    assert event["user"] == {"plan": "free"}
