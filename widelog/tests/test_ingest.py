# widelog/tests/test_ingest.py
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from widelog.config import Settings
from widelog.logger import WideLogger
from widelog.middleware import install_widelog

ORIGIN = {"origin": "http://testserver"}


def _client(collect, metrics, **settings_kw):
    settings = Settings(service="web", environment="prod", **settings_kw)
    core = WideLogger(settings, drains=[collect], metrics=metrics)
    app = FastAPI()
    install_widelog(app, core)
    return TestClient(app)


def test_ingest_single_event(collect, metrics):
    client = _client(collect, metrics)
    r = client.post(
        "/_widelog/ingest",
        json={"timestamp": "2024-01-31T14:00:00.000Z", "level": "info", "action": "page_view", "service": "spoofed"},
        headers=ORIGIN,
    )
    assert r.status_code == 204
    (event,) = collect.events
    assert event["action"] == "page_view"
    assert event["service"] == "web"
    assert event["environment"] == "prod"
    assert event["source"] == "client"
    assert collect.contexts[0].request.path == "/_widelog/ingest"


def test_ingest_batch_and_epoch_timestamp(collect, metrics):
    now_ms = int(time.time() * 1000)
    client = _client(collect, metrics)
    r = client.post(
        "/_widelog/ingest",
        json=[
            {"timestamp": now_ms, "level": "warn", "n": 1},
            {"timestamp": "2024-01-31T14:00:00Z", "level": "error", "n": 2},
        ],
        headers=ORIGIN,
    )
    assert r.status_code == 204
    assert [e["n"] for e in collect.events] == [1, 2]
    assert collect.events[0]["timestamp"].endswith("Z")


def test_ingest_is_not_sampled(collect, metrics):
    from widelog.config import SamplingConfig

    client = _client(collect, metrics, sampling=SamplingConfig(rates={"info": 0}))
    client.post("/_widelog/ingest", json={"timestamp": "2024-01-31T14:00:00Z", "level": "info"}, headers=ORIGIN)
    assert len(collect.events) == 1


@pytest.mark.parametrize(
    "payload",
    [
        {"level": "info"},
        {"timestamp": "yesterday", "level": "info"},
        {"timestamp": 1000, "level": "info"},
        {"timestamp": int(time.time() * 1000) + 3 * 86_400_000, "level": "info"},
        {"timestamp": True, "level": "info"},
        {"timestamp": "2024-01-31T14:00:00Z"},
        {"timestamp": "2024-01-31T14:00:00Z", "level": "fatal"},
        "not-an-object",
        [],
    ],
)
def test_ingest_rejects_invalid_payloads(collect, metrics, payload):
    r = _client(collect, metrics).post("/_widelog/ingest", json=payload, headers=ORIGIN)
    assert r.status_code == 400
    assert collect.events == []


def test_ingest_rejects_bad_json(collect, metrics):
    r = _client(collect, metrics).post(
        "/_widelog/ingest", content=b"{nope", headers={**ORIGIN, "content-type": "application/json"}
    )
    assert r.status_code == 400


def test_ingest_origin_checks(collect, metrics):
    client = _client(collect, metrics)
    body = {"timestamp": "2024-01-31T14:00:00Z", "level": "info"}
    assert client.post("/_widelog/ingest", json=body).status_code == 403
    assert client.post("/_widelog/ingest", json=body, headers={"origin": "https://evil.example"}).status_code == 403
    assert client.post("/_widelog/ingest", json=body, headers={"referer": "http://testserver/page"}).status_code == 204


def test_ingest_origin_check_can_be_disabled(collect, metrics):
    client = _client(collect, metrics, ingest_require_origin=False)
    r = client.post("/_widelog/ingest", json={"timestamp": "2024-01-31T14:00:00Z", "level": "debug"})
    assert r.status_code == 204


def test_ingest_does_not_create_a_server_event(collect, metrics):
    client = _client(collect, metrics)
    client.post("/_widelog/ingest", json={"timestamp": "2024-01-31T14:00:00Z", "level": "info", "k": 1}, headers=ORIGIN)
    assert len(collect.events) == 1
    assert collect.events[0]["source"] == "client"
