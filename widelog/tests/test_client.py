# widelog/tests/test_client.py
import json

import httpx

from widelog.client import ClientLogger

ENDPOINT = "https://app.example.com/_widelog/ingest"


def _client(handler, **kw):
    kw.setdefault("interval", 3600)
    kw.setdefault("batch_size", 100)
    kw.setdefault("flush_at_exit", False)
    kw.setdefault("sleep", lambda s: None)
    return ClientLogger(ENDPOINT, transport=httpx.MockTransport(handler), **kw)


def test_events_are_queued_until_flush():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    client = _client(handler, headers={"Origin": "https://app.example.com"})
    event = client.info("checkout", "button clicked")
    client.warn({"action": "retry", "level": "debug"})
    assert client.pending == 2
    assert seen == []

    client.flush()
    (req,) = seen
    assert str(req.url) == ENDPOINT
    assert req.headers["origin"] == "https://app.example.com"
    body = json.loads(req.content)
    assert body[0] == event
    assert body[0]["tag"] == "checkout"
    assert body[0]["message"] == "button clicked"
    assert body[0]["timestamp"].endswith("Z")
    assert body[1]["action"] == "retry"
    assert body[1]["level"] == "warn"
    assert client.pending == 0
    client.close()


def test_failed_send_is_retried(metrics, registry):
    statuses = [503, 204]
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(statuses[len(calls) - 1])

    client = _client(handler, max_attempts=2, metrics=metrics)
    client.error("payment", "declined")
    client.flush()
    assert len(calls) == 2
    assert registry.get_sample_value("widelog_batch_dropped_events_total", {"reason": "retries_exhausted"}) is None
    client.close()


def test_exhausted_retries_are_counted(metrics, registry):
    client = _client(lambda request: httpx.Response(500), max_attempts=2, metrics=metrics)
    client.debug("x")
    client.flush()
    assert registry.get_sample_value("widelog_batch_dropped_events_total", {"reason": "retries_exhausted"}) == 1.0
    assert registry.get_sample_value("widelog_drain_failures_total", {"sink": "client"}) == 1.0
    client.close()


def test_close_flushes_and_is_idempotent():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(204)

    client = _client(handler)
    client.info("bye")
    client.close()
    client.close()
    assert len(seen) == 1
    assert seen[0][0]["tag"] == "bye"


def _collecting_client():
    sent = []

    def handler(request):
        sent.extend(json.loads(request.content))
        return httpx.Response(204)

    return _client(handler), sent


def test_identity_is_added_to_every_event():
    client, sent = _collecting_client()
    client.set_identity({"user_id": "usr_123", "org_id": "org_456"})
    client.info({"action": "click"})
    client.info("auth", "user logged in")
    client.info({"user_id": "usr_override"})
    client.flush()
    client.close()

    assert [e["user_id"] for e in sent] == ["usr_123", "usr_123", "usr_override"]
    assert sent[0]["org_id"] == "org_456"
    assert sent[1]["tag"] == "auth"


def test_identity_can_be_replaced_and_cleared():
    client, sent = _collecting_client()
    client.set_identity({"user_id": "usr_123", "org_id": "org_456"})
    client.set_identity({"user_id": "usr_789"})
    client.info({"action": "a"})
    client.clear_identity()
    client.info({"action": "b"})
    client.flush()
    client.close()

    assert sent[0]["user_id"] == "usr_789"
    assert "org_id" not in sent[0]
    assert "user_id" not in sent[1]
