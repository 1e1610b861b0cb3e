# FILE: widelog/sinks.py
# HTTP sinks for kept events.
#
# Every sink exposes:
#   - send_batch(events): synchronous POST of a list of events; non-2xx
#     raises httpx.HTTPStatusError so BatchingDrain can retry;
#   - drain(ctx): async single-event delivery for direct registration.
#
# Prefer wrapping a sink in BatchingDrain for production traffic:
#
#     drains = [BatchingDrain(AxiomDrain(), metrics=metrics)]
#
# A sink missing its required settings logs an error and sends nothing.

from __future__ import annotations

import asyncio
import datetime as _dt
import json
import logging
import os
import threading
import urllib.parse
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from .drain import DrainContext
from .utils import ts_iso

_log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 5.0
_MAX_ERROR_BODY = 200


class _HttpSink:
    """Shared httpx client handling for the concrete sinks."""

    name = "http"

    def __init__(self, *, timeout: float = _DEFAULT_TIMEOUT_S, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.timeout = float(timeout)
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._client_lock = threading.Lock()

    def _http(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(timeout=self.timeout, transport=self._transport)
            return self._client

    def _post(self, url: str, payload: Any, headers: Mapping[str, str]) -> httpx.Response:
        body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
        hdrs = {"Content-Type": "application/json"}
        hdrs.update(headers)
        return self._post_raw(url, body.encode("utf-8"), hdrs)

    def _post_raw(self, url: str, content: bytes, headers: Mapping[str, str]) -> httpx.Response:
        resp = self._http().post(url, content=content, headers=dict(headers))
        if resp.status_code >= 300:
            text = resp.text or ""
            if len(text) > _MAX_ERROR_BODY:
                text = text[:_MAX_ERROR_BODY] + "...[truncated]"
            raise httpx.HTTPStatusError(
                f"{self.name} responded {resp.status_code}: {text}",
                request=resp.request,
                response=resp,
            )
        return resp

    def send_batch(self, events: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    async def drain(self, ctx: DrainContext) -> None:
        await asyncio.to_thread(self.send_batch, [ctx.event])

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None


# ---------------------------------------------------------------------------
# Axiom
# ---------------------------------------------------------------------------


class AxiomDrain(_HttpSink):
    """
    POST events as a JSON array to `<base_url>/v1/datasets/<dataset>/ingest`.

    Settings come from arguments, else AXIOM_DATASET / AXIOM_TOKEN /
    AXIOM_ORG_ID / AXIOM_URL.
    """

    name = "axiom"

    def __init__(
        self,
        dataset: Optional[str] = None,
        token: Optional[str] = None,
        *,
        org_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.dataset = dataset or os.environ.get("AXIOM_DATASET")
        self.token = token or os.environ.get("AXIOM_TOKEN")
        self.org_id = org_id or os.environ.get("AXIOM_ORG_ID")
        self.base_url = (base_url or os.environ.get("AXIOM_URL") or "https://api.axiom.co").rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.dataset and self.token)

    @property
    def url(self) -> str:
        return f"{self.base_url}/v1/datasets/{urllib.parse.quote(self.dataset or '', safe='')}/ingest"

    def send_batch(self, events: List[Dict[str, Any]]) -> None:
        if not events:
            return
        if not self.configured:
            _log.error("axiom sink missing dataset or token; set AXIOM_DATASET / AXIOM_TOKEN")
            return
        headers = {"Authorization": f"Bearer {self.token}"}
        if self.org_id:
            headers["X-Axiom-Org-Id"] = self.org_id
        self._post(self.url, list(events), headers)


# ---------------------------------------------------------------------------
# OTLP / HTTP JSON logs
# ---------------------------------------------------------------------------

SEVERITY_NUMBERS = {"debug": 5, "info": 9, "warn": 13, "error": 17}

# Event keys that describe the deployment; they become resource attributes.
_RESOURCE_KEYS = ("timestamp", "service", "environment", "version", "commit_hash", "region")


def _attr_value(value: Any) -> Dict[str, Any]:
    if isinstance(value, bool):
        return {"boolValue": value}
    if isinstance(value, int):
        return {"intValue": str(value)}
    if isinstance(value, float) and value.is_integer():
        return {"intValue": str(int(value))}
    if isinstance(value, str):
        return {"stringValue": value}
    return {"stringValue": json.dumps(value, separators=(",", ":"), default=str)}


def _time_unix_nano(ts: Any) -> str:
    if isinstance(ts, str):
        try:
            when = _dt.datetime.fromisoformat(ts.replace("Z", "+00:00"))
            return str(int(when.timestamp() * 1000) * 1_000_000)
        except ValueError:
            pass
    return str(int(_dt.datetime.now(_dt.timezone.utc).timestamp() * 1000) * 1_000_000)


def to_otlp_log_record(event: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Map one wide event to an OTLP LogRecord.

    Deployment fields are left to the resource; everything else becomes an
    attribute, nested values JSON-encoded. The full event is the body.
    """
    level = str(event.get("level") or "info")
    attributes = [
        {"key": k, "value": _attr_value(v)}
        for k, v in event.items()
        if k not in _RESOURCE_KEYS and k not in ("level", "trace_id", "span_id") and v is not None
    ]
    record: Dict[str, Any] = {
        "timeUnixNano": _time_unix_nano(event.get("timestamp")),
        "severityNumber": SEVERITY_NUMBERS.get(level, 9),
        "severityText": level.upper() if level in SEVERITY_NUMBERS else "INFO",
        "body": {"stringValue": json.dumps(dict(event), separators=(",", ":"), default=str)},
        "attributes": attributes,
    }
    if isinstance(event.get("trace_id"), str):
        record["traceId"] = event["trace_id"]
    if isinstance(event.get("span_id"), str):
        record["spanId"] = event["span_id"]
    return record


def parse_otlp_headers(raw: Optional[str]) -> Dict[str, str]:
    """Parse OTEL_EXPORTER_OTLP_HEADERS (`k=v,k2=v2`, optionally URL-encoded)."""
    out: Dict[str, str] = {}
    if not raw:
        return out
    for pair in urllib.parse.unquote(raw).split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip() and value.strip():
            out[key.strip()] = value.strip()
    return out


class OTLPDrain(_HttpSink):
    """
    POST OTLP/HTTP JSON `resourceLogs` to `<endpoint>/v1/logs`.

    Settings come from arguments, else OTEL_EXPORTER_OTLP_ENDPOINT /
    OTEL_EXPORTER_OTLP_HEADERS / OTEL_SERVICE_NAME.
    """

    name = "otlp"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        *,
        service_name: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        resource_attributes: Optional[Mapping[str, Any]] = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.endpoint = endpoint or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
        self.service_name = service_name or os.environ.get("OTEL_SERVICE_NAME")
        if headers is not None:
            self.headers = dict(headers)
        else:
            self.headers = parse_otlp_headers(os.environ.get("OTEL_EXPORTER_OTLP_HEADERS"))
        self.resource_attributes = dict(resource_attributes or {})

    @property
    def url(self) -> str:
        return f"{(self.endpoint or '').rstrip('/')}/v1/logs"

    def resource(self, event: Mapping[str, Any]) -> Dict[str, Any]:
        attrs = [{"key": "service.name", "value": {"stringValue": str(self.service_name or event.get("service") or "unknown")}}]
        for key, otel_key in (
            ("environment", "deployment.environment"),
            ("version", "service.version"),
            ("region", "cloud.region"),
            ("commit_hash", "vcs.commit.id"),
        ):
            if event.get(key):
                attrs.append({"key": otel_key, "value": {"stringValue": str(event[key])}})
        for key, value in self.resource_attributes.items():
            attrs.append({"key": key, "value": _attr_value(value)})
        return {"attributes": attrs}

    def payload(self, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        # resource is taken from the first event of the batch
        return {
            "resourceLogs": [
                {
                    "resource": self.resource(events[0]),
                    "scopeLogs": [
                        {
                            "scope": {"name": "widelog"},
                            "logRecords": [to_otlp_log_record(e) for e in events],
                        }
                    ],
                }
            ]
        }

    def send_batch(self, events: List[Dict[str, Any]]) -> None:
        if not events:
            return
        if not self.endpoint:
            _log.error("otlp sink missing endpoint; set OTEL_EXPORTER_OTLP_ENDPOINT")
            return
        self._post(self.url, self.payload(events), self.headers)


# ---------------------------------------------------------------------------
# Generic ingest endpoint
# ---------------------------------------------------------------------------


class HttpIngestTransport(_HttpSink):
    """POST a JSON array of events to a widelog ingest endpoint."""

    name = "ingest"

    def __init__(
        self,
        endpoint: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.endpoint = endpoint
        self.headers = dict(headers or {})

    def send_batch(self, events: List[Dict[str, Any]]) -> None:
        if not events:
            return
        if not self.endpoint:
            _log.error("ingest transport missing endpoint")
            return
        self._post(self.endpoint, list(events), self.headers)

    def __call__(self, events: List[Dict[str, Any]]) -> None:
        self.send_batch(events)


# ---------------------------------------------------------------------------
# Better Stack
# ---------------------------------------------------------------------------


def to_better_stack_event(event: Mapping[str, Any]) -> Dict[str, Any]:
    """Better Stack expects the event time under `dt`."""
    out = {k: v for k, v in event.items() if k != "timestamp"}
    out["dt"] = event.get("timestamp")
    return out


class BetterStackDrain(_HttpSink):
    """
    POST events as a JSON array to a Better Stack (Logtail) source.

    Settings come from arguments, else BETTER_STACK_SOURCE_TOKEN /
    BETTER_STACK_ENDPOINT.
    """

    name = "better_stack"

    def __init__(
        self,
        source_token: Optional[str] = None,
        *,
        endpoint: Optional[str] = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.source_token = source_token or os.environ.get("BETTER_STACK_SOURCE_TOKEN")
        self.endpoint = (
            endpoint or os.environ.get("BETTER_STACK_ENDPOINT") or "https://in.logs.betterstack.com"
        ).rstrip("/")

    def send_batch(self, events: List[Dict[str, Any]]) -> None:
        if not events:
            return
        if not self.source_token:
            _log.error("better stack sink missing source token; set BETTER_STACK_SOURCE_TOKEN")
            return
        payload = [to_better_stack_event(e) for e in events]
        self._post(self.endpoint, payload, {"Authorization": f"Bearer {self.source_token}"})


# ---------------------------------------------------------------------------
# PostHog
# ---------------------------------------------------------------------------

DEFAULT_POSTHOG_EVENT = "widelog_wide_event"


def to_posthog_event(
    event: Mapping[str, Any],
    *,
    event_name: str = DEFAULT_POSTHOG_EVENT,
    distinct_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Map one wide event to a PostHog batch entry; distinct_id defaults to the service."""
    properties = {k: v for k, v in event.items() if k != "timestamp"}
    return {
        "event": event_name,
        "distinct_id": distinct_id or str(event.get("service") or "unknown"),
        "timestamp": event.get("timestamp"),
        "properties": properties,
    }


class PostHogDrain(_HttpSink):
    """
    POST `{api_key, batch}` to `<host>/batch/`.

    Settings come from arguments, else POSTHOG_API_KEY / POSTHOG_HOST.
    """

    name = "posthog"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        host: Optional[str] = None,
        event_name: str = DEFAULT_POSTHOG_EVENT,
        distinct_id: Optional[str] = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.api_key = api_key or os.environ.get("POSTHOG_API_KEY")
        self.host = (host or os.environ.get("POSTHOG_HOST") or "https://us.i.posthog.com").rstrip("/")
        self.event_name = event_name
        self.distinct_id = distinct_id

    @property
    def url(self) -> str:
        return f"{self.host}/batch/"

    def send_batch(self, events: List[Dict[str, Any]]) -> None:
        if not events:
            return
        if not self.api_key:
            _log.error("posthog sink missing api key; set POSTHOG_API_KEY")
            return
        batch = [to_posthog_event(e, event_name=self.event_name, distinct_id=self.distinct_id) for e in events]
        self._post(self.url, {"api_key": self.api_key, "batch": batch}, {})


# ---------------------------------------------------------------------------
# Sentry structured logs
# ---------------------------------------------------------------------------


def sentry_envelope_target(dsn: str) -> Tuple[str, str]:
    """
    Envelope URL and X-Sentry-Auth header for a DSN such as
    `https://<key>[:<secret>]@o0.ingest.sentry.io[/<prefix>]/<project>`.
    """
    parts = urllib.parse.urlsplit(dsn)
    if not parts.username:
        raise ValueError("invalid Sentry DSN: missing public key")
    segments = [s for s in parts.path.split("/") if s]
    if not segments:
        raise ValueError("invalid Sentry DSN: missing project id")
    project_id = segments.pop()
    base_path = "/" + "/".join(segments) if segments else ""
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    url = f"{parts.scheme}://{host}{base_path}/api/{project_id}/envelope/"
    auth = f"Sentry sentry_version=7, sentry_key={parts.username}, sentry_client=widelog"
    if parts.password:
        auth += f", sentry_secret={parts.password}"
    return url, auth


def _sentry_attr(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, bool):
        return {"value": value, "type": "boolean"}
    if isinstance(value, int):
        return {"value": value, "type": "integer"}
    if isinstance(value, float):
        return {"value": value, "type": "double"}
    if isinstance(value, str):
        return {"value": value, "type": "string"}
    return {"value": json.dumps(value, separators=(",", ":"), default=str), "type": "string"}


def to_sentry_log(
    event: Mapping[str, Any],
    *,
    environment: Optional[str] = None,
    release: Optional[str] = None,
    tags: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Map one wide event to a Sentry structured log item."""
    level = str(event.get("level") or "info")
    body = next(
        (event[k] for k in ("message", "action", "path") if isinstance(event.get(k), str) and event[k]),
        "widelog wide event",
    )
    trace_id = event.get("trace_id")
    if not (isinstance(trace_id, str) and trace_id):
        trace_id = uuid.uuid4().hex

    attributes: Dict[str, Dict[str, Any]] = {}
    env = environment or event.get("environment")
    if env:
        attributes["sentry.environment"] = {"value": str(env), "type": "string"}
    rel = release or event.get("version")
    if isinstance(rel, str) and rel:
        attributes["sentry.release"] = {"value": rel, "type": "string"}
    attributes["service"] = {"value": str(event.get("service") or "unknown"), "type": "string"}
    for key, value in (tags or {}).items():
        attributes[key] = {"value": str(value), "type": "string"}
    for key, value in event.items():
        if key in ("timestamp", "level", "service", "environment", "version", "trace_id", "span_id"):
            continue
        attr = _sentry_attr(value)
        if attr is not None:
            attributes[key] = attr

    return {
        "timestamp": int(_time_unix_nano(event.get("timestamp"))) / 1e9,
        "trace_id": trace_id,
        "level": level,
        "body": body,
        "severity_number": SEVERITY_NUMBERS.get(level, 9),
        "attributes": attributes,
    }


class SentryDrain(_HttpSink):
    """
    POST events as Sentry structured logs through the envelope endpoint.

    Settings come from arguments, else SENTRY_DSN / SENTRY_ENVIRONMENT /
    SENTRY_RELEASE.
    """

    name = "sentry"

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        environment: Optional[str] = None,
        release: Optional[str] = None,
        tags: Optional[Mapping[str, str]] = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.dsn = dsn or os.environ.get("SENTRY_DSN")
        self.environment = environment or os.environ.get("SENTRY_ENVIRONMENT")
        self.release = release or os.environ.get("SENTRY_RELEASE")
        self.tags = dict(tags or {})

    def envelope(self, events: List[Dict[str, Any]]) -> str:
        logs = [
            to_sentry_log(e, environment=self.environment, release=self.release, tags=self.tags) for e in events
        ]
        lines = [
            {"dsn": self.dsn, "sent_at": ts_iso()},
            {"type": "log", "item_count": len(logs), "content_type": "application/vnd.sentry.items.log+json"},
            {"items": logs},
        ]
        return "".join(json.dumps(line, separators=(",", ":"), default=str) + "\n" for line in lines)

    def send_batch(self, events: List[Dict[str, Any]]) -> None:
        if not events:
            return
        if not self.dsn:
            _log.error("sentry sink missing DSN; set SENTRY_DSN")
            return
        url, auth = sentry_envelope_target(self.dsn)
        self._post_raw(
            url,
            self.envelope(events).encode("utf-8"),
            {"Content-Type": "application/x-sentry-envelope", "X-Sentry-Auth": auth},
        )
