# FILE: widelog/enrichers.py
from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from .errors import ConfigError
from .metrics import WidelogMetrics
from .utils import deep_merge, finite_float, get_header

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Context passed to enrichers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestInfo:
    method: Optional[str] = None
    path: Optional[str] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class ResponseInfo:
    status: Optional[int] = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class EnrichContext:
    """
    What an enricher sees: the event in progress (mutable), request
    metadata and the safe subset of request / response headers.
    """

    event: Dict[str, Any]
    request: RequestInfo = field(default_factory=RequestInfo)
    headers: Mapping[str, str] = field(default_factory=dict)
    response: ResponseInfo = field(default_factory=ResponseInfo)

    def merge(self, partial: Mapping[str, Any]) -> None:
        deep_merge(self.event, partial)


class Enricher(Protocol):
    def enrich(self, ctx: EnrichContext) -> None:
        ...


EnricherLike = Union[Enricher, Callable[[EnrichContext], Any]]


class FunctionEnricher:
    """Adapter for a plain callable."""

    def __init__(self, fn: Callable[[EnrichContext], Any], name: Optional[str] = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "enricher")

    def enrich(self, ctx: EnrichContext) -> None:
        self._fn(ctx)


def as_enricher(obj: EnricherLike) -> Enricher:
    if hasattr(obj, "enrich"):
        return obj  # type: ignore[return-value]
    if callable(obj):
        return FunctionEnricher(obj)
    raise TypeError("enricher must be callable or implement enrich()")


def enricher_name(enricher: Any) -> str:
    return str(getattr(enricher, "name", None) or type(enricher).__name__)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def run_enrichers(
    enrichers: Sequence[Enricher],
    ctx: EnrichContext,
    *,
    metrics: Optional[WidelogMetrics] = None,
) -> Dict[str, Any]:
    """
    Run every enricher in order and return the resulting event.

    Each enricher works on its own copy of the event; the copy replaces the
    event only when the enricher returns normally, so a failing enricher
    leaves no partial writes behind. Failures go to the log and metrics,
    never into the event.
    """
    event = ctx.event
    for enricher in enrichers:
        work = EnrichContext(
            event=copy.deepcopy(event),
            request=ctx.request,
            headers=ctx.headers,
            response=ctx.response,
        )
        try:
            enricher.enrich(work)
        except Exception:
            name = enricher_name(enricher)
            _log.warning("enricher %s failed", name, exc_info=True)
            if metrics is not None:
                metrics.enricher_failed(name)
            continue
        event = work.event
    ctx.event = event
    return event


# ---------------------------------------------------------------------------
# Built-in enrichers
# ---------------------------------------------------------------------------


def _merge_field(existing: Any, computed: Dict[str, Any], overwrite: bool) -> Dict[str, Any]:
    """Computed values fill gaps; user-provided values win unless overwrite."""
    computed = {k: v for k, v in computed.items() if v is not None}
    if overwrite or not isinstance(existing, Mapping):
        return computed
    out = dict(computed)
    out.update(existing)
    return out


_BOT_RE = re.compile(r"bot|crawl|spider|slurp|bingpreview")
_TABLET_RE = re.compile(r"ipad|tablet")
_MOBILE_RE = re.compile(r"mobi|iphone|android")

_BROWSERS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("Edge", re.compile(r"edg/([\d.]+)", re.I)),
    ("Chrome", re.compile(r"chrome/([\d.]+)", re.I)),
    ("Firefox", re.compile(r"firefox/([\d.]+)", re.I)),
    ("Safari", re.compile(r"version/([\d.]+).*safari", re.I)),
)


def parse_user_agent(ua: str) -> Dict[str, Any]:
    lower = ua.lower()

    if _BOT_RE.search(lower):
        device = "bot"
    elif _TABLET_RE.search(lower):
        device = "tablet"
    elif _MOBILE_RE.search(lower):
        device = "mobile"
    elif ua:
        device = "desktop"
    else:
        device = "unknown"

    info: Dict[str, Any] = {"raw": ua, "device": {"type": device}}

    for name, regex in _BROWSERS:
        m = regex.search(ua)
        if m:
            info["browser"] = {"name": name, "version": m.group(1)}
            break

    os_info: Optional[Dict[str, Any]] = None
    if re.search(r"windows nt", ua, re.I):
        m = re.search(r"windows nt ([\d.]+)", ua, re.I)
        os_info = {"name": "Windows", "version": m.group(1) if m else None}
    elif re.search(r"mac os x", ua, re.I) and not re.search(r"iphone|ipad|ipod", ua, re.I):
        m = re.search(r"mac os x ([\d_]+)", ua, re.I)
        os_info = {"name": "macOS", "version": m.group(1).replace("_", ".") if m else None}
    elif re.search(r"iphone|ipad|ipod", ua, re.I):
        m = re.search(r"os ([\d_]+)", ua, re.I)
        os_info = {"name": "iOS", "version": m.group(1).replace("_", ".") if m else None}
    elif re.search(r"android", ua, re.I):
        m = re.search(r"android ([\d.]+)", ua, re.I)
        os_info = {"name": "Android", "version": m.group(1) if m else None}
    elif re.search(r"linux", ua, re.I):
        os_info = {"name": "Linux"}
    if os_info is not None:
        info["os"] = {k: v for k, v in os_info.items() if v is not None}

    return info


class UserAgentEnricher:
    """Sets `user_agent` to {raw, browser?, os?, device}."""

    name = "user_agent"

    def __init__(self, overwrite: bool = False) -> None:
        self.overwrite = overwrite

    def enrich(self, ctx: EnrichContext) -> None:
        ua = get_header(ctx.headers, "user-agent")
        if not ua:
            return
        ctx.event["user_agent"] = _merge_field(
            ctx.event.get("user_agent"), parse_user_agent(ua), self.overwrite
        )


class GeoEnricher:
    """
    Sets `geo` from platform headers (Vercel `x-vercel-ip-*`, Cloudflare
    `cf-ipcountry` and friends).
    """

    name = "geo"

    def __init__(self, overwrite: bool = False) -> None:
        self.overwrite = overwrite

    def enrich(self, ctx: EnrichContext) -> None:
        h = ctx.headers
        if not h:
            return

        def pick(*names: str) -> Optional[str]:
            for n in names:
                v = get_header(h, n)
                if v is not None:
                    return v
            return None

        geo = {
            "country": pick("x-vercel-ip-country", "cf-ipcountry"),
            "region": pick("x-vercel-ip-country-region", "cf-region"),
            "region_code": pick("x-vercel-ip-country-region-code", "cf-region-code"),
            "city": pick("x-vercel-ip-city", "cf-city"),
            "latitude": finite_float(pick("x-vercel-ip-latitude", "cf-latitude")),
            "longitude": finite_float(pick("x-vercel-ip-longitude", "cf-longitude")),
        }
        if all(v is None for v in geo.values()):
            return
        ctx.event["geo"] = _merge_field(ctx.event.get("geo"), geo, self.overwrite)


class RequestSizeEnricher:
    """Sets `request_size` to {request_bytes?, response_bytes?}."""

    name = "request_size"

    def __init__(self, overwrite: bool = False) -> None:
        self.overwrite = overwrite

    def enrich(self, ctx: EnrichContext) -> None:
        req = finite_float(get_header(ctx.headers, "content-length"))
        resp = finite_float(get_header(ctx.response.headers, "content-length"))
        if req is None and resp is None:
            return
        sizes = {
            "request_bytes": int(req) if req is not None else None,
            "response_bytes": int(resp) if resp is not None else None,
        }
        ctx.event["request_size"] = _merge_field(ctx.event.get("request_size"), sizes, self.overwrite)


_TRACEPARENT_RE = re.compile(r"^[\da-f]{2}-([\da-f]{32})-([\da-f]{16})-[\da-f]{2}$", re.I)


class TraceContextEnricher:
    """
    Sets `trace_context` from W3C `traceparent` / `tracestate` headers and
    mirrors `trace_id` / `span_id` at the top level.
    """

    name = "trace_context"

    def __init__(self, overwrite: bool = False) -> None:
        self.overwrite = overwrite

    def enrich(self, ctx: EnrichContext) -> None:
        traceparent = get_header(ctx.headers, "traceparent")
        tracestate = get_header(ctx.headers, "tracestate")
        if not traceparent and not tracestate:
            return

        m = _TRACEPARENT_RE.match(traceparent or "")
        event = ctx.event
        incoming = {
            "traceparent": traceparent,
            "tracestate": tracestate,
            "trace_id": m.group(1) if m else event.get("trace_id"),
            "span_id": m.group(2) if m else event.get("span_id"),
        }
        merged = _merge_field(event.get("trace_context"), incoming, self.overwrite)
        event["trace_context"] = merged

        if merged.get("trace_id") and (self.overwrite or event.get("trace_id") is None):
            event["trace_id"] = merged["trace_id"]
        if merged.get("span_id") and (self.overwrite or event.get("span_id") is None):
            event["span_id"] = merged["span_id"]


BUILTIN_ENRICHERS: Dict[str, Callable[..., Enricher]] = {
    "user_agent": UserAgentEnricher,
    "geo": GeoEnricher,
    "request_size": RequestSizeEnricher,
    "trace_context": TraceContextEnricher,
}


def build_enrichers(names: Iterable[str], *, overwrite: bool = False) -> List[Enricher]:
    """Instantiate built-in enrichers by name; unknown names fail fast."""
    out: List[Enricher] = []
    for name in names:
        factory = BUILTIN_ENRICHERS.get(name)
        if factory is None:
            raise ConfigError(
                f"unknown enricher {name!r}; expected one of {sorted(BUILTIN_ENRICHERS)}"
            )
        out.append(factory(overwrite=overwrite))
    return out
