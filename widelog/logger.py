# FILE: widelog/logger.py
from __future__ import annotations

import copy
import logging
import random
import threading
import time
import traceback
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Union

from .config import Settings
from .drain import ConsoleDrain, DrainDispatcher, DrainLike, drain_name
from .enrichers import EnrichContext, EnricherLike, RequestInfo, ResponseInfo, as_enricher, build_enrichers, enricher_name, run_enrichers
from .errors import StructuredError
from .metrics import WidelogMetrics, default_metrics
from .sampling import KeepOverrideLike, SamplingEngine, describe
from .utils import deep_merge, filter_safe_headers, ts_iso

_log = logging.getLogger(__name__)

_MAX_STACK = 4000


def error_record(err: Union[BaseException, str]) -> Dict[str, Any]:
    """Sub-record stored under `error` for a captured exception or message."""
    if isinstance(err, str):
        return {"name": "Error", "message": err}

    rec: Dict[str, Any] = {"name": type(err).__name__}
    if isinstance(err, StructuredError):
        rec["message"] = err.message
        rec["status"] = err.status
        for key in ("why", "fix", "link"):
            value = getattr(err, key)
            if value is not None:
                rec[key] = value
    else:
        rec["message"] = str(err) or type(err).__name__

    cause = err.__cause__
    if cause is not None:
        rec["cause"] = {"name": type(cause).__name__, "message": getattr(cause, "message", None) or str(cause)}

    if err.__traceback__ is not None:
        stack = "".join(traceback.format_exception(type(err), err, err.__traceback__))
        rec["stack"] = stack[:_MAX_STACK]
    return rec


class RequestLogger:
    """
    Accumulates the wide event of one request.

    Handler code calls `set` / `error` / `warn` any number of times, across
    awaits; the boundary (or an explicit `emit`) finalizes exactly once.
    Anything written after finalization is ignored.
    """

    def __init__(
        self,
        core: "WideLogger",
        *,
        method: Optional[str] = None,
        path: Optional[str] = None,
        request_id: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._core = core
        self._lock = threading.Lock()
        self._finalized = False
        self._started = core.clock()
        self.timestamp = ts_iso()
        self.request = RequestInfo(method=method, path=path, request_id=request_id)
        self.headers = filter_safe_headers(headers)
        self._context: Dict[str, Any] = {}
        for key, value in (("method", method), ("path", path), ("request_id", request_id)):
            if value is not None:
                self._context[key] = value

    # -- capture ----------------------------------------------------------

    def _write(self, fn: Callable[[Dict[str, Any]], None]) -> bool:
        with self._lock:
            if self._finalized:
                _log.debug("write after finalization ignored", extra={"path": self.request.path})
                return False
            fn(self._context)
            return True

    def set(self, partial: Mapping[str, Any]) -> "RequestLogger":
        if not isinstance(partial, Mapping):
            raise TypeError("set() expects a mapping")
        self._write(lambda ctx: deep_merge(ctx, partial))
        return self

    def error(self, err: Union[BaseException, str], extra: Optional[Mapping[str, Any]] = None) -> "RequestLogger":
        record = error_record(err)

        def apply(ctx: Dict[str, Any]) -> None:
            if extra:
                deep_merge(ctx, extra)
            ctx["error"] = record
            ctx["level"] = "error"

        self._write(apply)
        return self

    def warn(self, message: str, extra: Optional[Mapping[str, Any]] = None) -> "RequestLogger":
        def apply(ctx: Dict[str, Any]) -> None:
            if extra:
                deep_merge(ctx, extra)
            ctx["warning"] = message
            if ctx.get("level") != "error":
                ctx["level"] = "warn"

        self._write(apply)
        return self

    def get_context(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._context)

    # -- finalization -----------------------------------------------------

    @property
    def finalized(self) -> bool:
        with self._lock:
            return self._finalized

    def _claim(self) -> Optional[Dict[str, Any]]:
        """Flip the finalized flag; returns the context snapshot to the single winner."""
        with self._lock:
            if self._finalized:
                return None
            self._finalized = True
            return copy.deepcopy(self._context)

    def elapsed_ms(self) -> float:
        return round((self._core.clock() - self._started) * 1000.0, 3)

    def emit(self, overrides: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Finalize now. Returns the event when kept; later calls are no-ops."""
        return self._core.finalize_request(self, overrides=overrides)

    def finalize(
        self,
        status: Optional[int] = None,
        response_headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        return self._core.finalize_request(self, status=status, response_headers=response_headers)


class WideLogger:
    """
    Process-wide core: settings, enrichers, keep override and drains are
    fixed at construction and read-only afterwards.

        core = WideLogger.from_settings(load_settings(), drains=[ConsoleDrain()])
        log = core.create_request_logger("GET", "/api/checkout")
        log.set({"user": {"id": 42}})
        log.finalize(status=200)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        enrichers: Iterable[EnricherLike] = (),
        keep_override: Optional[KeepOverrideLike] = None,
        drains: Optional[Sequence[DrainLike]] = None,
        metrics: Optional[WidelogMetrics] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self.metrics = metrics or default_metrics()
        self.clock = clock
        self.enrichers = tuple(as_enricher(e) for e in enrichers)
        self.sampling = SamplingEngine(
            self.settings.sampling, override=keep_override, rng=rng, metrics=self.metrics
        )
        self._dispatcher = DrainDispatcher(drains or [ConsoleDrain()], metrics=self.metrics)

        _log.info(
            "widelog ready",
            extra={
                "enabled": self.settings.enabled,
                "service": self.settings.service,
                "sampling": describe(self.settings.sampling),
                "enrichers": [enricher_name(e) for e in self.enrichers],
                "drains": [drain_name(d) for d in self._dispatcher.drains],
            },
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kw: Any) -> "WideLogger":
        """Build a core with the built-in enrichers named in settings."""
        settings = settings or Settings()
        enrichers = list(build_enrichers(settings.enrichers)) + list(kw.pop("enrichers", ()))
        return cls(settings, enrichers=enrichers, **kw)

    @property
    def drains(self) -> tuple:
        return self._dispatcher.drains

    def environment_context(self) -> Dict[str, Any]:
        return self.settings.environment_context()

    # -- request scope ----------------------------------------------------

    def create_request_logger(
        self,
        method: Optional[str] = None,
        path: Optional[str] = None,
        request_id: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> RequestLogger:
        return RequestLogger(self, method=method, path=path, request_id=request_id, headers=headers)

    def finalize_request(
        self,
        rl: RequestLogger,
        *,
        overrides: Optional[Mapping[str, Any]] = None,
        status: Optional[int] = None,
        response_headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Enrich, sample and drain the event of `rl`, at most once.

        Duration is measured from logger creation. Boundary status and
        duration are applied after the accumulated context and overrides.
        """
        context = rl._claim()
        if context is None:
            return None
        if not self.settings.enabled:
            return None

        duration = rl.elapsed_ms()
        event: Dict[str, Any] = self.environment_context()
        event["timestamp"] = rl.timestamp
        event["level"] = "info"
        deep_merge(event, context)
        if overrides:
            deep_merge(event, overrides)
        if status is not None:
            event["status"] = int(status)
        event["duration"] = duration

        if self.enrichers:
            ctx = EnrichContext(
                event=event,
                request=rl.request,
                headers=rl.headers,
                response=ResponseInfo(status=status, headers=filter_safe_headers(response_headers)),
            )
            event = run_enrichers(self.enrichers, ctx, metrics=self.metrics)

        return self._sample_and_drain(event, request=rl.request, headers=rl.headers)

    def _sample_and_drain(
        self,
        event: Dict[str, Any],
        *,
        request: Optional[RequestInfo] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        result = self.sampling.decide(event)
        level = str(event.get("level") or "info")
        self.metrics.mark_event(level, kept=result.keep)
        if not result.keep:
            return None
        self._dispatcher.dispatch(event, request=request, headers=headers)
        return event

    # -- standalone events ------------------------------------------------

    def log(self, level: str, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Sample and drain one standalone event; no enrichment, no duration."""
        if not self.settings.enabled:
            return None
        event: Dict[str, Any] = self.environment_context()
        event["timestamp"] = ts_iso()
        event["level"] = level
        if isinstance(tag_or_event, Mapping):
            deep_merge(event, tag_or_event)
            event["level"] = level
        else:
            event["tag"] = str(tag_or_event)
            if message is not None:
                event["message"] = message
        return self._sample_and_drain(event)

    def info(self, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self.log("info", tag_or_event, message)

    def warn(self, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self.log("warn", tag_or_event, message)

    def error(self, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self.log("error", tag_or_event, message)

    def debug(self, tag_or_event: Union[str, Mapping[str, Any]], message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self.log("debug", tag_or_event, message)

    # -- external events --------------------------------------------------

    def drain_external(
        self,
        event: Mapping[str, Any],
        request: Optional[RequestInfo] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Deliver an already-built event (e.g. from client ingest) to every drain."""
        if not self.settings.enabled:
            return
        self._dispatcher.dispatch(event, request=request, headers=filter_safe_headers(headers))

    # -- shutdown ---------------------------------------------------------

    async def wait_for_drains(self) -> None:
        await self._dispatcher.wait_pending()

    def close(self) -> None:
        """Finish background deliveries, then close drains that hold resources."""
        self._dispatcher.close()
        for d in self._dispatcher.drains:
            closer = getattr(d, "close", None)
            if not callable(closer):
                continue
            try:
                closer()
            except Exception:
                _log.warning("closing drain %s failed", drain_name(d), exc_info=True)
