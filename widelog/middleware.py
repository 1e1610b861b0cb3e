# FILE: widelog/middleware.py
from __future__ import annotations

import asyncio
import contextvars
import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import RouteConfig
from .errors import StructuredError, extract_error_status, resolve_structured_error, serialize_error_response
from .ingest import build_ingest_router
from .logger import RequestLogger, WideLogger
from .utils import matches_pattern

_log = logging.getLogger(__name__)

_current_logger: contextvars.ContextVar[Optional[RequestLogger]] = contextvars.ContextVar(
    "widelog_request_logger", default=None
)


def use_logger() -> RequestLogger:
    """
    The RequestLogger of the request being served.

    Works inside async handlers and sync handlers run in the threadpool.
    Raises RuntimeError outside a request handled by WideEventMiddleware.
    """
    rl = _current_logger.get()
    if rl is None:
        raise RuntimeError(
            "no widelog logger bound to this context; "
            "is WideEventMiddleware installed and the path included?"
        )
    return rl


def should_log(path: str, include: Iterable[str] = (), exclude: Iterable[str] = ()) -> bool:
    """Exclusions win; an empty include list logs everything."""
    if any(matches_pattern(path, p) for p in exclude):
        return False
    include = list(include)
    if not include:
        return True
    return any(matches_pattern(path, p) for p in include)


def resolve_service(path: str, routes: Iterable[Tuple[str, str]]) -> Optional[str]:
    for pattern, service in routes:
        if matches_pattern(path, pattern):
            return service
    return None


def _route_pairs(routes: Optional[Mapping[str, Union[str, RouteConfig, Mapping[str, Any]]]]) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    for pattern, cfg in (routes or {}).items():
        if isinstance(cfg, RouteConfig):
            out.append((pattern, cfg.service))
        elif isinstance(cfg, Mapping):
            out.append((pattern, str(cfg["service"])))
        else:
            out.append((pattern, str(cfg)))
    return out


def _decode_headers(raw: Iterable[Tuple[bytes, bytes]]) -> Dict[str, str]:
    return {k.decode("latin1").lower(): v.decode("latin1") for k, v in (raw or [])}


class WideEventMiddleware:
    """
    ASGI boundary that gives each HTTP request its own RequestLogger.

    The logger is reachable as `request.state.widelog` and via `use_logger()`.
    Finalization runs exactly once, in `finally`, with the status that was
    sent (or the status of the unhandled error).

    Usage:
        app.add_middleware(WideEventMiddleware, wide_logger=core)
    """

    def __init__(
        self,
        app,
        *,
        wide_logger: WideLogger,
        include: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
        routes: Optional[Mapping[str, Any]] = None,
    ):
        self.app = app
        self.core = wide_logger
        settings = wide_logger.settings
        self.include = list(include if include is not None else settings.include)
        self.exclude = list(exclude if exclude is not None else settings.exclude)
        self.routes = _route_pairs(routes if routes is not None else settings.routes)
        self.request_id_header = settings.request_id_header.lower()
        # the ingest route logs client events itself
        self.exclude.append(settings.ingest_path)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        path = scope.get("path", "")
        if not should_log(path, self.include, self.exclude):
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        headers = _decode_headers(scope.get("headers"))
        request_id = headers.get(self.request_id_header) or uuid.uuid4().hex

        rl = self.core.create_request_logger(method=method, path=path, request_id=request_id, headers=headers)
        service = resolve_service(path, self.routes)
        if service:
            rl.set({"service": service})

        scope.setdefault("state", {})["widelog"] = rl
        token = _current_logger.set(rl)

        response: Dict[str, Any] = {"status": None, "headers": {}}

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                response["status"] = message.get("status")
                response["headers"] = _decode_headers(message.get("headers"))
            await send(message)

        try:
            await self.app(scope, receive, _send_wrapper)
        except asyncio.CancelledError:
            rl.set({"aborted": True})
            raise
        except Exception as exc:
            err = resolve_structured_error(exc) or exc
            rl.error(err)
            if response["status"] is None:
                response["status"] = extract_error_status(err)
            raise
        finally:
            _current_logger.reset(token)
            try:
                rl.finalize(status=response["status"], response_headers=response["headers"])
            except Exception:
                _log.error("finalization failed", extra={"path": path}, exc_info=True)


async def structured_error_handler(request: Request, exc: StructuredError) -> JSONResponse:
    """
    Turn a raised StructuredError into `{url, status, message, error, data?}`
    and capture it into the request's event.
    """
    rl = getattr(request.state, "widelog", None)
    if isinstance(rl, RequestLogger):
        rl.error(exc)
    body = serialize_error_response(exc, request.url.path)
    return JSONResponse(body, status_code=exc.status)


def install_widelog(app: FastAPI, wide_logger: WideLogger, *, ingest: bool = True, **middleware_kw: Any) -> None:
    """Wire the boundary middleware, the StructuredError handler and the ingest route."""
    app.state.widelog = wide_logger
    app.add_middleware(WideEventMiddleware, wide_logger=wide_logger, **middleware_kw)
    app.add_exception_handler(StructuredError, structured_error_handler)
    if ingest:
        app.include_router(build_ingest_router(wide_logger))
