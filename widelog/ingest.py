# FILE: widelog/ingest.py
from __future__ import annotations

import datetime as _dt
import logging
import re
import time
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel, ConfigDict, StrictFloat, StrictInt, StrictStr, ValidationError, field_validator
from starlette.status import HTTP_204_NO_CONTENT, HTTP_400_BAD_REQUEST, HTTP_403_FORBIDDEN

from .config import LOG_LEVELS
from .enrichers import RequestInfo
from .logger import WideLogger
from .utils import ts_iso

logger = logging.getLogger(__name__)

_ISO_8601 = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z$")
_MIN_TS_MS = 946684800000  # 2000-01-01T00:00:00Z
_MAX_FUTURE_MS = 24 * 60 * 60 * 1000
_MAX_BATCH = 1000


class IngestEvent(BaseModel):
    """One client event: `timestamp` and `level` are required, the rest is free-form."""

    model_config = ConfigDict(extra="allow")

    timestamp: Union[StrictStr, StrictInt, StrictFloat]
    level: StrictStr

    @field_validator("timestamp")
    @classmethod
    def _check_timestamp(cls, v: Union[str, int, float]) -> str:
        if isinstance(v, str):
            if not _ISO_8601.match(v):
                raise ValueError("must be an ISO 8601 datetime string")
            try:
                _dt.datetime.fromisoformat(v.replace("Z", "+00:00"))
            except ValueError:
                raise ValueError("must be an ISO 8601 datetime string") from None
            return v
        now_ms = time.time() * 1000.0
        if v < _MIN_TS_MS or v > now_ms + _MAX_FUTURE_MS:
            raise ValueError("value out of reasonable range")
        return ts_iso(_dt.datetime.fromtimestamp(v / 1000.0, _dt.timezone.utc))

    @field_validator("level")
    @classmethod
    def _check_level(cls, v: str) -> str:
        if v not in LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(LOG_LEVELS)}")
        return v


def validate_origin(request: Request) -> None:
    """Origin (or Referer) host must equal the Host the request was sent to."""
    origin = request.headers.get("origin")
    referer = request.headers.get("referer")
    source = origin or referer
    if not source:
        raise HTTPException(status_code=HTTP_403_FORBIDDEN, detail="Missing origin header")
    host = request.headers.get("host") or ""
    if urlparse(source).netloc != host:
        raise HTTPException(status_code=HTTP_403_FORBIDDEN, detail="Invalid origin")


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    msg = str(err.get("msg", "invalid value"))
    if err.get("type") == "missing":
        return f"Missing required field: {loc}"
    return f"Invalid {loc}: {msg}" if loc else msg


def normalize_payload(body: Any, environment: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Validate a client payload (one event or a list) and return the events
    to drain. Raises HTTPException(400) on the first invalid event.
    """
    items = body if isinstance(body, list) else [body]
    if not items or len(items) > _MAX_BATCH:
        raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="Invalid request body")

    out: List[Dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="Invalid request body")
        try:
            parsed = IngestEvent.model_validate(item)
        except ValidationError as exc:
            raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail=_first_error(exc)) from None

        event = parsed.model_dump()
        # service identity comes from the server, never the client
        event.pop("service", None)
        event.update(environment)
        event["source"] = "client"
        out.append(event)
    return out


def build_ingest_router(wide_logger: WideLogger, path: Optional[str] = None) -> APIRouter:
    settings = wide_logger.settings
    ingest_path = path or settings.ingest_path
    router = APIRouter()

    @router.post(ingest_path, status_code=HTTP_204_NO_CONTENT, include_in_schema=False)
    async def ingest(request: Request) -> Response:
        if settings.ingest_require_origin:
            validate_origin(request)
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="Invalid request body") from None

        events = normalize_payload(body, wide_logger.environment_context())
        info = RequestInfo(method="POST", path=request.url.path)
        for event in events:
            wide_logger.drain_external(event, request=info, headers=dict(request.headers))

        logger.debug("ingested client events", extra={"count": len(events)})
        return Response(status_code=HTTP_204_NO_CONTENT)

    return router
