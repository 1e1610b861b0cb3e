# FILE: widelog/service_http.py
from __future__ import annotations

import asyncio
import contextlib
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from pydantic import BaseModel, Field
from starlette.middleware.cors import CORSMiddleware

from .config import ReloadableSettings, Settings
from .drain import DrainLike
from .errors import StructuredError
from .logger import WideLogger
from .logging import configure_json_logging, get_logger
from .metrics import WidelogMetrics
from .middleware import install_widelog, use_logger
from .sampling import KeepDecision, KeepOverrideLike


@dataclass
class ServiceHttpConfig:
    """Example service surface; the widelog pipeline itself is configured by Settings."""

    api_version: str = "0.1.0"
    enable_docs: bool = False
    cors_origins: Tuple[str, ...] = ("http://localhost:3000",)


_HTTP_CFG = ServiceHttpConfig()


def premium_keep_override(decision: KeepDecision) -> None:
    """Always keep events of premium users, whatever sampling decided."""
    user = decision.event.get("user")
    if isinstance(user, dict) and user.get("plan") == "premium":
        decision.keep = True


class CheckoutIn(BaseModel):
    cart_id: str = Field(..., min_length=1, max_length=128)
    amount_cents: int = Field(..., ge=0)
    card: str = Field("ok", max_length=32)


def create_app(
    settings: Optional[Settings] = None,
    *,
    drains: Optional[Sequence[DrainLike]] = None,
    keep_override: Optional[KeepOverrideLike] = premium_keep_override,
    metrics: Optional[WidelogMetrics] = None,
    rng: Optional[random.Random] = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    """
    Example service wired with the wide-event pipeline.

    - every /api request produces one wide event;
    - /api/checkout shows a StructuredError captured and raised;
    - /metrics exposes the pipeline counters.
    """
    settings = settings or ReloadableSettings().get()
    logger = get_logger("widelog.http")

    metrics = metrics or WidelogMetrics(registry=CollectorRegistry())
    core = WideLogger.from_settings(
        settings,
        drains=drains,
        keep_override=keep_override,
        metrics=metrics,
        rng=rng,
        clock=clock,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await core.wait_for_drains()
        core.close()

    openapi_url = "/openapi.json" if _HTTP_CFG.enable_docs else None
    app = FastAPI(
        title="widelog-example",
        version=_HTTP_CFG.api_version,
        openapi_url=openapi_url,
        docs_url="/docs" if openapi_url else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    install_widelog(app, core, include=settings.include or ["/api/**"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_HTTP_CFG.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )

    # -----------------------------------------------------------------------
    # Health / metrics
    # -----------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {
            "ok": True,
            "service": settings.service,
            "environment": settings.environment,
            "enabled": settings.enabled,
        }

    @app.get("/metrics")
    def metrics_endpoint() -> Response:
        return Response(generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)

    # -----------------------------------------------------------------------
    # Example routes
    # -----------------------------------------------------------------------

    @app.get("/api/hello")
    async def hello(request: Request) -> Dict[str, Any]:
        log = request.state.widelog
        log.set({"user": {"id": "u_123", "plan": "free"}})
        await asyncio.sleep(0)
        log.set({"user": {"session": "s_1"}, "feature_flags": ["new-nav"]})
        return {"message": "hello"}

    @app.get("/api/sync")
    def sync_route() -> Dict[str, Any]:
        # sync handlers run in the threadpool; the context variable follows them
        use_logger().set({"handler": "sync"})
        return {"ok": True}

    @app.post("/api/checkout")
    async def checkout(body: CheckoutIn, request: Request) -> Dict[str, Any]:
        log = request.state.widelog
        log.set({"cart": {"id": body.cart_id, "amount_cents": body.amount_cents}})

        if body.card == "declined":
            err = StructuredError(
                "Payment processing failed",
                status=402,
                why="Card declined by issuer",
                fix="Try a different payment method",
                link="https://docs.example.com/payments/declined",
            )
            log.error(err, {"payment": {"provider": "stripe"}})
            raise err

        if body.card == "expired":
            # recorded, not raised
            log.warn("card expires this month", {"payment": {"provider": "stripe"}})

        log.set({"payment": {"provider": "stripe", "status": "captured"}})
        return {"ok": True, "cart_id": body.cart_id}

    @app.get("/api/slow")
    async def slow(delay_ms: int = 0) -> Dict[str, Any]:
        await asyncio.sleep(max(0, min(delay_ms, 5000)) / 1000.0)
        use_logger().set({"slow": {"delay_ms": delay_ms}})
        return {"ok": True}

    @app.get("/api/critical/{name:path}")
    async def critical(name: str) -> Dict[str, Any]:
        use_logger().set({"critical": {"name": name}})
        return {"ok": True}

    @app.get("/api/premium")
    async def premium() -> Dict[str, Any]:
        use_logger().set({"user": {"id": "u_999", "plan": "premium"}})
        return {"ok": True}

    @app.get("/api/boom")
    async def boom() -> Dict[str, Any]:
        use_logger().set({"stage": "before-crash"})
        raise RuntimeError("unexpected failure")

    logger.info("example service created", extra={"api_version": _HTTP_CFG.api_version})
    return app


if __name__ == "__main__":
    import uvicorn

    _settings = ReloadableSettings()
    configure_json_logging(_settings.get().log_level)
    uvicorn.run(
        create_app(_settings.get()),
        host="127.0.0.1",
        port=8000,
    )
