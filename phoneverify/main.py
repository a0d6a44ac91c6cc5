import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from phoneverify_shared.rate_limit import RedisRateLimiter, SlidingWindowLimiter
from .config import settings
from .database import engine, SessionLocal
from .errors import VerificationError, request_validation_handler, verification_error_handler
from .metrics import metrics_middleware
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .routers import verification as verification_router
from .service import VerificationService, build_service
from .store import StoreUnavailable
from .store_sql import SqlStore
from .tasks import prune_loop
from .utils.security_headers import SecurityHeadersMiddleware


logger = logging.getLogger("phoneverify.app")


def create_app(service: Optional[VerificationService] = None) -> FastAPI:
    app = FastAPI(title="Phone Verification API", version="0.1.0", docs_url="/docs")

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)
    if service is None:
        service = build_service(settings, SqlStore(SessionLocal))
    app.state.service = service
    app.state.trust_proxy_headers = settings.TRUST_PROXY_HEADERS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, hsts=not settings.DEV_MODE)

    # Per-client HTTP request limiter, in front of the per-identifier abuse limits
    common_excludes = ["/health", "/metrics", "/docs", "/openapi.json"]
    if (settings.RATE_LIMIT_BACKEND or "").lower() == "redis":
        app.add_middleware(
            RedisRateLimiter,
            redis_url=settings.REDIS_URL,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            prefix=settings.RATE_LIMIT_REDIS_PREFIX,
            exclude_paths=common_excludes,
            trust_proxy_headers=settings.TRUST_PROXY_HEADERS,
        )
    else:
        app.add_middleware(
            SlidingWindowLimiter,
            limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
            exclude_paths=common_excludes,
            trust_proxy_headers=settings.TRUST_PROXY_HEADERS,
        )

    app.middleware("http")(metrics_middleware)

    @app.get("/health")
    def health():
        try:
            service.store.ping()
        except StoreUnavailable as exc:
            logger.warning("Health check failed: %s", exc)
            return JSONResponse(status_code=503, content={"status": "unavailable", "env": settings.ENV})
        return {"status": "ok", "env": settings.ENV, "intelligence": service.intelligence.stats()}

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(verification_router.router)

    app.add_exception_handler(VerificationError, verification_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Optional periodic cleanup of expired rate-limit counters
    poll = settings.RL_PRUNE_POLL_SECS
    if poll > 0:
        @app.on_event("startup")
        async def _start_counter_pruner():
            app.state.prune_task = asyncio.create_task(prune_loop(service.rate_limiter, poll))

        @app.on_event("shutdown")
        async def _stop_counter_pruner():
            task = getattr(app.state, "prune_task", None)
            if task:
                task.cancel()

    return app


app = create_app()
