from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fixrx.api.error_handling import register_exception_handlers
from fixrx.api.routes import router
from fixrx.logging import get_logger, set_correlation_id
from fixrx.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


def _allowed_origins(runtime: Runtime) -> List[str]:
    if runtime.settings.cors_allow_origins:
        return runtime.settings.cors_allow_origins
    # Local dev hosts; no wildcard since credentials are allowed
    return [
        "http://localhost:3000",
        "http://localhost:19006",
        "http://127.0.0.1:3000",
    ]


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API app around an explicit runtime.

    When ``runtime`` is omitted it is built from environment settings, so
    a missing Redis or database fails before any traffic is served.
    """
    runtime = runtime or Runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        logger.info("app_started", version=__version__)
        try:
            yield
        finally:
            await runtime.close()
            logger.info("runtime_cleanup_complete")

    app = FastAPI(title="FixRx Auth API", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(runtime),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Bind X-Request-ID (or a fresh id) to logs and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> JSONResponse:
        """Report credential store and session cache reachability."""
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        }
        cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
        checks["cache"] = {
            "status": "healthy" if cache_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        }
        healthy = db_ok and cache_ok
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app


def __getattr__(name: str):
    # `uvicorn fixrx.app:app` builds the runtime lazily on first access
    if name == "app":
        application = create_app()
        globals()["app"] = application
        return application
    raise AttributeError(name)
