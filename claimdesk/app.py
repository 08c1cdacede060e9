from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from claimdesk.api.error_handling import register_exception_handlers
from claimdesk.api.routes import router
from claimdesk.config import Settings
from claimdesk.logging import get_logger, set_correlation_id
from claimdesk.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the API. The runtime is created on startup unless one is supplied."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            app.state.runtime = runtime
        else:
            app.state.runtime = Runtime(settings or Settings.from_env())
        logger.info("startup_complete", version=__version__)
        yield
        try:
            app.state.runtime.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
        else:
            logger.info("runtime_cleanup_complete")

    app = FastAPI(title="Claimdesk API", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with the caller's X-Request-ID, or a fresh one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.get("/healthz", tags=["health"])
    async def healthz():
        return {"status": "ok", "version": __version__}

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
