from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from infergate.apps.api.errors import (
    gateway_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from infergate.apps.api.routes.chat import router as chat_router
from infergate.apps.api.routes.health import router as health_router
from infergate.apps.api.routes.usage import router as usage_router
from infergate.core.config import get_settings
from infergate.core.errors import GatewayError
from infergate.core.logging import configure_logging
from infergate.services.gateway import GatewayOrchestrator


API_VERSION = "v1"
_LEGACY_EXEMPT_PREFIXES = (
    f"/{API_VERSION}",
    "/docs",
    "/openapi.json",
    "/redoc",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Release pooled upstream connections on shutdown.
    orchestrator: GatewayOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.aclose()


def create_app(orchestrator: GatewayOrchestrator | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, lifespan=lifespan)
    # Tests inject a fully wired orchestrator; otherwise deps build one on first use.
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        # Mark legacy routes with deprecation headers to guide clients to /v1.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            response.headers["Deprecation"] = "true"
            response.headers["Link"] = f'</{API_VERSION}/docs>; rel="successor-version"'
        return response

    @app.exception_handler(GatewayError)
    async def _gateway_exception_handler(request: Request, exc: GatewayError):
        return await gateway_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(chat_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    # Retain unversioned legacy routes as deprecated compatibility aliases.
    app.include_router(chat_router, include_in_schema=False)
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()
