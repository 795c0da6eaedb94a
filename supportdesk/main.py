"""SupportDesk FastAPI application."""

from __future__ import annotations

import importlib
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from supportdesk import __version__
from supportdesk.api.middleware import RequestLoggingMiddleware, TenantMiddleware
from supportdesk.api.websocket import register_handlers
from supportdesk.config.settings import settings
from supportdesk.db import engine
from supportdesk.multitenancy.errors import TenantKernelError
from supportdesk.multitenancy.kernel import TenantKernel
from supportdesk.multitenancy.sql import sql_kernel
from supportdesk.multitenancy.storage import TenantObjectStore

logger = logging.getLogger("supportdesk.api")

# --- Route registration ---
_route_modules = [
    "supportdesk.api.routes.health",
    "supportdesk.api.routes.auth",
    "supportdesk.api.routes.conversations",
    "supportdesk.api.routes.origins",
    "supportdesk.api.routes.files",
    "supportdesk.api.routes.master",
    "supportdesk.api.websocket",
]


def create_app(
    kernel: TenantKernel | None = None,
    object_store: TenantObjectStore | None = None,
    check_database: bool = True,
) -> FastAPI:
    """Build the application around ``kernel`` (SQL-backed by default)."""
    kernel = kernel or sql_kernel(settings)
    if object_store is None and settings.S3_BUCKET:
        object_store = TenantObjectStore.from_settings(settings)
    register_handlers(kernel.realtime)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if check_database:
            # Engine is created at import time; just verify connectivity at startup
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        yield
        kernel.close()
        if check_database:
            await engine.dispose()

    app = FastAPI(
        title="SupportDesk",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.kernel = kernel
    app.state.object_store = object_store

    # Added last runs first: logging wraps tenant isolation
    app.add_middleware(TenantMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    for mod_path in _route_modules:
        module = importlib.import_module(mod_path)
        app.include_router(module.router)

    # --- Exception handlers ---

    @app.exception_handler(TenantKernelError)
    async def kernel_error_handler(request: Request, exc: TenantKernelError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return app


app = create_app()
