# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Shortlink Server - Main FastAPI application."""

import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shortlink_server.auth import TokenCodec
from shortlink_server.config import Settings, get_settings
from shortlink_server.database import Database
from shortlink_server.errors import GENERIC_FAILURE, AppError
from shortlink_server.routers import auth, oauth
from shortlink_server.services.email import Mailer, MailQueue
from shortlink_server.services.oauth import build_providers

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def _get_cors_origins(settings: Settings) -> list[str]:
    raw = (settings.cors_origins or "*").strip()
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await app.state.database.init_models()
    app.state.mail_queue.start()
    yield
    await app.state.mail_queue.stop()
    await app.state.database.dispose()


def create_app(
    settings: Settings | None = None,
    *,
    mailer: Mailer | None = None,
    oauth_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the application. Everything configurable hangs off app.state."""
    settings = settings or get_settings()
    app = FastAPI(
        title="Shortlink Server",
        description="URL shortener with user accounts",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.settings = settings
    app.state.database = Database(settings.database_url)
    app.state.codec = TokenCodec.from_settings(settings)
    app.state.mailer = mailer or Mailer(settings)
    app.state.mail_queue = MailQueue.from_settings(app.state.mailer, settings)
    app.state.oauth_providers = build_providers(settings, transport=oauth_transport)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_get_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log method, path, status, and duration for each request (no body or auth headers)."""
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
        return response

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500 and exc.status_code != 502:
            logger.error("%s %s failed", request.method, request.url.path, exc_info=exc)
            detail = GENERIC_FAILURE
        else:
            detail = exc.detail
        return JSONResponse(status_code=exc.status_code, content={"detail": detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": GENERIC_FAILURE})

    # API v1
    app.include_router(auth.router, prefix="/api/v1")
    # Registered last: its /auth/{provider} path would shadow the routes above
    app.include_router(oauth.router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Health check / API info."""
        return {
            "name": "Shortlink Server",
            "version": VERSION,
            "api": "/api/v1",
            "docs": "/api/docs",
        }

    @app.get("/api/v1/health")
    async def health():
        """Health check for load balancers."""
        return {"status": "ok"}

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
