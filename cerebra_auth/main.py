# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""CerebraUI auth service - Main FastAPI application."""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cerebra_auth.auth import Authenticator
from cerebra_auth.config import Settings
from cerebra_auth.database import create_engine, create_session_maker, init_db
from cerebra_auth.errors import AuthServiceError
from cerebra_auth.routers import auth
from cerebra_auth.services.accounts import AccountFlows
from cerebra_auth.services.email import EmailSender, Notifier
from cerebra_auth.services.tokens import Clock, TokenService, utc_now

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def _log_configuration(settings: Settings) -> None:
    if not settings.email_configured:
        logger.warning("EMAIL_PROVIDER_API_KEY is not set. Emails will not be delivered until you set it.")
    if settings.jwt_secret == Settings.model_fields["jwt_secret"].default:
        logger.warning("JWT_SECRET is the built-in default; set it before going to production.")
    logger.info("Configuration:")
    logger.info("  - EMAIL_PROVIDER_API_KEY: %s", "set" if settings.email_configured else "missing")
    logger.info("  - MAIL_FROM: %s", settings.mail_from)
    logger.info("  - FRONTEND_URL: %s", settings.frontend_url)
    logger.info("  - SERVICE_PUBLIC_URL: %s", settings.service_public_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings: Settings = app.state.settings
    await init_db(app.state.engine)
    _log_configuration(settings)

    async def token_sweep_loop():
        interval_s = settings.token_sweep_interval_minutes * 60
        while True:
            await asyncio.sleep(interval_s)
            try:
                async with app.state.session_maker() as db:
                    removed = await app.state.tokens.purge_expired(db)
                if removed:
                    logger.info("Removed %d expired tokens", removed)
            except Exception as e:
                logger.warning("Token sweep failed: %s", e)

    sweep_task = None
    if settings.token_sweep_interval_minutes > 0:
        sweep_task = asyncio.create_task(token_sweep_loop())
    yield
    if sweep_task:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    await app.state.engine.dispose()


async def service_error_handler(_request: Request, exc: AuthServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query"))
    if first.get("type") == "missing" and field:
        return f"`{field}` is required"
    if first.get("type") == "json_invalid":
        return "Malformed JSON body"
    if field:
        return f"`{field}`: {first.get('msg')}"
    return str(first.get("msg") or "Invalid request")


async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or malformed fields are a 400, not FastAPI's default 422."""
    return JSONResponse(
        status_code=400,
        content={"error": _describe_validation_error(exc), "code": "VALIDATION_ERROR"},
    )


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal error", "code": "INTERNAL_ERROR"})


def create_app(
    settings: Settings | None = None,
    *,
    clock: Clock = utc_now,
    email_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the application and its components from one Settings object.

    ``clock`` and ``email_transport`` replace the wall clock and the network
    when testing.
    """
    settings = settings or Settings()

    app = FastAPI(
        title="CerebraUI Auth",
        description="Sign-up, login, password reset and email verification",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    engine = create_engine(settings)
    authenticator = Authenticator(settings)
    tokens = TokenService(settings, authenticator, clock)
    email_sender = EmailSender(settings, email_transport)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_maker = create_session_maker(engine)
    app.state.authenticator = authenticator
    app.state.tokens = tokens
    app.state.email_sender = email_sender
    app.state.flows = AccountFlows(authenticator, tokens, Notifier(settings, email_sender))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log method, path, status, and duration for each request (no body, query or auth headers)."""
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
        return response

    app.add_exception_handler(AuthServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.include_router(auth.router)

    @app.get("/")
    async def root():
        """API info."""
        return {"name": "CerebraUI Auth", "version": VERSION, "docs": "/docs"}

    @app.get("/health")
    async def health():
        """Health check for load balancers."""
        return {"status": "ok"}

    return app


app = create_app()
