"""HTTP application for noknok.

Builds the FastAPI app that serves the forward-auth endpoint, the login and
OAuth flow, the portal and the admin API. Components are created in the
lifespan and stored on ``app.state``; routers reach them through
``noknok.api.deps``.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from noknok import __version__
from noknok.api import admin, auth, login, portal
from noknok.config import Settings
from noknok.domain.exceptions import DomainError, StoreError
from noknok.domain.services import (
    CatalogService,
    ForwardAuthService,
    GrantService,
    HealthPoller,
    PolicyEngine,
    UserService,
)
from noknok.infra.db.session import bootstrap_schema, initialize_session_manager
from noknok.infra.db.store import Store
from noknok.infra.jobs.scheduler import JobScheduler
from noknok.infra.observability import (
    get_metrics_text,
    record_sessions_cleaned,
    set_correlation_id,
)
from noknok.infra.session import SessionManager
from noknok.security.oauth import ATProtoOAuthClient, OAuthGateway

logger = logging.getLogger(__name__)


def create_http_app(
    settings: Settings,
    oauth: OAuthGateway | None = None,
    health_http_client: httpx.AsyncClient | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Create FastAPI application for the gateway.

    Args:
        settings: Application settings
        oauth: OAuth gateway to use instead of the ATProto client
        health_http_client: HTTP client for the health poller (testing)
        start_scheduler: Whether to run the background jobs

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db = await initialize_session_manager(settings)
        await bootstrap_schema(db)

        store = Store(db)
        owner = await store.seed_owner(settings.owner_did, settings.owner_username)
        logger.info("Owner seeded", extra={"did": owner.did, "username": owner.username})

        catalog = CatalogService(store)
        await catalog.seed_from_file(settings.services_file)

        sessions = SessionManager(db, settings)
        oauth_gateway = oauth if oauth is not None else ATProtoOAuthClient(settings, store)
        poller = HealthPoller(
            store,
            timeout_seconds=settings.health_check_timeout_seconds,
            http_client=health_http_client,
        )

        app.state.settings = settings
        app.state.store = store
        app.state.sessions = sessions
        app.state.oauth = oauth_gateway
        app.state.forward_auth = ForwardAuthService(
            store, sessions, PolicyEngine(store), settings.public_url
        )
        app.state.users = UserService(store, oauth_gateway, owner_did=settings.owner_did)
        app.state.catalog = catalog
        app.state.grants = GrantService(store)
        app.state.health = poller

        async def cleanup_expired() -> None:
            record_sessions_cleaned(await sessions.cleanup_expired())
            await store.delete_expired_oauth_requests()

        scheduler = JobScheduler(settings)
        scheduler.add_session_cleanup_job(cleanup_expired)
        scheduler.add_health_poll_job(poller.poll_once)
        if start_scheduler:
            await scheduler.start()

        logger.info(
            "noknok started",
            extra={"public_url": settings.public_url, "version": __version__},
        )
        try:
            yield
        finally:
            await scheduler.shutdown()
            await sessions.drain()
            if oauth is None:
                await oauth_gateway.aclose()
            await poller.aclose()
            await db.close()
            logger.info("noknok stopped")

    app = FastAPI(
        title="noknok",
        description="Forward-auth gateway with ATProto sign-in",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    # Middleware for correlation ID
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Any:
        """Add correlation ID to request context."""
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        set_correlation_id(correlation_id)

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        if isinstance(exc, StoreError):
            logger.error(
                "Store failure",
                extra={"path": request.url.path, "error": exc.message, **exc.context},
            )
            return JSONResponse({"error": "internal error"}, status_code=exc.status_code)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.debug("Request validation failed", extra={"errors": exc.errors()})
        return JSONResponse({"error": "invalid request"}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            {"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers
        )

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    if settings.metrics_enabled:

        @app.get("/metrics")
        async def metrics() -> PlainTextResponse:
            """Prometheus metrics endpoint."""
            return PlainTextResponse(get_metrics_text())

    app.include_router(auth.router)
    app.include_router(login.router)
    app.include_router(portal.router)
    app.include_router(admin.router)

    return app


__all__ = ["create_http_app"]
