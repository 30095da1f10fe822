"""FastAPI application entrypoint.

Configures CORS, includes the tracking router, starts the sweep task and
exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from . import state
from .deps import get_settings
from .routers import tracking as tracking_router
from .telemetry.sentry import init_sentry
from .utils.env import load_env_file
from .workers.sweep_worker import start_sweeper, stop_sweeper

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    load_env_file()
    settings = get_settings()
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    app = FastAPI(
        title="Funnel Tracking API",
        description="""
        Server-side funnel tracking bridged to the Meta Conversions API.

        - Captures UTM attribution per funnel session (last touch)
        - Deduplicates events so each logical action reaches Meta once
        - Hashes customer identity (SHA256) before delivery
        - Shares event_id with the browser pixel for cross-channel dedup
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-For from the load balancer so request.client.host is the visitor IP
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    allowed_origins = settings.cors_origins
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tracking_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    async def startup_event():
        """Build the bridge, optionally validate the CAPI token and start sweeps."""
        bridge = state.get_bridge()
        if settings.VALIDATE_TOKEN_ON_STARTUP and bridge.capi.is_configured:
            if not await bridge.capi.validate_access_token():
                # Don't raise - events are still tracked, delivery results will show the failure
                logger.warning("[STARTUP] Meta access token validation failed")
        app.state.sweeper = start_sweeper(bridge, settings.SWEEP_INTERVAL_SECONDS)

    @app.on_event("shutdown")
    async def shutdown_event():
        await stop_sweeper(getattr(app.state, "sweeper", None))

    return app


app = create_app()
