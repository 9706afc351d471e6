from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backchannel.api.dependencies import get_authorization_store, get_event_bus
from backchannel.api.handlers import events
from backchannel.api.middleware.auth import AuthMiddleware
from backchannel.api.middleware.rate_limit import RateLimitMiddleware
from backchannel.api.routes import authorizations, cart, checkout
from backchannel.config.settings import get_settings
from backchannel.worker.sweeper import SweepWorker

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Backchannel API",
        version="0.1.0",
        description="Out-of-band approval of checkouts on the user's own device.",
    )

    # /authorizations/events must match before /authorizations/{request_id}
    app.include_router(events.router)
    app.include_router(authorizations.router)
    app.include_router(checkout.router)
    app.include_router(cart.router)

    # Middleware executes in reverse order of registration
    app.add_middleware(
        RateLimitMiddleware,
        capacity=settings.api.rate_limit_capacity,
        window_seconds=settings.api.rate_limit_window_seconds,
    )
    app.add_middleware(AuthMiddleware)

    # CORS last so it runs first
    if "*" in settings.api.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.api.cors_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.api.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.get("/healthz")
    def health() -> dict:
        return {"status": "ok"}

    @app.on_event("startup")
    async def startup() -> None:
        worker = SweepWorker(
            get_authorization_store(),
            grace_seconds=settings.authorization.sweep_grace_seconds,
        )
        app.state.sweep_worker = worker
        app.state.sweep_task = asyncio.create_task(
            worker.run_forever(interval_seconds=settings.authorization.sweep_interval_seconds)
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:
        # Wake streaming subscribers so their connections close
        get_event_bus().shutdown()
        app.state.sweep_worker.stop()
        task = app.state.sweep_task
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    return app


app = create_app()
