"""HTTP surface for the automation runtime.

FastAPI app exposing a health check plus the gateway routes: cron
endpoints for the three sweeps, inbound business events, token-addressed
inbound webhooks, and per-booking follow-up scheduling.
"""

import logging

from fastapi import FastAPI

from gateway import SweepGateway, attach_gateway_routes

log = logging.getLogger(__name__)


def create_app(runtime, gateway: SweepGateway | None = None) -> FastAPI:
    """Create the FastAPI app wired to *runtime*."""
    app = FastAPI(title="Portal Automations", docs_url=None, redoc_url=None)
    gateway = gateway or SweepGateway(runtime)
    app.state.runtime = runtime
    app.state.gateway = gateway

    @app.get("/health")
    async def health():
        return {"ok": True}

    attach_gateway_routes(app, runtime, gateway)
    return app
