"""FastAPI application wiring for the Whatsappier automation engine.

- Configures logging and Prometheus metrics.
- Mounts the webhook and OTP routers.
- Exposes health, version and the automation template catalog.

The worker pool behind the routers is created lazily on the first webhook
and shut down with the application.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from prometheus_fastapi_instrumentator import Instrumentator

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .automations.registry import get_template_definition, list_template_definitions
from .ingestion.pipeline import shutdown_pipeline
from .routers import otp, webhooks

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    logger.info("Shutting down automation pipeline")
    shutdown_pipeline()


app = FastAPI(title="Whatsappier automations", version=__version__, lifespan=lifespan)
init_logging(app)
app.include_router(webhooks.router)
app.include_router(otp.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness check with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }


@app.get("/api/templates")
async def templates():
    """List the automation templates users can instantiate."""
    return {"items": [d.summary() for d in list_template_definitions()]}


@app.get("/api/templates/{template_id}")
async def template_detail(template_id: str):
    try:
        definition = get_template_definition(template_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return definition.summary()
