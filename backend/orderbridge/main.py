"""FastAPI application entrypoint.

Includes the webhook, tracking and admin routers and exposes a healthcheck
endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings  # noqa: E402
from .routers import admin as admin_router  # noqa: E402
from .routers import tracking as tracking_router  # noqa: E402
from .routers import wix_webhooks as wix_webhooks_router  # noqa: E402
from .telemetry import init_sentry  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: F401,E402


def create_app() -> FastAPI:
    settings = get_settings()
    init_sentry()

    app = FastAPI(
        title="orderbridge API",
        description="""
        Storefront order webhooks to Market!N conversions.

        - **Order webhooks**: paid orders are attributed to an affiliate and
          queued for delivery to Market!N (retry with backoff, dead-letter, alerts)
        - **Visitor tracking**: the browser SDK records affiliate/campaign context
          per visitor session, used for attribution at checkout
        - **Admin**: queue monitoring and manual actions (X-Admin-Key header)
        """,
        version="1.0.0",
    )

    # The tracking SDK runs on arbitrary storefront domains
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(wix_webhooks_router.router)
    app.include_router(tracking_router.router)
    app.include_router(admin_router.router)

    @app.get("/health", tags=["Health"], summary="Health check")
    def health():
        return {"status": "ok", "environment": settings.ENVIRONMENT}

    logger.info(f"[STARTUP] orderbridge API ready ({settings.ENVIRONMENT})")
    return app


app = create_app()
