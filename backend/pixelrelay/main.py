"""FastAPI application entrypoint.

Initializes error tracking, includes the tracking and webhook routers, and
exposes a healthcheck endpoint.
"""

import logging

from fastapi import Depends, FastAPI
from sqlalchemy.exc import SQLAlchemyError
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings, get_tenant_gateway
from .routers import shopify_webhooks as shopify_webhooks_router  # orders/checkouts/carts webhooks
from .routers import track as track_router  # Storefront pixel, beacon, image pixel, app proxy
from .services.tenant_config import TenantConfigGateway
from .telemetry import init_sentry
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    settings = get_settings()

    # Before the app exists so the FastAPI integration hooks every route
    if init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT):
        logger.info("[STARTUP] Sentry error tracking enabled")

    app = FastAPI(
        title="pixelrelay API",
        description="""
        pixelrelay records storefront tracking events and relays them to the
        Meta Conversions API.

        - `/track`: storefront pixel (POST JSON, GET image pixel, OPTIONS preflight)
        - `/apps/proxy/track`: same, through the Shopify app proxy
        - `/webhooks/*`: Shopify order, checkout and cart webhooks (HMAC signed)
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-* from the load balancer so request.client is the shopper
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    app.include_router(track_router.router)
    app.include_router(shopify_webhooks_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Liveness plus a datastore round-trip. Returns 200 in both cases so load
        balancers keep routing; `database` reports `ok` or `unavailable`.
        """
    )
    def health(gateway: TenantConfigGateway = Depends(get_tenant_gateway)):
        try:
            gateway.probe()
        except SQLAlchemyError as e:
            logger.warning(f"[HEALTH] Datastore probe failed: {e}")
            return schemas.HealthResponse(status="degraded", database="unavailable")
        return schemas.HealthResponse(status="ok", database="ok")

    return app


app = create_app()
