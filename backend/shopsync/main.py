"""FastAPI application entrypoint.

Configures CORS, error tracking, the shared sync service, routers, and exposes
a healthcheck endpoint.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import os
import logging
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .telemetry import init_sentry
from .routers import shopify_sync as shopify_sync_router
from .routers import metrics as metrics_router
from .services.shopify_sync_service import ShopifySyncService
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="shopsync API",
        description="""
        Shopify order sync engine and financial metrics.

        This API provides endpoints for:
        - Starting, stopping and monitoring order syncs
        - Refund backfill and product/variant cost sync
        - Ghost sync cleanup
        - Net revenue / net profit metrics
        """,
        version="0.1.0",
    )

    # Trust X-Forwarded-Proto headers from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    # BACKEND_CORS_ORIGINS can be a comma-separated list: "https://app.example.com,http://localhost:3000"
    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", "http://localhost:3000")
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # One breaker + concurrency gate for every sync started by this process
    app.state.sync_service = ShopifySyncService()

    app.include_router(shopify_sync_router.router)
    app.include_router(metrics_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(
            status="ok",
            circuit_breaker=app.state.sync_service.breaker.get_status(),
        )

    return app


app = create_app()
