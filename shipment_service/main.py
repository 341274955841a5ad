"""
Shipment Service
FastAPI application entry point

- Orchestrator built once per process in the lifespan
- Request id propagation and request metrics middleware
- Error sanitization middleware plus taxonomy exception handlers
- Health endpoint with DB ping, Prometheus metrics endpoint
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.responses import Response

from shipment_service.api import api_router
from shipment_service.core.config import settings
from shipment_service.core.database import AsyncSessionLocal, dispose_engine, init_models
from shipment_service.core.error_handler import ErrorSanitizationMiddleware, register_exception_handlers
from shipment_service.core.logging_config import setup_logging
from shipment_service.core.monitoring import RequestMetricsMiddleware, get_prometheus_metrics, metrics
from shipment_service.core.request_context import RequestContextMiddleware
from shipment_service.modules.shipping.carriers import AdapterRegistry
from shipment_service.modules.shipping.regions import RegionResolver
from shipment_service.services.order_gateway import HttpOrderGateway
from shipment_service.services.shipment_repository import ShipmentRepository
from shipment_service.services.shipping_service import ParcelLimits, ShippingService

logger = logging.getLogger(__name__)


def build_shipping_service() -> ShippingService:
    """Wire the orchestrator from settings."""
    mode = settings.shipping_mode
    return ShippingService(
        store=ShipmentRepository(),
        registry=AdapterRegistry.from_settings(settings, modes=(mode,)),
        orders=HttpOrderGateway(
            settings.ORDER_SERVICE_URL,
            token=settings.ORDER_SERVICE_TOKEN,
            timeout_seconds=settings.ORDER_SERVICE_TIMEOUT_SECONDS,
        ),
        mode=mode,
        resolver=RegionResolver(home_region=settings.SHIPPING_HOME_REGION),
        collector=metrics,
        limits=ParcelLimits.from_settings(settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Create tables and the orchestrator on startup; close carrier and order
    service HTTP clients and the engine on shutdown.
    """
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE or None)
    await init_models()

    service = build_shipping_service()
    app.state.shipping_service = service
    logger.info(
        f"{settings.APP_NAME} started: environment={settings.ENVIRONMENT} "
        f"mode={service.mode} home_region={service.resolver.home_region}"
    )

    yield

    await service.registry.close()
    await service.orders.close()
    await dispose_engine()
    logger.info("Carrier and order service HTTP clients closed")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Creates, tracks, cancels and quotes shipments across regional carriers.",
    version="1.0.0",
)

# Request metrics collection
app.add_middleware(RequestMetricsMiddleware)

# Error sanitization (catches unhandled exceptions)
app.add_middleware(ErrorSanitizationMiddleware)

# Outermost: request id is set before anything else runs
app.add_middleware(RequestContextMiddleware)

register_exception_handlers(app)

app.include_router(api_router, prefix=f"/api/{settings.API_VERSION}")


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with an actual DB ping.
    Returns 503 if database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/metrics", tags=["Health"])
async def prometheus_metrics():
    """Prometheus-compatible metrics in text format."""
    return Response(
        content=get_prometheus_metrics(),
        media_type="text/plain; charset=utf-8"
    )
