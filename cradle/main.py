"""
Cradle ledger - care event ledger and SweetSpot sleep prediction service.

Features:
- Optimistic care event appends with rollback on failed writes
- Realtime cross-device invalidation via a change feed
- Age-based sleep window prediction
- Structured logging, Prometheus metrics, health checks
"""
from fastapi import FastAPI, Depends
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from .config import get_settings
from .logging import setup_logging, get_logger
from .api.router import router
from .api.ws_router import router as ws_router
from .api.errors import register_error_handlers
from .middleware import RequestIdMiddleware, MetricsMiddleware
from .metrics import Metrics
from .health import HealthChecker
from .services.care_service import CareService, get_care_service, set_care_service

VERSION = "0.1.0"

settings = get_settings()

setup_logging(json_output=settings.LOG_JSON, service_name="cradle", level=settings.LOG_LEVEL)
logger = get_logger()

metrics = Metrics(service_name="cradle", version=VERSION)
health_checker = HealthChecker(service_name="cradle", version=VERSION)

# Process-wide service, carrying the app's metrics
set_care_service(CareService(metrics=metrics))

app = FastAPI(
    title="Cradle Ledger",
    version=VERSION,
    description="Care event ledger with optimistic sync and sleep window prediction",
)
app.state.metrics = metrics

# Order matters: request id first, then metrics
app.add_middleware(MetricsMiddleware, metrics=metrics)
app.add_middleware(RequestIdMiddleware)

register_error_handlers(app)
app.include_router(router)
app.include_router(ws_router)

metrics_app = make_asgi_app(registry=metrics.registry)
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    """Liveness probe. Returns 200 while the process is running."""
    logger.debug("health_check_liveness")
    return health_checker.liveness()


@app.get("/health/ready")
async def health_ready(care: CareService = Depends(get_care_service)):
    """
    Readiness probe.

    Checks:
    - Event store reachability
    - Change feed reachability (degraded, not failed, when down)
    - Disk space and memory

    Returns:
        200: ready or degraded
        503: not ready
    """
    logger.debug("health_check_readiness")
    result = await health_checker.readiness(care)
    status_code = 503 if result["status"] == "not_ready" else 200
    return JSONResponse(result, status_code=status_code)


@app.on_event("startup")
async def startup_event():
    logger.info(
        "service_starting",
        version=VERSION,
        env=settings.ENV,
        store_adapter=settings.STORE_ADAPTER,
        feed_adapter=settings.FEED_ADAPTER,
        redis_configured=bool(settings.REDIS_URL),
    )


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("service_stopping")
    await get_care_service().shutdown()
    metrics.app_up.labels(service="cradle", version=VERSION).set(0)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cradle.main:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
        reload=True,
    )
