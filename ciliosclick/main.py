"""
FastAPI application entry point for the CíliosClick provisioning service.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from ciliosclick.api.v1.routes import admin as admin_router
from ciliosclick.api.v1.routes import webhook as webhook_router
from ciliosclick.core.config import get_settings
from ciliosclick.core.database import close_db_engine
from ciliosclick.core.exception_handlers import EXCEPTION_HANDLERS
from ciliosclick.core.health import get_health_status
from ciliosclick.core.logging import get_logger
from ciliosclick.core.prometheus_metrics import get_metrics_response

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    # Startup
    logger.info("Starting CíliosClick provisioning service")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.DEBUG}")
    if not settings.webhook_secret and not settings.hottok:
        logger.error(
            "Neither HOTMART_WEBHOOK_SECRET nor HOTMART_HOTTOK is configured; "
            "every webhook delivery will be rejected"
        )

    yield

    # Shutdown
    logger.info("Shutting down CíliosClick provisioning service")
    await close_db_engine()


# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.APP_VERSION,
    description="Provisions CíliosClick accounts from a pre-created pool on Hotmart purchase webhooks",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# CORS middleware
allowed_origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
if "*" in allowed_origins and settings.ENVIRONMENT == "production":
    logger.warning("CORS allow_origins is set to '*' in production! This is a security risk.")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# Register exception handlers
for exception_type, handler in EXCEPTION_HANDLERS.items():
    app.add_exception_handler(exception_type, handler)


# Health check endpoints
@app.get("/health/live")
async def health_live():
    """Liveness probe."""
    return {"status": "alive"}


@app.get("/health/ready")
async def health_ready():
    """
    Readiness probe.

    503 only when PostgreSQL is unreachable; a low pool reports degraded.
    """
    health_status = await get_health_status()

    if health_status["status"] == "unhealthy":
        return JSONResponse(
            status_code=503,
            content=health_status,
        )
    return health_status


@app.get("/health")
async def health():
    """Detailed health check endpoint."""
    return await get_health_status()


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    metrics_text, content_type = get_metrics_response()
    return Response(content=metrics_text, media_type=content_type)


# Include routers
app.include_router(webhook_router.router)
app.include_router(admin_router.router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ciliosclick.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
