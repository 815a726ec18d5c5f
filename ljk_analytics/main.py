"""
FastAPI Production Application

Main entry point for the LJK Analytics API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import structlog

from ljk_analytics.config import get_settings
from ljk_analytics.config.logging import configure_logging
from ljk_analytics.database.connection import close_database, create_schema, init_database
from ljk_analytics.serving.cache import close_redis, connect_redis_optional
from ljk_analytics.serving.api.middleware import (
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from ljk_analytics.serving.api.routes import (
    health_router,
    dashboard_router,
    reports_router,
    events_router,
)

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()

    logger.info("Starting LJK Analytics API", environment=settings.app_env)

    await init_database()
    await create_schema()
    logger.info("Database initialized")

    if await connect_redis_optional():
        logger.info("Redis initialized")

    yield

    logger.info("Shutting down...")
    await close_redis()
    await close_database()


app = FastAPI(
    title="LJK Analytics API",
    description="Exam statistics aggregation for OMR answer sheets",
    version=settings.version,
    debug=settings.debug,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.security.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Compression
app.add_middleware(GZipMiddleware, minimum_size=1000)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# API routes
app.include_router(health_router, prefix="/api/v1", tags=["Health"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])
app.include_router(reports_router, prefix="/api/v1", tags=["Reports"])
app.include_router(events_router, prefix="/api/v1/events", tags=["Events"])


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus exposition of the aggregation metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": "LJK Analytics API",
        "version": settings.version,
        "environment": settings.app_env,
        "documentation": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
