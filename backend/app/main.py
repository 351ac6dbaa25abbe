"""
ASGI application of the station rainfall service.

    uvicorn backend.app.main:app --port 8000
    python -m backend.app.main        # HOST / PORT from settings, reload in development
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api.v1.forecast import router as forecast_router
from backend.app.api.v1.stations import router as stations_router
from backend.app.core.cache import close_redis
from backend.app.core.config import settings
from backend.app.core.database import create_reading_tables, dispose_engine
from backend.app.core.errors import register_error_handlers
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.logging_config import get_logger, setup_logging
from backend.app.core.middleware import RequestLoggingMiddleware

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "%s v%s starting (%s, series cache %s)",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        "on" if settings.SERIES_CACHE_ENABLED else "off",
    )
    if settings.DATABASE_AUTO_CREATE:
        await create_reading_tables()
    try:
        yield
    finally:
        await close_redis()
        await dispose_engine()
        logger.info("%s stopped", settings.APP_NAME)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Accumulated rainfall (24h to 45d) per gauge station and a "
        "statistical next-month rainfall outlook built from it."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
register_error_handlers(app)

app.include_router(stations_router)
app.include_router(forecast_router)


@app.get("/", tags=["service"])
async def service_info():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "routes": {
            "accumulated": "/api/v1/stations/{station_code}/accumulated",
            "station_forecast": "/api/v1/stations/{station_code}/forecast",
            "forecast": "/api/v1/forecast",
            "categories": "/api/v1/forecast/categories",
        },
    }


@app.get("/health/live", tags=["service"])
async def liveness():
    return {"status": "alive"}


@app.get("/health", tags=["service"])
async def health():
    return (await run_health_check()).to_dict()


@app.get("/health/ready", tags=["service"])
async def readiness():
    """503 while the reading store is unreachable."""
    report = await run_health_check()
    status_code = 503 if report.status is HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status_code, content=report.to_dict())


if __name__ == "__main__":
    uvicorn.run(
        "backend.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_config=None,
    )
