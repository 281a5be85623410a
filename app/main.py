from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from starlette.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
from app.api import pricing_config, quotes
from app.core.config import settings
from app.core.engine import init_pricing_engine, close_pricing_engine, get_pricing_engine
from app.core.exceptions import PricingError
from app.core.redis import init_redis, close_redis, get_redis, redis_enabled
from app.core.metrics import request_count, request_duration, db_connected, redis_connected, get_metrics_text
import time
import logging

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            request_count.labels(
                method=request.method,
                endpoint=request.url.path,
                status=response.status_code
            ).inc()

            request_duration.labels(
                method=request.method,
                endpoint=request.url.path
            ).observe(duration)

            return response
        except Exception:
            duration = time.time() - start_time
            request_count.labels(
                method=request.method,
                endpoint=request.url.path,
                status=500
            ).inc()
            request_duration.labels(
                method=request.method,
                endpoint=request.url.path
            ).observe(duration)
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting...")

    if redis_enabled():
        logger.info("Initializing Redis connection...")
        try:
            await init_redis()
            redis_connected.set(1)
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            redis_connected.set(0)
            raise

    await init_pricing_engine()
    db_connected.set(1 if settings.AUDIT_BACKEND == "database" else 0)

    yield

    logger.info("Application shutting down...")
    close_pricing_engine()
    if redis_enabled():
        await close_redis()
        redis_connected.set(0)
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.API_TITLE,
    description=settings.API_DESCRIPTION,
    version=settings.API_VERSION,
    lifespan=lifespan
)

app.add_middleware(MetricsMiddleware)

app.include_router(quotes.router)
app.include_router(pricing_config.router)


@app.exception_handler(PricingError)
async def pricing_error_handler(request: Request, exc: PricingError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/metrics", tags=["monitoring"])
async def metrics():
    return Response(
        content=get_metrics_text(),
        media_type="text/plain; version=0.0.4; charset=utf-8"
    )


def _dependencies() -> dict:
    try:
        get_pricing_engine()
        engine_ready = True
    except RuntimeError:
        engine_ready = False
    deps = {"pricing_engine": "ready" if engine_ready else "not initialized"}
    if redis_enabled():
        try:
            get_redis()
            deps["redis"] = "connected"
        except RuntimeError:
            deps["redis"] = "disconnected"
    return deps


@app.get("/health", tags=["monitoring"])
async def health_check():
    return {
        "status": "healthy",
        "service": settings.API_TITLE,
        "version": settings.API_VERSION,
        "dependencies": _dependencies(),
    }


@app.get("/readiness", tags=["monitoring"])
async def readiness_check():
    deps = _dependencies()
    not_ready = [name for name, state in deps.items() if state not in ("ready", "connected")]

    if not_ready:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "reason": f"Not available: {', '.join(not_ready)}"},
        )

    return {
        "ready": True,
        "service": settings.API_TITLE
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "message": settings.API_TITLE,
        "version": settings.API_VERSION,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics"
    }
