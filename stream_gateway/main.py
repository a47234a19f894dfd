import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from stream_gateway.api.v1.router import api_v1_router
from stream_gateway.core.config import settings, validate_settings_for_production
from stream_gateway.core.logging import setup_logging
from stream_gateway.core.metrics import PrometheusMiddleware, metrics_response
from stream_gateway.core.sentry import init_sentry

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; generation requests will fail with 500")
    logger.info("Starting stream gateway (default model %s)...", settings.default_model)

    yield

    logger.info("Stream gateway shut down")


app = FastAPI(
    title="Stream Gateway",
    description="Streaming LLM inference gateway with a terminal metadata envelope",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(
        status_code=500,
        content={"error": f"{type(exc).__name__}: {exc}"},
        headers={"Access-Control-Allow-Origin": "*"},
    )


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Unsupported methods get an empty 405, whatever the method name
    if exc.status_code == 405:
        return Response(
            status_code=405,
            headers={**(exc.headers or {}), "Access-Control-Allow-Origin": "*"},
        )
    return await http_exception_handler(request, exc)


# Request metrics middleware
app.add_middleware(PrometheusMiddleware)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health():
    return {
        "status": "ok",
        "model": settings.default_model,
        "upstream_configured": bool(settings.gemini_api_key),
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


def run() -> None:
    """Serve the app with uvicorn using host/port from settings."""
    import uvicorn

    uvicorn.run("stream_gateway.main:app", host=settings.app_host, port=settings.app_port)
