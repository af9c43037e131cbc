"""Live Preview Gateway service."""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from preview_gateway import __version__
from preview_gateway.config import settings
from preview_gateway.deps import init_services, shutdown_services
from preview_gateway.exceptions import PreviewGatewayError
from preview_gateway.routes import health_router, previews_router, websocket_router
from preview_gateway.sentry import SentryConfig, configure_logging, init_sentry
from preview_gateway.validation import ValidationError

SERVICE_NAME = "preview-gateway"

# Initialize Sentry
_sentry_config = SentryConfig(
    service_name=SERVICE_NAME,
    dsn=settings.sentry_dsn,
    environment=settings.environment,
    release=f"{SERVICE_NAME}@{__version__}",
    traces_sample_rate=settings.sentry_traces_sample_rate,
    profiles_sample_rate=settings.sentry_profiles_sample_rate,
)
init_sentry(SERVICE_NAME, _sentry_config)

logger = configure_logging(SERVICE_NAME, json_format=settings.environment != "development")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown."""
    logger.info(
        "Starting Live Preview Gateway",
        environment=settings.environment,
        preview_root=settings.preview_root,
    )
    await init_services()

    yield

    logger.info("Shutting down Live Preview Gateway")
    try:
        await asyncio.wait_for(shutdown_services(), timeout=settings.shutdown_timeout)
        logger.info("Graceful shutdown completed")
    except TimeoutError:
        logger.warning(
            "Shutdown timed out after %d seconds, forcing exit",
            settings.shutdown_timeout,
        )


async def _gateway_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, PreviewGatewayError)  # noqa: S101
    if exc.status_code >= 500:  # noqa: PLR2004
        logger.warning("Gateway error", path=request.url.path, error=exc.message)
    content = exc.to_dict()
    content.setdefault("detail", exc.message)
    return JSONResponse(status_code=int(exc.status_code), content=content)


async def _validation_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc), "detail": str(exc)})


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Generic 500 for unhandled exceptions; details only go to the log."""
    error_id = str(uuid.uuid4())[:8]
    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


app = FastAPI(
    title="Live Preview Gateway",
    description="Preview instance lifecycle, rewriting reverse proxy and inspection overlay",
    version=__version__,
    lifespan=lifespan,
)

app.add_exception_handler(PreviewGatewayError, _gateway_error_handler)
app.add_exception_handler(ValidationError, _validation_error_handler)
app.add_exception_handler(Exception, _global_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Instrumentator().instrument(app).expose(app)

app.include_router(health_router)
app.include_router(previews_router)
app.include_router(websocket_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": SERVICE_NAME,
        "version": __version__,
    }


def run() -> None:
    """Console entry point."""
    uvicorn.run(
        "preview_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,
    )
