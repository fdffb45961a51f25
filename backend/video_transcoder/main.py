"""FastAPI application entry point."""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response

from video_transcoder.core.config import settings
from video_transcoder.core.logging import setup_logging
from video_transcoder.core.metrics import get_content_type, get_metrics, set_app_info
from video_transcoder.core.middleware import CorrelationIdMiddleware, RequestObservabilityMiddleware
from video_transcoder.core.tracing import setup_tracing, shutdown_tracing
from video_transcoder.modules.transcoding.router import router as transcoding_router

ENVIRONMENT = "development" if settings.DEBUG else "production"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush spans still buffered in the batch processors
    shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Video Transcoding Service

Downloads a source video from object storage, transcodes it into an HLS
rendition ladder (240p up to the source's own tier) and publishes the
playlists and segments to the destination bucket.

The transcode call streams one or more `{"filename": ...}` lines
(`application/x-ndjson`); the last one is transcoded.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "transcoding",
            "description": "Video transcoding into HLS renditions",
        },
    ],
)

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=ENVIRONMENT,
    otlp_endpoint=settings.OTLP_ENDPOINT,
    enable_console_export=settings.TRACING_CONSOLE_EXPORT or settings.DEBUG,
)

set_app_info(version=settings.VERSION, environment=ENVIRONMENT)

# Last added runs first: the correlation id is bound before the access log line is written
app.add_middleware(RequestObservabilityMiddleware)
app.add_middleware(CorrelationIdMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(transcoding_router, prefix=settings.API_V1_PREFIX)


def run() -> None:
    """Run the server with uvicorn."""
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
