"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from airwave.routers import matrices, webhooks
from airwave.services.creatomate import RenderServiceError
from airwave.services.matrix_renderer import MatrixRenderer
from airwave.services.matrix_store import MatrixNotFound, MatrixValidationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    renderer = app.state.renderer
    scheduler = None
    try:
        from airwave.scheduler import build_scheduler
        scheduler = build_scheduler(renderer)
        scheduler.start()
        logger.info("Scheduler started — polling renders and recovering orphaned rows")
    except Exception as e:
        logger.warning("Scheduler failed to start: %s", e)

    # Rows left queued/rendering by a previous process
    try:
        await renderer.recover_orphaned_rows()
    except Exception as e:
        logger.warning("Startup render recovery failed: %s", e)

    yield

    if scheduler is not None:
        try:
            scheduler.shutdown(wait=False)
        except Exception as e:
            logger.warning("Scheduler shutdown failed: %s", e)


def create_app(renderer: MatrixRenderer | None = None) -> FastAPI:
    app = FastAPI(
        title="AIrWAVE Render Service",
        description="Matrix combination generation and video render orchestration.",
        version="1.0.0",
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
        openapi_url="/api/v1/openapi.json",
        lifespan=lifespan,
    )
    app.state.renderer = renderer or MatrixRenderer()

    @app.exception_handler(MatrixValidationError)
    async def validation_error(request: Request, exc: MatrixValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(MatrixNotFound)
    async def not_found(request: Request, exc: MatrixNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(RenderServiceError)
    async def render_service_error(request: Request, exc: RenderServiceError):
        logger.error("Render service error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    app.include_router(matrices.router)
    app.include_router(matrices.queue_router)
    app.include_router(webhooks.router, include_in_schema=False)

    return app
