"""
FastAPI service for the flow execution engine.

Exposes sandbox, live and durable (Temporal) flow runs, validation,
schedules, execution records and durable workflow control.
"""

# Performance: Install uvloop if available (Linux/macOS only)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass  # Windows - uvloop not available, use default asyncio

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from flowrunner import __version__
from flowrunner.core.container import container
from flowrunner.core.logging import configure_logging, get_logger
from flowrunner.routers import durable, flows
from flowrunner.services.execution.exceptions import FlowValidationError, RuntimeConnectivityError
from flowrunner.services.temporal.worker import TemporalWorkerManager

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting flow execution service")

    if settings.execution_records_enabled:
        await container.database().startup()
    await container.api_client().startup()

    temporal_client = container.temporal_client()
    worker_manager = None
    if settings.temporal_enabled:
        try:
            await temporal_client.connect()
        except RuntimeConnectivityError as e:
            # Durable runs fall back to local execution until Temporal is reachable
            logger.warning("Temporal unavailable, durable runs will fall back", error=str(e))

        if settings.temporal_worker_enabled and temporal_client.is_connected:
            worker_manager = TemporalWorkerManager(temporal_client.client, settings, container.api_client())
            await worker_manager.start()

    scheduler = container.flow_scheduler()
    if settings.scheduler_enabled:
        scheduler.start()

    logger.info("Services started successfully",
                temporal_connected=temporal_client.is_connected,
                worker_running=worker_manager is not None and worker_manager.is_running,
                scheduler_running=scheduler.running)
    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown()
    if worker_manager is not None:
        await worker_manager.stop()
    await temporal_client.disconnect()
    await container.api_client().shutdown()
    if settings.execution_records_enabled:
        await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Flow Execution Engine",
    version=__version__,
    description="Flow execution with sandbox, live and Temporal-backed durable modes",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


@app.exception_handler(FlowValidationError)
async def flow_validation_error_handler(request: Request, exc: FlowValidationError):
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "error": str(exc), "errors": exc.errors, "warnings": exc.warnings}
    )


@app.exception_handler(RuntimeConnectivityError)
async def runtime_connectivity_error_handler(request: Request, exc: RuntimeConnectivityError):
    logger.warning("Durable runtime unreachable", path=request.url.path, error=str(exc))
    return ORJSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"success": False, "error": str(exc), "detail": "Durable runtime unavailable"}
    )


# Exception middleware first, CORS after it
app.add_middleware(CatchAllExceptionsMiddleware)

logger.info("Configuring CORS middleware",
            origins_count=len(settings.cors_origins),
            origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include routers
app.include_router(flows.router)
app.include_router(durable.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    scheduler = container.flow_scheduler()
    return {
        "status": "OK",
        "service": "flowrunner",
        "version": __version__,
        "environment": "development" if settings.is_development else "production",
        "temporal": {
            "enabled": settings.temporal_enabled,
            "connected": container.temporal_client().is_connected,
            "task_queue": settings.temporal_task_queue,
        },
        "scheduler": {
            "enabled": settings.scheduler_enabled,
            "running": scheduler.running,
            "jobs": len(scheduler.list_jobs()),
        },
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting flow execution service",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "flowrunner.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )
