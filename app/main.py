"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin_routes import router as admin_router
from app.api.dependencies import build_valuation_service
from app.api.errors import appraisal_error_handler
from app.api.routes import router
from app.api.tool_routes import router as tool_router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.repository import SqlAlchemyValuationStore
from app.db.session import close_engine, get_engine, get_session_factory
from app.exceptions import AppraisalError
from app.observability import get_logger, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from app.services.analysis_provider import AnthropicAnalysisProvider
from app.services.blob_storage import SupabaseBlobStorage
from app.services.entitlement import EntitlementService
from app.services.sweeper import StaleRequestSweeper
from app.services.valuation import ValuationService
from app.services.valuation_client import ValuationClient

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the long-lived provider and storage clients, starts the stale
    request sweeper and tears everything down on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        model=settings.anthropic_model,
        anonymous_valuations_enabled=settings.anonymous_valuations_enabled,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations:
        await asyncio.to_thread(run_migrations)

    instrument_sqlalchemy(get_engine())

    provider = AnthropicAnalysisProvider(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_tokens=settings.anthropic_max_tokens,
        timeout_seconds=settings.analysis_timeout_seconds,
    )
    client = ValuationClient(
        provider,
        max_retries=settings.analysis_max_retries,
        backoff_seconds=settings.analysis_retry_backoff_seconds,
    )
    blobs = SupabaseBlobStorage(
        base_url=settings.supabase_url,
        service_key=settings.supabase_service_key,
        bucket=settings.storage_bucket,
        timeout_seconds=settings.storage_timeout_seconds,
    )

    app.state.valuation_client = client
    app.state.blob_storage = blobs

    def service_for(session: AsyncSession) -> ValuationService:
        store = SqlAlchemyValuationStore(session)
        return build_valuation_service(store, EntitlementService(store), client, blobs, settings)

    sweeper = StaleRequestSweeper(
        get_session_factory(), service_for, interval_seconds=settings.sweep_interval_seconds
    )
    if settings.sweeper_enabled:
        sweeper.start()

    yield

    logger.info("application_shutting_down")
    await sweeper.stop()
    await provider.close()
    await blobs.close()
    await close_engine()
    logger.info("application_stopped")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)

app.add_exception_handler(AppraisalError, appraisal_error_handler)  # type: ignore[arg-type]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log request body validation failures."""
    sanitized_errors = [
        {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        for error in exc.errors()
    ]
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def route_template(request: Request) -> str:
    """Matched route path (e.g. /v1/valuations/{request_id}) for metric labels."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    logger.info("request_started", method=method, path=endpoint, request_id=request_id)
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    try:
        response = await call_next(request)
        duration = time.perf_counter() - start_time
        metrics.record_http_request(
            route_template(request), method, response.status_code, duration
        )
        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )
        return response
    except Exception as e:
        duration = time.perf_counter() - start_time
        metrics.record_http_request(route_template(request), method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")
        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)
app.include_router(tool_router)
app.include_router(admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
