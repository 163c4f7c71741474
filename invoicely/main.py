"""
FastAPI application for the Invoicely billing service.

Production-ready with:
- Structured logging with request tracing
- Prometheus metrics
- Rate limiting on public endpoints
- Uniform {"error", "message"} error responses
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from invoicely.auth.supabase import close_auth_client
from invoicely.billing.polar_client import close_polar_client
from invoicely.config import get_settings
from invoicely.errors import ServiceError
from invoicely.gmail.oauth import close_google_oauth_client
from invoicely.observability.logging import configure_logging, get_logger
from invoicely.observability.logging_middleware import StructuredLoggingMiddleware
from invoicely.observability.metrics import generate_metrics, track_error
from invoicely.observability.middleware import PrometheusMiddleware, endpoint_label
from invoicely.rate_limits import limiter
from invoicely.routers import billing_router, gmail_router, upload_links_router, usage_router
from invoicely.storage.database import close_billing_db, get_billing_db

# Configure structured logging before anything logs
settings = get_settings()
configure_logging(
    log_level=settings.logging.level,
    json_output=settings.logging.json_output,
    colorized=settings.logging.colorized,
    service_name=settings.logging.service_name,
    service_version=settings.logging.service_version,
    environment=settings.logging.environment,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: open storage on startup, release clients on shutdown."""
    logger.info(
        "Starting Invoicely billing service",
        environment=settings.logging.environment,
        version=settings.logging.service_version,
    )

    db = await get_billing_db()
    logger.info("Billing database ready", db_path=str(db.db_path))

    yield

    logger.info("Shutting down Invoicely billing service")
    await close_polar_client()
    await close_auth_client()
    await close_google_oauth_client()
    close_billing_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Invoicely Billing API",
    description="Checkout, subscription webhooks, usage quotas, Gmail watch renewal and upload links",
    version=settings.logging.service_version,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS
cors_origins = settings.cors.origins_list
if cors_origins == ["*"]:
    logger.warning(
        "CORS configured to allow all origins - INSECURE for production",
        environment=settings.logging.environment,
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=settings.cors.methods_list,
    allow_headers=settings.cors.headers_list,
    max_age=settings.cors.max_age,
)

# Middleware executes in reverse order of registration:
# StructuredLogging (outermost) → Prometheus → routes
app.add_middleware(PrometheusMiddleware)
app.add_middleware(
    StructuredLoggingMiddleware,
    slow_warning_ms=settings.logging.slow_request_warning_ms,
    slow_error_ms=settings.logging.slow_request_error_ms,
)

app.include_router(billing_router)
app.include_router(usage_router)
app.include_router(upload_links_router)
app.include_router(gmail_router)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Render service errors as {"error", "message"}; 5xx detail stays in the logs."""
    track_error(exc.error_code, endpoint_label(request))

    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            path=request.url.path,
            method=request.method,
            error_code=exc.error_code,
            error=exc.message,
            details=exc.details,
            exc_info=exc.__cause__ is not None,
        )
    else:
        logger.info(
            "Request rejected",
            path=request.url.path,
            status_code=exc.status_code,
            error_code=exc.error_code,
        )

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "message": exc.client_message()},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are plain 400s for API callers."""
    logger.info("Validation error", path=request.url.path, errors=len(exc.errors()))
    track_error("invalid_request", endpoint_label(request))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_request", "message": "Invalid request body"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=True,
    )
    track_error(type(exc).__name__, endpoint_label(request))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "message": "Internal server error"},
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness plus storage reachability. 503 when the database is down."""
    db = await get_billing_db()
    database_ok = await db.ping()

    body = {
        "status": "healthy" if database_ok else "unhealthy",
        "service": settings.logging.service_name,
        "version": settings.logging.service_version,
        "components": {"database": "ok" if database_ok else "unavailable"},
    }
    if not database_ok:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


@app.get("/metrics", tags=["Monitoring"])
async def metrics():
    """Prometheus metrics in exposition format."""
    metrics_data, content_type = generate_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.get("/", tags=["System"])
async def root():
    return {
        "service": "Invoicely Billing API",
        "version": settings.logging.service_version,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "invoicely.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        workers=settings.service.workers,
        log_level=settings.service.log_level.lower(),
    )
