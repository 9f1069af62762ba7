import os
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import ConfigurationError, get_settings, load_business_profile
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.middleware import TraceIDMiddleware
from .core.tracing import (
    configure_tracing,
    instrument_fastapi,
    shutdown_tracing,
    get_trace_id_from_context,
    record_exception,
)
from .models.responses import ErrorResponse
from .routes import chat, health, metrics
from .services.ai.errors import (
    BackendRejected,
    CapabilityMismatch,
    DispatchError,
    ExhaustedRetries,
    ParseFailure,
    StreamProtocolError,
    TransientDispatchFailure,
    WorkOrderFailed,
)

# Configure structured logging
# Use JSON output in production (containerized), console output in development
log_level = os.getenv("LOG_LEVEL", "INFO")
json_output = os.getenv("LOG_JSON", "true").lower() == "true"
configure_logging(log_level=log_level, json_output=json_output)

logger = get_logger(__name__)

# Spans are always created; export only when OTEL_EXPORTER_OTLP_ENDPOINT is set
configure_tracing()

app = FastAPI(
    title="Dispatch AI Orchestrator",
    description="Customer-facing assistant for a plumbing business, dispatching turns across LLM backends",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add trace ID middleware (must be after CORS middleware)
app.add_middleware(TraceIDMiddleware)

# Instrument FastAPI with OpenTelemetry (creates automatic spans for HTTP requests)
instrument_fastapi(app)

DISPATCH_STATUS_CODES = {
    CapabilityMismatch: 422,
    BackendRejected: 502,
    ParseFailure: 502,
    StreamProtocolError: 502,
    WorkOrderFailed: 502,
    ExhaustedRetries: 503,
    TransientDispatchFailure: 503,
}


def dispatch_status_code(exc: DispatchError) -> int:
    """HTTP status for a dispatch failure; unknown failures are server errors."""
    for cls in type(exc).__mro__:
        if cls in DISPATCH_STATUS_CODES:
            return DISPATCH_STATUS_CODES[cls]
    return 500


def _trace_headers(trace_id):
    return {"X-Trace-ID": trace_id} if trace_id else None


@app.on_event("startup")
async def startup_event():
    """Validate configuration on application startup."""
    logger.info("app_startup_started")

    # A deployment without a business profile must not start
    try:
        profile = load_business_profile()
    except ConfigurationError as exc:
        logger.error("app_startup_configuration_invalid", error=str(exc))
        raise

    settings = get_settings()
    logger.info(
        "app_startup_completed",
        business=profile.name,
        fast_model=settings.fast_model,
        reasoning_model=settings.reasoning_model,
        openai_configured=bool(settings.openai_api_key),
        anthropic_configured=bool(settings.anthropic_api_key),
        deep_analysis=settings.enable_deep_analysis,
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on application shutdown."""
    logger.info("app_shutdown_started")
    shutdown_tracing()
    logger.info("app_shutdown_completed")


# Error handlers
@app.exception_handler(DispatchError)
async def dispatch_exception_handler(request: Request, exc: DispatchError):
    """Typed dispatch failures: status by type, always with the contact instruction."""
    trace_id = get_trace_id() or get_trace_id_from_context()
    status_code = dispatch_status_code(exc)

    logger.warning(
        "dispatch_failed",
        status_code=status_code,
        error_type=exc.error_type,
        error=exc.message,
        backend=exc.backend,
        path=request.url.path,
        method=request.method,
    )
    body = ErrorResponse(
        error_type=exc.error_type,
        detail=exc.message,
        instruction=exc.instruction,
        fallback_contact=True,
        trace_id=trace_id,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(),
        headers=_trace_headers(trace_id),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    trace_id = get_trace_id() or get_trace_id_from_context()

    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "status_code": exc.status_code,
            "trace_id": trace_id,
        },
        headers=_trace_headers(trace_id),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    trace_id = get_trace_id() or get_trace_id_from_context()

    record_exception(exc)

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "status_code": 500,
            "trace_id": trace_id,
        },
        headers=_trace_headers(trace_id),
    )


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(chat.router, prefix="/chat", tags=["Chat"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
