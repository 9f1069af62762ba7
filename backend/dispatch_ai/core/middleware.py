"""
Middleware for trace ID propagation and request context management.

This middleware:
- Extracts the trace ID from HTTP headers (X-Trace-ID or X-Request-ID)
- Generates a new trace ID if none is present
- Binds the chat session (X-Session-ID) to the logging context
- Records HTTP RED metrics
- Includes trace ID and request ID in the response headers
"""
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import (
    generate_request_id,
    generate_trace_id,
    get_logger,
    set_request_id,
    set_session_id,
    set_trace_id,
)
from .metrics import record_http_request
from .tracing import (
    extract_trace_context,
    get_trace_id_from_context,
    get_tracer,
    record_exception,
    set_span_attribute,
)

logger = get_logger(__name__)


def _uuid_format(hex_trace_id: str) -> str:
    return (
        f"{hex_trace_id[0:8]}-{hex_trace_id[8:12]}-{hex_trace_id[12:16]}-"
        f"{hex_trace_id[16:20]}-{hex_trace_id[20:32]}"
    )


class TraceIDMiddleware(BaseHTTPMiddleware):
    """
    Handle trace ID propagation and request context.

    Priority for the trace ID: X-Trace-ID > X-Request-ID > OpenTelemetry
    context > newly generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        extract_trace_context(dict(request.headers))

        trace_id = request.headers.get("X-Trace-ID") or request.headers.get("X-Request-ID")
        if not trace_id:
            otel_trace_id = get_trace_id_from_context()
            if otel_trace_id and len(otel_trace_id) == 32:
                trace_id = _uuid_format(otel_trace_id)
            else:
                trace_id = generate_trace_id()

        request_id = generate_request_id()
        session_id = request.headers.get("X-Session-ID")

        set_trace_id(trace_id)
        set_request_id(request_id)
        set_session_id(session_id)

        tracer = get_tracer()
        with tracer.start_as_current_span("http.request"):
            set_span_attribute("http.method", request.method)
            set_span_attribute("http.route", request.url.path)
            if session_id:
                set_span_attribute("chat.session_id", session_id)

            start_time = time.time()
            request.state.start_time = start_time
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                client_host=request.client.host if request.client else None,
            )

            try:
                response = await call_next(request)
            except Exception as e:
                process_time = time.time() - start_time
                record_exception(e)
                set_span_attribute("http.status_code", 500)
                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=500,
                    duration_seconds=process_time,
                )
                logger.error(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    error_type=type(e).__name__,
                    latency_ms=int(process_time * 1000),
                    exc_info=True,
                )
                raise
            else:
                process_time = time.time() - start_time
                latency_ms = int(process_time * 1000)
                set_span_attribute("http.status_code", response.status_code)
                record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=response.status_code,
                    duration_seconds=process_time,
                )
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    latency_ms=latency_ms,
                )

                response.headers["X-Trace-ID"] = trace_id
                response.headers["X-Request-ID"] = request_id
                return response
            finally:
                set_trace_id(None)
                set_request_id(None)
                set_session_id(None)
