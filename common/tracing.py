"""
Correlation ID-based request tracing for the allocation service
"""
import uuid
import time
import json
from typing import Optional
from contextvars import ContextVar
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

class TraceSpan:
    """Simple span implementation for tracing"""

    def __init__(self, name: str, trace_id: str = None, parent_span_id: str = None):
        self.span_id = str(uuid.uuid4())[:8]
        self.trace_id = trace_id or str(uuid.uuid4())[:16]
        self.parent_span_id = parent_span_id
        self.name = name
        self.start_time = time.time()
        self.end_time = None
        self.tags = {}
        self.status = "ok"
        self._tokens = (trace_id_var.set(self.trace_id), span_id_var.set(self.span_id))

    def add_tag(self, key: str, value):
        self.tags[key] = value
        return self

    def set_error(self, error: Exception):
        """Mark span as error"""
        self.status = "error"
        self.add_tag("error", True)
        self.add_tag("error.type", type(error).__name__)
        self.add_tag("error.message", str(error))
        return self

    def finish(self):
        self.end_time = time.time()
        duration_ms = (self.end_time - self.start_time) * 1000

        trace_data = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.name,
            "duration_ms": round(duration_ms, 2),
            "status": self.status,
            "tags": self.tags,
            "timestamp": self.start_time
        }

        logger.info(f"TRACE: {json.dumps(trace_data, default=str)}")
        trace_id_token, span_id_token = self._tokens
        span_id_var.reset(span_id_token)
        trace_id_var.reset(trace_id_token)
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.set_error(exc_val)
        self.finish()

class Tracer:
    """Creates spans tagged with the owning service"""

    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: str = None, parent_span_id: str = None) -> TraceSpan:
        span = TraceSpan(name, trace_id, parent_span_id)
        span.add_tag("service.name", self.service_name)
        return span

    def start_span_from_request(self, request: Request, operation_name: str) -> TraceSpan:
        """Start span from HTTP request headers"""
        trace_id = request.headers.get("X-Trace-ID")
        parent_span_id = request.headers.get("X-Span-ID")

        span = self.start_span(operation_name, trace_id, parent_span_id)
        span.add_tag("http.method", request.method)
        span.add_tag("http.path", request.url.path)
        return span

allocation_tracer = Tracer("payout-allocation")

def get_current_trace_id() -> Optional[str]:
    return trace_id_var.get()

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """FastAPI middleware for automatic request tracing"""
    operation_name = f"{request.method} {request.url.path}"

    with tracer.start_span_from_request(request, operation_name) as span:
        # Error handlers read these when building the error envelope
        request.state.trace_id = span.trace_id
        request.state.request_id = request.headers.get("X-Request-ID") or span.span_id

        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)

        if response.status_code >= 400:
            span.add_tag("error", True)
            span.status = "error"

        response.headers["X-Trace-ID"] = span.trace_id
        response.headers["X-Span-ID"] = span.span_id
        return response
