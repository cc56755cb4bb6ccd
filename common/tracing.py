"""
Correlation ids for HTTP requests and accrual reconciliation.

A span logs one ``TRACE:`` JSON line when it closes. A span opened while
another one is active joins its trace, so each order reconciled in a tick
shares the tick's trace id and every call to the accrual system carries the
id of the order span it was made from.
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Dict, Optional
from fastapi import Request

logger = logging.getLogger(__name__)

_active_span: ContextVar[Optional["TraceSpan"]] = ContextVar("active_span", default=None)

def _short_id(length: int) -> str:
    return uuid.uuid4().hex[:length]

class TraceSpan:
    def __init__(self, service: str, operation: str, trace_id: Optional[str] = None,
                 parent_id: Optional[str] = None):
        self.service = service
        self.operation = operation
        self.trace_id = trace_id or _short_id(16)
        self.span_id = _short_id(8)
        self.parent_id = parent_id
        self.tags: Dict[str, object] = {}
        self.failed = False
        self._started = time.monotonic()
        self._token = None

    def tag(self, **tags) -> "TraceSpan":
        self.tags.update(tags)
        return self

    def fail(self, error: Exception) -> "TraceSpan":
        self.failed = True
        return self.tag(error_type=type(error).__name__, error_message=str(error))

    def __enter__(self) -> "TraceSpan":
        self._token = _active_span.set(self)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_val is not None:
            self.fail(exc_val)
        _active_span.reset(self._token)

        record = {
            "service": self.service,
            "operation": self.operation,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_id": self.parent_id,
            "duration_ms": round((time.monotonic() - self._started) * 1000, 2),
            "status": "error" if self.failed else "ok",
            "tags": self.tags,
        }
        logger.info(f"TRACE: {json.dumps(record, default=str)}")

class Tracer:
    def __init__(self, service: str):
        self.service = service

    def span(self, operation: str, trace_id: Optional[str] = None,
             parent_id: Optional[str] = None) -> TraceSpan:
        """New span; joins the active span's trace unless a trace id is given."""
        parent = _active_span.get()
        if trace_id is None and parent is not None:
            trace_id, parent_id = parent.trace_id, parent.span_id
        return TraceSpan(self.service, operation, trace_id, parent_id)

api_tracer = Tracer("loyalty-api")
accrual_tracer = Tracer("accrual-reconciler")

def trace_headers() -> Dict[str, str]:
    """Headers that carry the active span to another service"""
    span = _active_span.get()
    if span is None:
        return {}
    return {"X-Trace-ID": span.trace_id, "X-Span-ID": span.span_id}

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    with tracer.span(
        f"{request.method} {request.url.path}",
        trace_id=request.headers.get("X-Trace-ID"),
        parent_id=request.headers.get("X-Span-ID"),
    ) as span:
        span.tag(session="token" in request.cookies)
        request.state.trace_id = span.trace_id

        response = await call_next(request)
        span.tag(status_code=response.status_code)
        if response.status_code >= 500:
            span.failed = True

        response.headers["X-Trace-ID"] = span.trace_id
        response.headers["X-Span-ID"] = span.span_id
        return response
