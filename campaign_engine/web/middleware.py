# campaign_engine/web/middleware.py
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from campaign_engine.common.metrics import HTTP_LATENCY, HTTP_REQUESTS
from campaign_engine.common.tracing import new_trace_id, trace_scope

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's request id (or mint one) and bind it as the trace id."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or new_trace_id()
        request.state.request_id = request_id
        with trace_scope(request_id):
            response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        start = time.time()
        response = await call_next(request)
        HTTP_LATENCY.observe(time.time() - start)
        HTTP_REQUESTS.labels(request.method, request.url.path, f"{response.status_code // 100}xx").inc()
        return response


def setup_middleware(app: FastAPI):
    """Attach request id and metrics middleware."""
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(MetricsMiddleware)
