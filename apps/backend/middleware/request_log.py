"""Middleware: trace_id на каждый запрос и access-лог без тел сообщений."""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from apps.backend.middleware.trace_id import ensure_trace_id

logger = logging.getLogger("uvicorn.error")


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        trace_id = ensure_trace_id(request.scope)
        request.state.trace_id = trace_id
        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Trace-Id"] = trace_id
        # chat tokens in paths are credentials of a visitor session
        path = request.url.path
        if path.startswith("/v1/chat/sessions/"):
            path = "/v1/chat/sessions/***"
        logger.info(
            "http_request trace_id=%s method=%s path=%s status=%s latency_ms=%s",
            trace_id,
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
