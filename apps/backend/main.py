"""Точка входа FastAPI."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.backend.middleware.request_log import RequestLogMiddleware
from apps.backend.middleware.trace_id import ensure_trace_id
from apps.backend.routers import chat, health, portals
from apps.backend.services.errors import (
    CapabilityDeniedError,
    NotFoundError,
    PortalEngineError,
    RateLimitExceededError,
    StateConflictError,
    TransientDependencyError,
    ValidationError,
)
from apps.backend.utils.api_errors import engine_error_envelope, error_envelope

logger = logging.getLogger(__name__)

# order matters: subclasses before their bases
_STATUS_BY_ERROR: tuple[tuple[type, int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (CapabilityDeniedError, 403),
    (RateLimitExceededError, 429),
    (StateConflictError, 409),
    (TransientDependencyError, 503),
)


def status_for(exc: PortalEngineError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 500


def _trace_id(request: Request) -> str:
    return ensure_trace_id(request.scope)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # shutdown: let queued chat messages finish
    from apps.backend.services.chat import get_chat_manager

    get_chat_manager().shutdown()


app = FastAPI(
    title="CV Portal Engine",
    description="Portal generation and grounded chat over résumé content",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["System"])
app.include_router(portals.router, prefix="/v1", tags=["Portals"])
app.include_router(chat.router, prefix="/v1/chat", tags=["Chat"])


@app.exception_handler(PortalEngineError)
async def engine_error_handler(request: Request, exc: PortalEngineError):
    trace_id = _trace_id(request)
    status = status_for(exc)
    payload = engine_error_envelope(exc, trace_id)
    headers = {"X-Trace-Id": trace_id}
    if isinstance(exc, RateLimitExceededError):
        headers["Retry-After"] = str(exc.retry_after_seconds())
    if status >= 500:
        logger.warning("engine_error trace_id=%s path=%s code=%s", trace_id, request.url.path, exc.code)
    return JSONResponse(content=payload, status_code=status, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    trace_id = _trace_id(request)
    first = exc.errors()[0] if exc.errors() else {}
    detail = ".".join(str(p) for p in first.get("loc", ())) + ": " + str(first.get("msg", "invalid"))
    payload = error_envelope(code="validation_error", message="Fix the request input and retry.", trace_id=trace_id, detail=detail)
    return JSONResponse(content=payload, status_code=422, headers={"X-Trace-Id": trace_id})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    trace_id = _trace_id(request)
    detail = exc.detail if isinstance(exc.detail, str) else (str(exc.detail) if exc.detail else "Error")
    payload = error_envelope(code="http_error", message=detail, trace_id=trace_id)
    resp = JSONResponse(content=payload, status_code=exc.status_code)
    resp.headers["X-Trace-Id"] = trace_id
    return resp


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Never leak internals: JSON envelope with trace_id."""
    trace_id = _trace_id(request)
    logger.exception("Unhandled exception trace_id=%s path=%s", trace_id, request.url.path)
    payload = error_envelope(code="internal_error", message="Internal server error", trace_id=trace_id)
    resp = JSONResponse(content=payload, status_code=500)
    resp.headers["X-Trace-Id"] = trace_id
    return resp
