"""PayMatch API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from http import HTTPStatus

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from paymatch_api.config.env import get_cors_allowed_origins
from paymatch_api.context import org_id_var, request_id_var, user_id_var
from paymatch_api.routers import auth, billing, consent, email, health, onboarding, support, webhooks
from paymatch_api.schemas import ProblemDetail
from paymatch_api.utils import configure_json_logging

PROBLEM_BASE_URL = os.getenv("PROBLEM_BASE_URL", "https://api.paymatch.app/problems")

app = FastAPI(
    title="PayMatch API",
    description="Swiss invoicing SaaS: authentication, onboarding, billing, email and consent.",
    version="0.1.0",
    docs_url="/api-docs",
    redoc_url="/redoc",
)

logger = logging.getLogger(__name__)

# PAYMATCH_JSON_LOGS=false keeps the default text logging (local development)
if os.getenv("PAYMATCH_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

# MDN: credentials mode cannot use wildcard origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["Retry-After", "X-Request-ID"],
)


def _trace_instance() -> str:
    request_id = request_id_var.get()
    return f"urn:paymatch:trace:{request_id}" if request_id else f"urn:paymatch:trace:{uuid.uuid4()}"


# ============================================================================
# HTTP Request Completion Logging Middleware (MUST BE INNER)
# ============================================================================


@app.middleware("http")
async def http_completion_logging_middleware(request: Request, call_next):
    """Emit one "http.request.completed" log per request.

    Fields: method, path, status_code, duration_ms (request_id, user_id and
    org_id come from context variables via JSONFormatter). Logs 500 when the
    handler raised. Per-request user/org context is cleared before and after.
    """
    user_id_var.set("")
    org_id_var.set("")

    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        user_id_var.set("")
        org_id_var.set("")


# ============================================================================
# Request ID Middleware (MUST BE OUTERMOST)
# ============================================================================


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Accept or generate X-Request-ID, expose it to logging, echo it back.

    Registered last so it wraps every other middleware.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================================
# Problem Details (RFC 9457)
# ============================================================================


def _problem(
    status_code: int,
    slug: str,
    detail,
    title: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/{slug}",
        title=title or _status_title(status_code),
        status=status_code,
        detail=detail,
        instance=_trace_instance(),
    )
    return JSONResponse(
        status_code=status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


def _status_title(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return f"HTTP {status_code}"


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Dict details (session gate errors) pass through unchanged; 429 always has Retry-After."""
    headers = dict(exc.headers or {})
    if exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        headers.setdefault("Retry-After", "60")

    detail = exc.detail if exc.detail is not None else _status_title(exc.status_code)
    return _problem(exc.status_code, f"http-{exc.status_code}", detail, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()))
    return _problem(
        422,
        "validation-error",
        f"Invalid field '{field}': {first.get('msg', 'Validation error')}",
        title="Request Validation Failed",
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
    return _problem(
        500,
        "internal-error",
        "An unexpected error occurred. Please try again later.",
    )


app.include_router(health.router, tags=["health"])
for router in (
    auth.router,
    onboarding.router,
    billing.router,
    consent.router,
    email.router,
    email.one_click_router,
    support.router,
    webhooks.router,
):
    app.include_router(router)
