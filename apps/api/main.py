"""
Running Days API

HTTP surface of the service: the Health Auto Export push endpoint, device
sync, workout/progress reads, goals, webhook tokens and outbound subscriber
management. Background delivery lives in ``tasks/``.
"""
import logging
import time
import uuid
from typing import List

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sqlalchemy.exc import OperationalError

from core.clock import isoformat_z, utcnow
from core.config import settings
from core.database import check_db_connection
from core.exceptions import APIException
from core.logging import setup_logging
from core.rate_limit import RateLimitMiddleware
from routers import goals, outbound_webhooks, progress, webhook, webhook_tokens, workouts

setup_logging()
logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# Never forwarded to Sentry: session JWTs and webhook tokens.
SENSITIVE_HEADERS = ("authorization", "cookie", "x-webhook-token")


def scrub_event(event, hint=None):
    request = event.get("request") or {}
    headers = request.get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in SENSITIVE_HEADERS:
                headers[name] = "[filtered]"
    # The export app sends its token as ?token=.
    if request.get("query_string"):
        request["query_string"] = "[filtered]"
    return event


def init_sentry() -> None:
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"running-days@{APP_VERSION}",
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            CeleryIntegration(),
        ],
        send_default_pii=False,
        before_send=scrub_event,
    )
    logger.info(f"Sentry enabled ({settings.ENVIRONMENT})")


def cors_origins() -> List[str]:
    if settings.DEBUG:
        return ["*"]
    if settings.CORS_ORIGINS:
        return [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


init_sentry()

app = FastAPI(
    title="Running Days API",
    description="Workout ingestion, device sync, streaks, goals and outbound webhooks",
    version=APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Webhook-Token", "X-Request-ID"],
)

if settings.RATE_LIMIT_ENABLED:
    app.add_middleware(RateLimitMiddleware, default_limit=settings.RATE_LIMIT_PER_MINUTE, window=60)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag every request with an id (client-supplied or new) and log its outcome."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    started = time.monotonic()
    context = {"request_id": request_id, "method": request.method, "path": request.url.path}

    try:
        response = await call_next(request)
    except Exception:
        logger.error("Request crashed", exc_info=True, extra={"extra_fields": context})
        raise

    elapsed_ms = round((time.monotonic() - started) * 1000, 2)
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={"extra_fields": {**context, "status_code": response.status_code, "duration_ms": elapsed_ms}},
    )
    response.headers["X-Request-ID"] = request_id
    return response


def jsonable_errors(exc: RequestValidationError):
    # Drop echoed input; ``ctx`` may hold the raw exception object.
    return [
        {key: (str(value) if key == "ctx" else value) for key, value in error.items() if key != "input"}
        for error in exc.errors()
    ]


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_errors(exc), "error_code": "VALIDATION_ERROR"},
    )


@app.exception_handler(OperationalError)
async def storage_exception_handler(request: Request, exc: OperationalError):
    """Nothing was applied; batch keys and dedup make the retry safe."""
    logger.error(
        f"Storage unavailable: {exc}",
        extra={"extra_fields": {"method": request.method, "path": request.url.path}},
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage unavailable, retry later", "error_code": "STORAGE_UNAVAILABLE"},
        headers={"Retry-After": "30"},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={"extra_fields": {"method": request.method, "path": request.url.path}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


@app.get("/health")
def health():
    """200 when the database answers, 503 otherwise. Redis is optional and not checked."""
    if not check_db_connection():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "unavailable", "version": APP_VERSION},
        )
    return {"status": "healthy", "database": "ok", "version": APP_VERSION}


@app.get("/health/ready")
def readiness():
    """Ready for traffic only once the database answers."""
    if not check_db_connection():
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "not_ready"})
    return {"status": "ready", "timestamp": isoformat_z(utcnow())}


@app.get("/health/live")
async def liveness():
    """The process is serving requests. Touches nothing else."""
    return {"status": "live", "timestamp": isoformat_z(utcnow())}


@app.get("/ping")
async def ping():
    return {"pong": True}


for module in (webhook, workouts, progress, goals, webhook_tokens, outbound_webhooks):
    app.include_router(module.router)
