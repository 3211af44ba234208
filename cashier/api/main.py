"""Cashier API — FastAPI application wiring webhooks and payment confirmation."""
from __future__ import annotations

import logging

from cashier.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException
from fastapi import Request as FastAPIRequest
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from cashier.api.deps import get_dispatcher, get_gateway
from cashier.api.payments import router as payments_router
from cashier.api.webhooks import router as webhooks_router
from cashier.db.engine import engine, get_session
from cashier.db.tables import Base
from cashier.errors import (
    GatewayError,
    GatewayUnavailableError,
    IncompletePayment,
    InvalidStateError,
    NotFoundError,
    WebhookVerificationError,
)
from cashier.middleware.request_id import RequestIDMiddleware

VERSION = "0.1.0"

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Card and customer data must not leave the process
        send_default_pii=False,
        before_send=lambda event, hint: (
            {**event, "request": {**event.get("request", {}), "cookies": None, "data": None}}
            if "request" in event else event
        ),
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config, build the webhook table, create tables."""
    from cashier.startup_checks import validate_settings
    validate_settings()

    dispatcher = get_dispatcher()
    logger.info("Webhook handlers registered: %s", ", ".join(dispatcher.event_types))

    # Import all tables so they're registered with Base.metadata
    import cashier.db.user_tables  # noqa: F401
    import cashier.db.subscription_tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    yield

    logger.info("Shutting down — draining connections...")
    await get_gateway().aclose()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Cashier Billing API",
    version=VERSION,
    description="Subscription billing: gateway webhooks and payment confirmation",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID tracing
app.add_middleware(RequestIDMiddleware)

app.include_router(webhooks_router)
app.include_router(payments_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check — validates DB connectivity."""
    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {"status": status, "db": db_status, "gateway": settings.BILLING_GATEWAY, "version": VERSION}


@app.get("/ready")
async def readiness(session: AsyncSession = Depends(get_session)):
    """Readiness probe for orchestrators.

    Returns 503 if not ready to serve traffic.
    """
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return JSONResponse(status_code=503, content={"ready": False, "reason": "database unavailable"})
    return {"ready": True}


# --- Structured Error Responses ---

def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message, **extra})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return _error(422, "validation_error", "Invalid request data", details=errors)


@app.exception_handler(HTTPException)
async def http_error_handler(request: FastAPIRequest, exc: HTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    })


@app.exception_handler(WebhookVerificationError)
async def webhook_verification_handler(request: FastAPIRequest, exc: WebhookVerificationError):
    logger.warning("Rejected webhook on %s: %s", request.url.path, exc)
    return _error(400, "invalid_webhook", str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: FastAPIRequest, exc: NotFoundError):
    return _error(404, "not_found", str(exc))


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: FastAPIRequest, exc: InvalidStateError):
    return _error(409, "invalid_state", str(exc))


@app.exception_handler(IncompletePayment)
async def incomplete_payment_handler(request: FastAPIRequest, exc: IncompletePayment):
    return _error(
        402, "incomplete_payment", str(exc),
        payment_id=exc.payment_id,
        payment_status=exc.payment_status,
    )


@app.exception_handler(GatewayUnavailableError)
async def gateway_unavailable_handler(request: FastAPIRequest, exc: GatewayUnavailableError):
    logger.error("Gateway unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "gateway_unavailable", "The payment gateway could not be reached. Please try again.")


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: FastAPIRequest, exc: GatewayError):
    logger.warning("Gateway rejected request on %s: %s", request.url.path, exc)
    return _error(502, "gateway_error", str(exc), code=exc.code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions — never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "Something went wrong. Please try again.")
