"""FastAPI application entry point."""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from form_broker.core.async_utils import drain_background_tasks, spawn_background
from form_broker.core.config import settings
from form_broker.core.deps import (
    get_audit_recorder,
    get_connection_provider,
    get_session_store,
    get_token_manager,
)
from form_broker.core.errors import BrokerError, ExternalApiError, InternalError
from form_broker.core.structured_logging import configure_logging
from form_broker.db.session import init_db
from form_broker.services.audit_service import ApiRequestEntry, get_client_ip
from form_broker.services.maintenance_service import SweepScheduler

configure_logging()
logger = logging.getLogger(__name__)


if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
    )
    logging.info("Sentry initialized for error tracking")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    scheduler = SweepScheduler(
        session_store=get_session_store(),
        token_manager=get_token_manager(),
        audit_recorder=get_audit_recorder(),
    )
    scheduler.start()
    app.state.sweeps = scheduler
    logger.info("Form broker started (env=%s)", settings.ENV)
    try:
        yield
    finally:
        await scheduler.stop()
        await drain_background_tasks()
        await get_token_manager().aclose()
        await get_connection_provider().aclose()


app = FastAPI(
    title="Form Broker API",
    description="Maps form submissions onto linked records in an external record store",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)


# =============================================================================
# Error responses
# =============================================================================


def _error_body(error_type: str, message: str, context: dict | None = None) -> dict:
    return {
        "success": False,
        "error": {
            "type": error_type,
            "message": message,
            "context": context or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }


@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
    error_type = exc.error_type_name if isinstance(exc, ExternalApiError) else exc.error_type
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", error_type, request.method, request.url.path, exc.message)
    if isinstance(exc, InternalError):
        return JSONResponse(
            status_code=500,
            content=_error_body(exc.error_type, "An unexpected error occurred"),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(error_type, exc.message, exc.context),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg")} for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=_error_body("VALIDATION_ERROR", "Invalid request", {"errors": errors}),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body("INTERNAL_ERROR", "An unexpected error occurred"),
    )


# =============================================================================
# Request logging
# =============================================================================


def _form_id_from_path(path: str) -> str | None:
    parts = [p for p in path.split("/") if p]
    if len(parts) >= 2 and parts[0] == "forms":
        return parts[1]
    return None


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Write one ApiLog row per request (fire-and-forget)."""
    started = time.monotonic()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        entry = ApiRequestEntry(
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_message=f"HTTP {status_code}" if status_code >= 400 else None,
            context_id=request.query_params.get("contextId"),
            form_id=_form_id_from_path(request.url.path),
            user_agent=request.headers.get("user-agent"),
            ip_address=get_client_ip(request),
        )
        recorder = request.app.dependency_overrides.get(get_audit_recorder, get_audit_recorder)()
        spawn_background(recorder.record_api_request(entry), name="audit-api-request")


from form_broker.routers import forms, logs, oauth, sessions

app.include_router(forms.router)
app.include_router(sessions.router)
app.include_router(oauth.router)
app.include_router(logs.router)
