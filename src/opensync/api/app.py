"""
OpenSync FastAPI Application.

Serves the plugin sync endpoints, the external REST API and the RAG
context endpoint.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from opensync.api.routes import account, embeddings, export, search, sessions, stats, sync
from opensync.api.schemas import error_envelope
from opensync.config import settings
from opensync.db.connection import db_session
from opensync.db.repositories import ApiLogRepository
from opensync.exceptions import AuthError, ConflictError, OpenSyncError
from opensync.logging_config import setup_logging
from opensync.startup import run_all_startup_checks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for the FastAPI application.

    Runs startup checks before serving requests and owns the embedding
    worker thread when it is enabled.
    """
    setup_logging(context="api")

    logger.info("Running startup checks...")
    run_all_startup_checks()

    worker_started = False
    if settings.embedding_worker_enabled:
        from opensync.embeddings.worker import start_worker

        start_worker()
        worker_started = True

    logger.info("Application startup complete")

    yield

    logger.info("Application shutdown initiated...")
    if worker_started:
        from opensync.embeddings.worker import stop_worker

        try:
            stop_worker()
        except Exception as e:
            logger.error(f"Error stopping embedding worker: {e}", exc_info=True)
    logger.info("Application shutdown complete")


app = FastAPI(
    lifespan=lifespan,
    title="OpenSync API",
    description="Sync, search and analyze coding assistant sessions",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Session factory for access-log writes (replaced in tests)
app.state.access_log_session = db_session


# ===== Error envelope =====


@app.exception_handler(OpenSyncError)
async def handle_opensync_error(request: Request, exc: OpenSyncError) -> JSONResponse:
    headers = {}
    if isinstance(exc, ConflictError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    elif isinstance(exc, AuthError):
        headers["WWW-Authenticate"] = "Bearer"

    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.error_type, exc.message),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        message = f"{location}: {errors[0].get('msg')}" if location else str(errors[0].get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_envelope("validation_error", message),
    )


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope("http_error", str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


# ===== Access log =====


def _record_access(
    session_factory, account_id, endpoint: str, method: str, status_code: int, elapsed_ms: int
) -> None:
    """Write one ``api_logs`` row (blocking, run in the threadpool)."""
    try:
        with session_factory() as session:
            ApiLogRepository(session).record(
                account_id=account_id,
                endpoint=endpoint,
                method=method,
                status_code=status_code,
                response_time_ms=elapsed_ms,
            )
    except Exception as e:
        # Access logging must never fail the request
        logger.warning(f"Failed to record API access for {endpoint}: {e}")


@app.middleware("http")
async def record_api_access(request: Request, call_next) -> Response:
    """Record authenticated ``/api/*`` calls in ``api_logs``."""
    start = time.perf_counter()
    response = await call_next(request)

    account_id = getattr(request.state, "account_id", None)
    if account_id is not None and request.url.path.startswith("/api/"):
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        await run_in_threadpool(
            _record_access,
            request.app.state.access_log_session,
            account_id,
            request.url.path,
            request.method,
            response.status_code,
            elapsed_ms,
        )
    return response


# ===== Health =====


@app.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint."""
    from opensync.db.connection import check_connection

    db_status = "healthy" if check_connection() else "unhealthy"
    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
    }


@app.get("/ready")
def ready():
    """
    Readiness check for load balancers.

    Returns 200 when ready to serve requests, 503 otherwise.
    """
    from opensync.startup import check_readiness

    is_ready, details = check_readiness()
    if not is_ready:
        return JSONResponse(content=details, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return details


app.include_router(sync.router)
app.include_router(sessions.router)
app.include_router(search.router)
app.include_router(export.router)
app.include_router(stats.router)
app.include_router(embeddings.router)
app.include_router(account.router)
