"""
main.py — netcoach FastAPI application entry point.

Start with: uvicorn netcoach.main:app --reload --port 8000
(run from the repository root)
"""
import asyncio
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from netcoach.config import settings
from netcoach.sessions.schemas import ErrorBody, ErrorDetail, ErrorResponse
from netcoach.store import SessionNotFoundError

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Apply Alembic migrations in a subprocess (alembic.ini lives next to this file)."""
    package_dir = os.path.dirname(os.path.abspath(__file__))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=package_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    logger.info("Alembic: %s", result.stdout.strip() or "No pending migrations")


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (skipped when settings.run_migrations is false)
      2. Initialize Redis connection pool
      3. Mistral client + enrichment semaphore
      4. Store, background runner and orchestrator
    Shutdown:
      1. Drain in-flight background jobs
      2. Close Redis pool and dispose the engine
    """
    if settings.run_migrations:
        run_migrations()

    from netcoach.cache import create_redis_pool
    from netcoach.database import AsyncSessionLocal, async_engine
    from netcoach.enrichment.jobs import BackgroundJobRunner
    from netcoach.enrichment.llm_service import EnrichmentClient
    from netcoach.sessions.orchestrator import build_orchestrator
    from netcoach.store import SessionStore
    from mistralai import Mistral

    app.state.redis = await create_redis_pool()

    # Singleton for HTTP connection pool reuse
    app.state.mistral = Mistral(api_key=settings.mistral_api_key)
    # MUST be created inside the running loop, not at import time
    app.state.enrichment_semaphore = asyncio.Semaphore(settings.enrichment_concurrency)
    logger.info("Mistral client initialized (concurrency=%d)", settings.enrichment_concurrency)

    app.state.store = SessionStore(AsyncSessionLocal, app.state.redis)
    app.state.runner = BackgroundJobRunner(app.state.redis)
    app.state.orchestrator = build_orchestrator(
        app.state.store,
        EnrichmentClient(app.state.mistral, app.state.enrichment_semaphore),
        runner=app.state.runner,
    )

    logger.info("netcoach v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await app.state.runner.drain()
    logger.info("Background jobs drained")
    await app.state.redis.aclose()
    logger.info("Redis connection pool closed")
    await async_engine.dispose()
    logger.info("netcoach shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="netcoach API",
    version=settings.app_version,
    description=(
        "Coached networking-practice sessions: staged conversation pacing, "
        "append-only transcripts and background enrichment (summary, nudges, evaluation)."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = ErrorResponse(
        error=ErrorBody(
            code=code,
            message=message,
            details=[ErrorDetail(**d) for d in details or []],
        )
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


# ---------------------------------------------------------------------------
# Global exception handlers — registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Returns ALL field violations in one 422 response."""
    details = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(
    request: Request, exc: SessionNotFoundError
) -> JSONResponse:
    return _make_error_response(
        code="NOT_FOUND",
        message=str(exc),
        status_code=404,
    )


@app.exception_handler(ValueError)
async def value_error_handler(
    request: Request, exc: ValueError
) -> JSONResponse:
    """
    Catches explicit ValueError raises from business logic (store.py).
    Surfaces as 422 VALIDATION_ERROR so the caller understands it's a data issue.
    """
    return _make_error_response(
        code="VALIDATION_ERROR",
        message=str(exc),
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors (including storage failures after rollback).
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from netcoach.review.routes import router as review_router  # noqa: E402
from netcoach.sessions.routes import router as sessions_router  # noqa: E402

app.include_router(sessions_router)
app.include_router(review_router)
