"""
Main FastAPI application entry point.

Responsibilities:
- Initialize FastAPI app
- Configure CORS
- Map integration errors to HTTP responses
- Include routers
- Setup startup/shutdown events
"""
from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import deals, integrations, sync
from config import log_missing_env_vars, settings
from connectors.errors import ErrorKind, ProviderError
from models.database import close_db, get_pool_status
from services.integrations import IntegrationError
from services.sync_orchestrator import CredentialNotFoundError, SyncAlreadyRunningError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

app = FastAPI(title="Dealflow Integrations API", version="1.0.0")


# CORS configuration - allow frontend origins
def _normalize_origin(origin: str) -> str:
    """Normalize origin values for robust CORS checks."""
    return origin.strip().rstrip("/")


cors_origins: list[str] = [
    "http://localhost:3000",
    "http://localhost:5173",  # Vite dev server
    settings.FRONTEND_URL,
]

# Add production frontend URL from environment (if different)
frontend_url = os.environ.get("FRONTEND_URL")
if frontend_url:
    cors_origins.append(frontend_url)

allowed_origins = {_normalize_origin(origin) for origin in cors_origins}


def get_cors_headers(origin: str | None) -> dict[str, str]:
    """Return CORS headers if origin is allowed."""
    normalized_origin = _normalize_origin(origin) if origin else None
    if normalized_origin and normalized_origin in allowed_origins:
        return {
            "Access-Control-Allow-Origin": normalized_origin,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS, PATCH",
            "Access-Control-Allow-Headers": "*",
        }
    return {}


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Provider failures the user cannot fix by retrying immediately
_PROVIDER_ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.AUTH_EXPIRED: 401,
    ErrorKind.NEEDS_RECONNECT: 401,
    ErrorKind.RATE_LIMITED: 503,
    ErrorKind.TRANSIENT_NETWORK: 503,
    ErrorKind.SCHEMA_MISMATCH: 502,
    ErrorKind.PARTIAL_FAILURE: 502,
    ErrorKind.FATAL: 500,
}


def provider_error_response(exc: ProviderError) -> tuple[int, dict[str, object]]:
    """HTTP status and body for a classified provider failure."""
    status_code = _PROVIDER_ERROR_STATUS.get(exc.kind, 500)
    body: dict[str, object] = {
        "detail": exc.message,
        "error_kind": exc.kind.value,
        "provider": exc.provider,
        "needs_reconnect": exc.kind in (ErrorKind.NEEDS_RECONNECT, ErrorKind.AUTH_EXPIRED),
    }
    return status_code, body


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    status_code, body = provider_error_response(exc)
    logging.warning(
        "Provider error on %s: %s",
        request.url.path,
        exc.message,
        extra={"kind": exc.kind.value, "provider": exc.provider},
    )
    headers = get_cors_headers(request.headers.get("origin"))
    if exc.kind is ErrorKind.RATE_LIMITED and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc)},
        headers=get_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(CredentialNotFoundError)
async def credential_not_found_handler(
    request: Request, exc: CredentialNotFoundError
) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"detail": str(exc)},
        headers=get_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(SyncAlreadyRunningError)
async def sync_running_handler(request: Request, exc: SyncAlreadyRunningError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc)},
        headers=get_cors_headers(request.headers.get("origin")),
    )


# Global exception handler to ensure CORS headers on all errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all uncaught exceptions with CORS headers."""
    origin = request.headers.get("origin")
    cors_headers = get_cors_headers(origin)
    logging.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers=cors_headers,
    )


# Routes
app.include_router(integrations.router, prefix="/api/integrations", tags=["integrations"])
app.include_router(sync.router, prefix="/api/sync", tags=["sync"])
app.include_router(deals.router, prefix="/api/deals", tags=["deals"])


@app.on_event("startup")
async def startup() -> None:
    """Log configuration gaps on startup."""
    # Schema is managed by Alembic (db/migrations)
    log_missing_env_vars(logging.getLogger("config"))
    logging.info("Database connection pool ready")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Clean up database connections on shutdown."""
    logging.info("Shutting down, closing database connections...")
    await close_db()
    logging.info("Database connections closed")


@app.get("/")
async def root_health_check() -> dict[str, str]:
    """Root endpoint exposing the health check payload."""
    return await health_check()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/health/db")
async def db_health_check() -> dict[str, object]:
    """Database health check with pool status."""
    try:
        pool_status = get_pool_status()
        return {
            "status": "ok",
            "pool": pool_status,
        }
    except Exception as e:
        return {
            "status": "error",
            "error": str(e),
        }
