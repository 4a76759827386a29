"""FastAPI server for Tala ingestion and timeline"""

from __future__ import annotations

import sqlite3
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tala.api.dependencies import get_container
from tala.api.routes.chat import router as chat_router
from tala.api.routes.chat_events import router as chat_events_router
from tala.api.routes.health import router as health_router
from tala.api.routes.timeline import router as timeline_router
from tala.config import API_HOST, API_PORT, APP_VERSION, is_development
from tala.errors import PersistenceError, ValidationError
from tala.infrastructure.database import init_database
from tala.observability.logging import get_logger
from tala.observability.telemetry import counter, log_event

# Load environment variables from .env file
load_dotenv()

app = FastAPI(title="Tala API", version=APP_VERSION)

logger = get_logger(__name__)


# Custom validation error handler to prevent information leakage
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Sanitized 422: field names only, never the validation rules."""
    logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    counter("api.bad_request")
    logger.info("Rejected %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "detail": str(exc), "field": exc.field},
    )


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    counter("api.persistence_errors")
    logger.error("Persistence failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "detail": "Failed to store data. Please try again."},
    )


ALLOWED_ORIGINS = ["https://app.tala.example"]

# Allow local frontends in development only
if is_development():
    ALLOWED_ORIGINS.extend(
        [
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000",
        ]
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

# Initialize database schema
try:
    logger.info("Initializing database schema...")
    init_database()
    logger.info("Database initialization complete")
except sqlite3.OperationalError as e:
    logger.critical("Database schema error: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e

# Include routers
app.include_router(health_router)
app.include_router(chat_router)
app.include_router(chat_events_router)
app.include_router(timeline_router)

log_event("api.startup", service="tala", version=APP_VERSION)


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================
@app.on_event("startup")
async def validate_database_schema() -> None:
    """Validate database schema on startup (fail fast if database is broken)"""
    from tala.infrastructure.database import validate_schema

    try:
        validate_schema()
        logger.info("Database schema validation passed")
    except ValueError as e:
        logger.critical("Database schema invalid: %s", e)
        raise RuntimeError(f"Database schema validation failed: {e}") from e


@app.on_event("shutdown")
async def shutdown_services() -> None:
    """Stop worker pools if the production container was ever built."""
    if get_container.cache_info().currsize:
        get_container().shutdown()


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "Tala API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "chat": "/api/v1/chat",
            "chat_stream": "/api/v1/chat/stream",
            "chat_history": "/api/v1/chat/history",
            "chat_events": "/api/v1/chat-events",
            "reprocess": "/api/v1/chat-events/reprocess",
            "timeline": "/api/v1/timeline",
        },
    }


def main() -> None:
    """tala-api: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level="info")


if __name__ == "__main__":
    main()
