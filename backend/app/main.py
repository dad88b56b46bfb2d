"""
Road Progress Inspection API v1.0
FastAPI backend with async PostgreSQL (SQLAlchemy + asyncpg) and Redis/Celery
background jobs for the inspection-entry consistency engine.
"""
import os
import logging
import time
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from app.services.logging_config import setup_logging
from app.services.middleware import RequestTimingMiddleware

# Load .env file automatically in dev (no-op if the file is missing)
load_dotenv()

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("progress-api")

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

if not os.getenv("DATABASE_URL"):
    logger.warning("MISSING env var: DATABASE_URL, running in dev mode")
for var in ["CELERY_BROKER_URL", "PROGRESS_DICTIONARY_PATH"]:
    if not os.getenv(var):
        logger.info(f"Optional env var not set: {var}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.db import init_db
    from app.services.progress_dictionary import get_dictionary
    await init_db()
    # Build the vocabulary once so a bad PROGRESS_DICTIONARY_PATH fails at startup
    dictionary = get_dictionary()
    logger.info(f"Progress dictionary ready (canonical locale: {dictionary.canonical_locale})")
    yield


app = FastAPI(
    title="Road Progress Inspection API",
    version="1.0.0",
    description="Inspection-entry consistency engine for road construction progress tracking",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# ---------------------------------------------------------------------------
# CORS: restricted to allowed origins from env
# ---------------------------------------------------------------------------
_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "X-Requested-With", "X-Request-ID", "X-Actor-Id"],
)
app.add_middleware(SecurityHeadersMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

# Routers
from app.api.inspection_routes import router as inspection_router
from app.api.maintenance_routes import router as maintenance_router

app.include_router(inspection_router)
app.include_router(maintenance_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "uptime_seconds": round(time.monotonic() - _PROCESS_START, 1),
        "db_configured": bool(os.getenv("DATABASE_URL")),
        "broker_configured": bool(os.getenv("CELERY_BROKER_URL")),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
