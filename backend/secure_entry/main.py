import hmac
import logging
import sys
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from secure_entry.api.routes import router
from secure_entry.config import settings
from secure_entry.database import (
    SchemaCapabilityError,
    SessionLocal,
    detect_schema_capabilities,
    init_db,
)

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Prepare the schema, pick the write strategy, optionally start the sweep timer."""
    try:
        if settings.AUTO_MIGRATE:
            init_db()
        app.state.capabilities = detect_schema_capabilities()
    except SchemaCapabilityError as exc:
        logger.critical("FATAL: %s", exc)
        sys.exit(1)
    logger.info("entries schema v%d", app.state.capabilities.version)

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        from secure_entry.modules.scheduler import build_scheduler
        scheduler = build_scheduler(
            settings=settings,
            session_factory=SessionLocal,
            capabilities=app.state.capabilities,
        )
        scheduler.start()
        logger.info("Sweep scheduled every %d min", settings.SWEEP_INTERVAL_MINUTES)
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)


app = FastAPI(
    title="Secure Entry",
    description=(
        "Visitor identity-verification records with instant lookup, "
        "background archive sync and retention purge."
    ),
    version=VERSION,
    lifespan=lifespan,
)


# API key authentication middleware
class APIKeyMiddleware(BaseHTTPMiddleware):
    """Simple API key check. If SECURE_ENTRY_API_KEY is unset, all requests pass."""

    # /photo carries its own view token for the archive
    EXEMPT_PATHS = ("/health", "/health/ready", "/photo", "/docs", "/openapi.json", "/redoc")

    async def dispatch(self, request: Request, call_next):
        if settings.SECURE_ENTRY_API_KEY is not None and request.method != "OPTIONS":
            if request.url.path not in self.EXEMPT_PATHS:
                api_key = request.headers.get("X-API-Key")
                if not hmac.compare_digest(
                    (api_key or "").encode(), settings.SECURE_ENTRY_API_KEY.encode()
                ):
                    return JSONResponse(
                        status_code=401,
                        content={"detail": "Invalid or missing API key"},
                    )
        return await call_next(request)


app.add_middleware(APIKeyMiddleware)

# Rate limiting per client address
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.RATE_LIMIT])
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS is added last so it wraps the API key check
cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    max_age=86400,
)

app.include_router(router)


# ── Structured error handlers ─────────────────────────────────────────────────

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if request.url.path == "/submit":
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid submission payload"})
    return await request_validation_exception_handler(request, exc)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "Validation error", "detail": str(exc)})


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s:\n%s", request.method, request.url.path, traceback.format_exc())
    return JSONResponse(status_code=500, content={"error": "Internal server error", "detail": "An unexpected error occurred."})


@app.get("/health")
def health() -> dict:
    return {"ok": True}
