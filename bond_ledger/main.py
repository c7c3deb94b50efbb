from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from slowapi.errors import RateLimitExceeded
import asyncio
import logging
import time
import uuid

from .config import settings
from .database import create_tables
from .exceptions import LedgerError
from .utils.logging_config import setup_logging, set_request_context, clear_request_context
from .utils.metrics import record_http_request
from .utils.rate_limiter import limiter

from .routers import availability, split_stays, bookings, ical, health, metrics

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(settings.log_level, json_format=settings.log_json or settings.is_production)
    logger.info(f"Starting bond-ledger ({settings.environment})")
    logger.info(f"CORS Origins: {settings.cors_origins}")

    create_tables()

    # ==========================================
    # BACKGROUND FEED SYNC WORKER
    # ==========================================
    worker_task = None
    worker_running = True
    worker_logger = logging.getLogger("sync_worker")

    async def run_sync_worker():
        """Periodically reconcile due iCal feeds into the ledger"""
        from .sync_worker import run_sync_cycle

        poll_interval = settings.worker_poll_interval
        worker_logger.info(f"Feed sync worker started (interval: {poll_interval}s, batch: {settings.worker_batch_size})")

        while worker_running:
            try:
                # Feed fetches block, keep them off the event loop
                await asyncio.to_thread(run_sync_cycle, settings.worker_batch_size)
            except Exception as e:
                worker_logger.exception(f"Worker cycle error: {e}")

            await asyncio.sleep(poll_interval)

    if settings.ical_sync_enabled:
        worker_task = asyncio.create_task(run_sync_worker())
    else:
        logger.info("iCal sync disabled, worker not started")

    yield

    logger.info("Shutting down bond-ledger...")
    worker_running = False
    if worker_task:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
        logger.info("Feed sync worker stopped")


app = FastAPI(
    title="Bond Ledger API",
    description="Availability ledger and split-stay allocation",
    version="1.0.0",
    lifespan=lifespan
)

# Rate limiter state
app.state.limiter = limiter


# ================================
# CORS MIDDLEWARE - MUST BE FIRST!
# ================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# Request ID + timing Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()

        route = request.scope.get("route")
        path = route.path if route is not None else request.url.path
        record_http_request(request.method, path, response.status_code, time.perf_counter() - start)
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests, try again later"}
    )


# Include routers
app.include_router(availability.router)
app.include_router(split_stays.router)
app.include_router(bookings.router)
app.include_router(ical.router)
app.include_router(health.router)
app.include_router(metrics.router)


@app.get("/")
async def root():
    return {
        "message": "Bond Ledger API",
        "version": "1.0.0",
        "docs": "/docs",
        "status": "running",
    }
