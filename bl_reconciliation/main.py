"""
FastAPI application main module.
Wires the verification cache, bulk verifier and reconciliation scheduler into
the HTTP surface, with request tracing, error handling and health checks.
"""
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import os
from contextlib import asynccontextmanager
from typing import Any
from bl_reconciliation.api.deps import get_db
from bl_reconciliation.api.v1 import api_router
from bl_reconciliation.config import SCHEDULER, VERIFICATION_CACHE
from bl_reconciliation.database import Base, SessionLocal, engine
from bl_reconciliation.jobs.reconciliation_runner import ReconciliationRunner
from bl_reconciliation.jobs.scheduler import ReconciliationScheduler
from bl_reconciliation.services.bulk_verifier import BulkVerificationOrchestrator
from bl_reconciliation.services.external_records import ExternalRecordClient
from bl_reconciliation.services.stores import SqlDeliveryStore, SqlRunStore, SqlStoreConfigProvider
from bl_reconciliation.services.verification_cache import CacheUnavailableError, create_verification_cache
from bl_reconciliation.utils import get_audit_logger, get_logger, setup_logging
from bl_reconciliation.utils.observability import REQUEST_ID_HEADER, ensure_request_id

SERVICE_NAME = "bl-reconciliation"
SERVICE_VERSION = "1.0.0"

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/bl_reconciliation.log"),
    enable_console=True
)

logger = get_logger(__name__)


def build_services(app: FastAPI, session_factory=SessionLocal) -> ReconciliationScheduler:
    """Construct the reconciliation components and expose them on app.state."""
    audit = get_audit_logger()
    cache = create_verification_cache()
    store_configs = SqlStoreConfigProvider(session_factory)
    client = ExternalRecordClient()
    orchestrator = BulkVerificationOrchestrator(cache, store_configs, client, audit=audit)
    deliveries = SqlDeliveryStore(session_factory)
    runner = ReconciliationRunner(
        orchestrator,
        deliveries,
        SqlRunStore(session_factory),
        audit=audit,
    )
    scheduler = ReconciliationScheduler(runner)

    app.state.audit_logger = audit
    app.state.verification_cache = cache
    app.state.store_configs = store_configs
    app.state.delivery_store = deliveries
    app.state.record_client = client
    app.state.bulk_verifier = orchestrator
    app.state.reconciliation_runner = runner
    app.state.reconciliation_scheduler = scheduler
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, build services, recover stale runs and start the timer."""
    logger.info("Application startup initiated", service=SERVICE_NAME, cache_backend=VERIFICATION_CACHE["backend"])
    Base.metadata.create_all(bind=engine)

    scheduler = build_services(app)
    recovered = app.state.reconciliation_runner.runs.fail_stale_runs()
    if SCHEDULER["autostart"]:
        scheduler.start()
    else:
        logger.info("Reconciliation scheduler autostart disabled")
    logger.info("Application startup completed", stale_runs_failed=recovered)
    try:
        yield
    finally:
        scheduler.stop()
        logger.info("Application shutdown completed")


app = FastAPI(
    title="BL Reconciliation Service",
    description="""
    Invoice / delivery note (BL) reconciliation engine.

    ## Features
    * **Bulk verification** - cache-first verification of deliveries against each store's invoice table
    * **Match cascade** - invoice reference, BL number, supplier + amount, supplier + date
    * **Scheduled reconciliation** - periodic pass marking matched deliveries as reconciled
    * **Cache management** - TTL cache statistics, cleanup and invalidation
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Attach a request id, time the request and log both ends."""
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    started = time.perf_counter()
    logger.info("Request started", method=request.method, path=request.url.path, request_id=request_id)

    response = await call_next(request)

    elapsed = round((time.perf_counter() - started) * 1000, 2)
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(elapsed)
    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time_ms=elapsed,
        request_id=request_id,
    )
    return response


def _error_response(request: Request, status_code: int, message: Any, **extra: Any) -> JSONResponse:
    body = {"success": False, "message": message, "request_id": getattr(request.state, "request_id", "unknown")}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", errors=exc.errors(), path=request.url.path)
    return _error_response(request, 422, "Request validation failed", details=exc.errors())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(CacheUnavailableError)
async def cache_unavailable_handler(request: Request, exc: CacheUnavailableError):
    """Without the verification cache the whole subsystem is down: 503."""
    logger.error("Verification cache unavailable", error=str(exc), path=request.url.path)
    return _error_response(request, 503, "Verification cache unavailable")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", error=str(exc), error_type=type(exc).__name__, path=request.url.path, exc_info=True)
    return _error_response(request, 500, "Internal server error")


def _service_info() -> dict[str, Any]:
    return {"service": SERVICE_NAME, "version": SERVICE_VERSION, "timestamp": time.time()}


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check(request: Request):
    scheduler = getattr(request.app.state, "reconciliation_scheduler", None)
    return {
        "status": "healthy",
        **_service_info(),
        "cache_backend": str(VERIFICATION_CACHE["backend"]),
        "scheduler_active": bool(scheduler and scheduler.active),
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check(request: Request, db: Session = Depends(get_db)):
    """Database round trip plus verification cache statistics."""
    checks: dict[str, Any] = {}
    healthy = True
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {e}"
        healthy = False

    cache = getattr(request.app.state, "verification_cache", None)
    if cache is not None:
        try:
            checks["cache"] = cache.stats().to_dict()
        except CacheUnavailableError as e:
            checks["cache"] = f"unavailable: {e}"
            healthy = False

    return {"status": "healthy" if healthy else "degraded", **_service_info(), "checks": checks}


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "BL Reconciliation Service API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1",
    }


app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("bl_reconciliation.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_level="info")
