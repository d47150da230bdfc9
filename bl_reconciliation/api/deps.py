"""
Dependencies for database sessions and the reconciliation services held on app.state.
"""
from typing import Generator
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session
from bl_reconciliation.database import SessionLocal
from bl_reconciliation.jobs.reconciliation_runner import ReconciliationRunner
from bl_reconciliation.jobs.scheduler import ReconciliationScheduler
from bl_reconciliation.services.bulk_verifier import BulkVerificationOrchestrator
from bl_reconciliation.services.external_records import ExternalRecordClient
from bl_reconciliation.services.stores import DeliveryStore, StoreConfigProvider
from bl_reconciliation.services.verification_cache import VerificationCache
from bl_reconciliation.utils import AuditLogger, get_logger

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        logger.error("Service not initialized", service=name)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} not available",
        )
    return value


def get_cache(request: Request) -> VerificationCache:
    return _state(request, "verification_cache")


def get_orchestrator(request: Request) -> BulkVerificationOrchestrator:
    return _state(request, "bulk_verifier")


def get_runner(request: Request) -> ReconciliationRunner:
    return _state(request, "reconciliation_runner")


def get_scheduler(request: Request) -> ReconciliationScheduler:
    return _state(request, "reconciliation_scheduler")


def get_record_client(request: Request) -> ExternalRecordClient:
    return _state(request, "record_client")


def get_config_provider(request: Request) -> StoreConfigProvider:
    return _state(request, "store_configs")


def get_delivery_store(request: Request) -> DeliveryStore:
    return _state(request, "delivery_store")


def get_audit(request: Request) -> AuditLogger:
    return _state(request, "audit_logger")


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")
