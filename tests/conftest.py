import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'bl_reconciliation' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from bl_reconciliation.main import app  # type: ignore
from bl_reconciliation.database import Base  # type: ignore
from bl_reconciliation.api import deps  # type: ignore
"""Pytest fixtures and factories.

All model modules are imported through bl_reconciliation.models.db before
Base.metadata.create_all() so every table exists.
"""
from bl_reconciliation.models.db import Delivery, StoreConfigRecord, ReconciliationRunRecord
from bl_reconciliation.models.db.enums import DeliveryStatus
from bl_reconciliation.models.verification import StoreReconciliationConfig
from bl_reconciliation.jobs.reconciliation_runner import ReconciliationRunner
from bl_reconciliation.jobs.scheduler import ReconciliationScheduler
from bl_reconciliation.services.bulk_verifier import BulkVerificationOrchestrator
from bl_reconciliation.services.external_records import FetchOutcome
from bl_reconciliation.services.stores import SqlDeliveryStore, SqlRunStore, SqlStoreConfigProvider
from bl_reconciliation.services.verification_cache import InMemoryVerificationCache
from bl_reconciliation.utils import AuditLogger
from bl_reconciliation.utils.circuit_breaker import CircuitBreaker

# File-based SQLite so the scheduler thread and the test thread share data.
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_bl_reconciliation.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_bl_reconciliation.db")
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _clean_tables(create_test_db):
    """Each test starts from empty tables."""
    yield
    session = TestingSessionLocal()
    try:
        session.query(ReconciliationRunRecord).delete()
        session.query(Delivery).delete()
        session.query(StoreConfigRecord).delete()
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


app.dependency_overrides[deps.get_db] = _override_get_db


# ---------- Fake external table ----------

class FakeRecordClient:
    """Stands in for ExternalRecordClient.

    ``tables[store_id]`` holds the rows of that store's invoice table; a fetch
    returns rows whose invoice column equals the reference (all rows when the
    reference is empty). ``failures[(store_id, ref)]`` forces a FetchOutcome.
    """

    def __init__(self):
        self.tables: dict[int, list[dict[str, Any]]] = {}
        self.failures: dict[tuple[int, str], FetchOutcome] = {}
        self.errors: dict[tuple[int, str], Exception] = {}
        self.calls: list[tuple[int, Optional[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.delay = 0.0

    async def fetch_candidates(self, config: StoreReconciliationConfig, invoice_ref: Optional[str]) -> FetchOutcome:
        self.calls.append((config.store_id, invoice_ref))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            key = (config.store_id, invoice_ref or "")
            if key in self.errors:
                raise self.errors[key]
            if key in self.failures:
                return self.failures[key]
            rows = self.tables.get(config.store_id, [])
            if invoice_ref:
                rows = [r for r in rows if r.get(config.columns.invoice_ref) == invoice_ref]
            return FetchOutcome(success=True, records=list(rows), status_code=200)
        finally:
            self.in_flight -= 1

    async def check_connection(self, config: StoreReconciliationConfig) -> FetchOutcome:
        rows = self.tables.get(config.store_id, [])
        return FetchOutcome(success=True, records=rows[:1], status_code=200)


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def record_client():
    return FakeRecordClient()


@pytest.fixture()
def audit():
    return AuditLogger(name="audit.test", buffer_size=200)


@pytest.fixture()
def cache():
    return InMemoryVerificationCache()


@pytest.fixture()
def store_configs():
    return SqlStoreConfigProvider(TestingSessionLocal)


@pytest.fixture()
def orchestrator(cache, store_configs, record_client, audit):
    return BulkVerificationOrchestrator(
        cache,
        store_configs,
        record_client,
        concurrency=5,
        max_attempts=2,
        circuit_breaker=CircuitBreaker(),
        audit=audit,
        sleep=_no_sleep,
    )


@pytest.fixture()
def runner(orchestrator, audit):
    return ReconciliationRunner(
        orchestrator,
        SqlDeliveryStore(TestingSessionLocal),
        SqlRunStore(TestingSessionLocal),
        audit=audit,
    )


@pytest.fixture()
def scheduler(runner):
    sched = ReconciliationScheduler(runner, interval_minutes=20)
    yield sched
    sched.stop(timeout=2)


@pytest.fixture()
def client(cache, store_configs, record_client, orchestrator, runner, scheduler, audit):
    """TestClient with services on app.state (lifespan is not run)."""
    app.state.audit_logger = audit
    app.state.verification_cache = cache
    app.state.store_configs = store_configs
    app.state.delivery_store = runner.deliveries
    app.state.record_client = record_client
    app.state.bulk_verifier = orchestrator
    app.state.reconciliation_runner = runner
    app.state.reconciliation_scheduler = scheduler
    return TestClient(app)


# ---------- Data factory helpers ----------

@pytest.fixture()
def store_factory(db_session):
    def _create(store_id: int = 7, **overrides):
        values = dict(
            store_id=store_id,
            store_name=f"Store {store_id}",
            base_url="https://noco.example.test",
            table_id="tbl_invoices",
            api_token="tok_secret",
            invoice_column="RefFacture",
            bl_column="NumBL",
            amount_column="Montant",
            supplier_column="Fournisseurs",
            date_column=None,
            is_active=True,
        )
        values.update(overrides)
        record = StoreConfigRecord(**values)
        db_session.add(record)
        db_session.commit()
        return record
    return _create


@pytest.fixture()
def delivery_factory(db_session):
    def _create(store_id: int = 7, **overrides):
        values = dict(
            store_id=store_id,
            supplier_name="CMP",
            status=DeliveryStatus.PENDING,
            reconciled=False,
        )
        values.update(overrides)
        delivery = Delivery(**values)
        db_session.add(delivery)
        db_session.commit()
        db_session.refresh(delivery)
        return delivery
    return _create
